"""Product resolution orchestrator.

Entry points:
1. resolve_by_text: catalog search only (coalesced per normalized query).
2. resolve_by_id: catalog lookup by identifier.
3. resolve_by_image: identify -> shared database match -> AI nutrition estimate.

Steps within one resolution run strictly in sequence. Every returned Product
has a full nutrition object; image results always carry A-E grades.
"""
from __future__ import annotations

import hashlib
import uuid
from typing import List, Optional

from loguru import logger

from ecobites.cache import ResolverCache
from ecobites.catalog import CatalogClient
from ecobites.errors import ValidationError
from ecobites.logger import log_context
from ecobites.matcher import SharedDatabaseMatcher
from ecobites.schemas import (
    Identification,
    NutritionEstimate,
    Product,
    ProductSummary,
    ResolutionResult,
    coerce_grade,
    describe,
)
from ecobites.text_processing import normalize_query
from ecobites.vision import VisionAdapter


def ai_product_id(name: str, brand: Optional[str]) -> str:
    """Stable id for AI-only products, derived from the identified brand/name."""
    key = normalize_query(f"{brand or ''} {name}")
    return "ai-" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def product_from_estimate(estimate: NutritionEstimate, ident: Identification) -> Product:
    name = ident.name or estimate.name or ""
    brand = ident.brand or estimate.brand
    return Product(
        id=ai_product_id(name, brand),
        name=name,
        brand=brand,
        nutrition=estimate.nutrition,
        ingredients=estimate.ingredients,
        allergens=list(estimate.allergens),
        nutri_score=coerce_grade(estimate.nutri_score),
        eco_score=coerce_grade(estimate.eco_score),
        packaging=list(estimate.packaging),
        description=estimate.description or describe(name, brand),
    )


class ProductResolver:
    def __init__(
        self,
        cache: ResolverCache,
        catalog: CatalogClient,
        matcher: SharedDatabaseMatcher,
        vision: VisionAdapter,
    ):
        self.cache = cache
        self.catalog = catalog
        self.matcher = matcher
        self.vision = vision

    async def resolve_by_text(self, query: str) -> List[ProductSummary]:
        normalized = normalize_query(query)
        if not normalized:
            raise ValidationError("Search query must not be empty")
        with log_context(request_id=uuid.uuid4().hex[:12], entry="text"):
            results = await self.cache.search_inflight.get_or_create(
                normalized, lambda: self.catalog.search_by_text(query)
            )
            logger.info(f"search query='{normalized}' results={len(results)}")
        return list(results)

    async def resolve_by_id(self, product_id: str) -> Product:
        with log_context(request_id=uuid.uuid4().hex[:12], entry="id"):
            product = await self.catalog.get_by_id(product_id)
            logger.info(f"resolved id='{product.id}' provenance=catalog")
        return product

    async def resolve_by_image(self, image_bytes: bytes, mime_type: str) -> ResolutionResult:
        with log_context(request_id=uuid.uuid4().hex[:12], entry="image"):
            ident = await self.vision.identify_from_image(image_bytes, mime_type)
            logger.info(f"identified name='{ident.name}' brand='{ident.brand}'")

            match = await self.matcher.find_best_match(ident.name, ident.brand)
            if match is not None:
                logger.info(f"resolved '{ident.name}' provenance=sharedDatabase")
                return ResolutionResult(product=match, provenance="sharedDatabase")

            estimate = await self.vision.fetch_nutrition(ident.query, ident.name, ident.brand)
            product = product_from_estimate(estimate, ident)
            logger.info(f"resolved '{ident.name}' provenance=ai degraded={estimate.degraded}")
            return ResolutionResult(product=product, provenance="ai", degraded=estimate.degraded)


__all__ = ["ProductResolver", "ai_product_id", "product_from_estimate"]
