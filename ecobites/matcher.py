"""Best-match lookup against the crowd-sourced shared product collection."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from ecobites.config import MATCH_CANDIDATE_LIMIT, MATCH_MIN_SCORE
from ecobites.errors import UpstreamError
from ecobites.schemas import (
    INGREDIENTS_UNAVAILABLE,
    Product,
    coerce_grade,
    coerce_nutrition,
    coerce_str_list,
    describe,
)

# Match weights.
NAME_EXACT = 10
NAME_PARTIAL = 5
BRAND_EXACT = 5
BRAND_PARTIAL = 2


class SharedProductSource(Protocol):
    async def query_verified_by_name_prefix(self, prefix: str, limit: int = ...) -> List[Dict[str, Any]]: ...


@dataclass
class ScoredCandidate:
    record: Dict[str, Any]
    score: int
    name_score: int


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _stored_name(record: Dict[str, Any]) -> str:
    return _norm(record.get("product_name_lower") or record.get("product_name") or record.get("productName") or record.get("name"))


def score_candidate(name: str, brand: Optional[str], record: Dict[str, Any]) -> ScoredCandidate:
    """Score one stored record against a normalized name/brand pair."""
    stored = _stored_name(record)
    name_score = 0
    if stored and name:
        if stored == name:
            name_score = NAME_EXACT
        elif name in stored or stored in name:
            name_score = NAME_PARTIAL

    brand_score = 0
    stored_brand = _norm(record.get("brand"))
    if brand and stored_brand:
        if stored_brand == brand:
            brand_score = BRAND_EXACT
        elif brand in stored_brand or stored_brand in brand:
            brand_score = BRAND_PARTIAL
    return ScoredCandidate(record=record, score=name_score + brand_score, name_score=name_score)


def product_from_shared_record(record: Dict[str, Any]) -> Product:
    """Build a complete Product from a stored entry; grades default to "A"."""
    name = (record.get("product_name") or record.get("productName") or record.get("name") or "").strip()
    brand = (record.get("brand") or "").strip() or None
    return Product(
        id=str(record.get("id") or record.get("_id") or ""),
        name=name,
        brand=brand,
        nutrition=coerce_nutrition(record.get("nutrition")),
        ingredients=(record.get("ingredients") or "").strip() or INGREDIENTS_UNAVAILABLE,
        allergens=coerce_str_list(record.get("allergens")),
        nutri_score=coerce_grade(record.get("nutri_score") or record.get("nutriScore")),
        eco_score=coerce_grade(record.get("eco_score") or record.get("ecoScore")),
        packaging=coerce_str_list(record.get("packaging")),
        description=(record.get("description") or "").strip() or describe(name, brand),
        image=record.get("product_image_url") or record.get("image"),
    )


class SharedDatabaseMatcher:
    def __init__(self, source: SharedProductSource, candidate_limit: int = MATCH_CANDIDATE_LIMIT, min_score: int = MATCH_MIN_SCORE):
        self.source = source
        self.candidate_limit = candidate_limit
        self.min_score = min_score

    async def best_candidate(self, name: str, brand: Optional[str]) -> Optional[ScoredCandidate]:
        norm_name = _norm(name)
        norm_brand = _norm(brand) or None
        if not norm_name:
            return None
        try:
            records = await self.source.query_verified_by_name_prefix(norm_name, limit=self.candidate_limit)
        except Exception as e:
            logger.warning(f"shared db query failed name='{norm_name}': {type(e).__name__}: {e}")
            raise UpstreamError("Shared product database is unavailable") from e
        best: Optional[ScoredCandidate] = None
        for record in records[: self.candidate_limit]:
            scored = score_candidate(norm_name, norm_brand, record)
            # A brand hit alone never identifies a product.
            if scored.name_score == 0:
                continue
            # Strictly greater keeps the first candidate on ties.
            if best is None or scored.score > best.score:
                best = scored
        if best is None:
            logger.debug(f"shared db: no candidates for name='{norm_name}'")
            return None
        if best.score < self.min_score:
            logger.debug(f"shared db: best score {best.score} below threshold for name='{norm_name}'")
            return None
        return best

    async def find_best_match(self, name: str, brand: Optional[str]) -> Optional[Product]:
        best = await self.best_candidate(name, brand)
        if best is None:
            return None
        logger.info(f"shared db match name='{name}' score={best.score}")
        return product_from_shared_record(best.record)


__all__ = [
    "NAME_EXACT",
    "NAME_PARTIAL",
    "BRAND_EXACT",
    "BRAND_PARTIAL",
    "ScoredCandidate",
    "score_candidate",
    "product_from_shared_record",
    "SharedDatabaseMatcher",
]
