"""Open Food Facts catalog client.

Search: {base}/cgi/search.pl?search_terms=...&json=1
Product: {base}/api/v0/product/{code}.json

Raw JSON payloads are cached in ``ResolverCache.catalog`` and concurrent
identical calls share one HTTP request. Normalisation into ``Product`` /
``ProductSummary`` happens on every call, so callers always get fresh objects.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from ecobites.cache import ResolverCache
from ecobites.config import (
    OFF_API_BASE,
    OPENFOODFACTS_API_KEY,
    OFF_USER_AGENT,
    CATALOG_TIMEOUT_SEC,
    CATALOG_SEARCH_PAGE_SIZE,
)
from ecobites.errors import NotFoundError, RateLimitedError, UpstreamError, ValidationError
from ecobites.schemas import (
    INGREDIENTS_UNAVAILABLE,
    Nutrition,
    Product,
    ProductSummary,
    coerce_grade,
    describe,
    to_float,
)
from ecobites.text_processing import normalize_query

SEARCH_FIELDS = "code,product_name,brands,image_url,ecoscore_grade,nutriscore_grade"
PLACEHOLDER_IMAGE = "/placeholder.svg"
UNKNOWN_BRAND = "Unknown Brand"
UNKNOWN_PRODUCT = "Unknown Product"
KJ_PER_KCAL = 4.184

_ID_RE = re.compile(r"^[0-9A-Za-z_-]{1,64}$")
_TAG_PREFIX_RE = re.compile(r"^[a-z]{2,3}:")

# Nutriment keys have been renamed across API vintages; first present wins.
_NUTRIMENT_KEYS: Dict[str, tuple] = {
    "fat": ("fat_100g", "fat"),
    "sugars": ("sugars_100g", "sugars"),
    "salt": ("salt_100g", "salt"),
    "protein": ("proteins_100g", "protein_100g", "proteins"),
    "fiber": ("fiber_100g", "fibers_100g", "fiber"),
    "sodium": ("sodium_100g", "sodium"),
}


def validate_product_id(product_id: str) -> str:
    pid = (product_id or "").strip()
    if not pid or not _ID_RE.match(pid):
        raise ValidationError("Invalid product ID")
    return pid


def flatten_tag(tag: str) -> str:
    """'en:plastic-bottle' -> 'plastic bottle'."""
    return _TAG_PREFIX_RE.sub("", str(tag or "")).replace("-", " ").strip()


def _flatten_tags(tags: Any) -> List[str]:
    if not isinstance(tags, list):
        return []
    return [t for t in (flatten_tag(x) for x in tags) if t]


def _first_present(source: Dict[str, Any], keys) -> Any:
    for k in keys:
        if source.get(k) not in (None, ""):
            return source[k]
    return None


def normalize_nutrition(nutriments: Any) -> Nutrition:
    n = nutriments if isinstance(nutriments, dict) else {}
    energy = _first_present(n, ("energy-kcal_100g", "energy-kcal", "energy_kcal_100g"))
    if energy is not None:
        kcal = to_float(energy)
    else:
        kcal = round(to_float(n.get("energy_100g")) / KJ_PER_KCAL, 1)
    values = {field: to_float(_first_present(n, keys)) for field, keys in _NUTRIMENT_KEYS.items()}
    return Nutrition(energy=kcal, **values)


def normalize_summary(raw: Dict[str, Any]) -> Optional[ProductSummary]:
    """Map one search hit; ``None`` when it lacks a name or code."""
    name = (raw.get("product_name") or "").strip()
    code = str(raw.get("code") or "").strip()
    if not name or not code:
        return None
    return ProductSummary(
        id=code,
        name=name,
        brand=(raw.get("brands") or "").strip() or UNKNOWN_BRAND,
        image=raw.get("image_url") or PLACEHOLDER_IMAGE,
        nutri_score=coerce_grade(raw.get("nutriscore_grade"), default=None),
        eco_score=coerce_grade(raw.get("ecoscore_grade"), default=None),
    )


def normalize_product(raw: Dict[str, Any]) -> Product:
    name = (raw.get("product_name") or raw.get("abbreviated_product_name") or "").strip() or UNKNOWN_PRODUCT
    brand = (raw.get("brands") or "").strip() or UNKNOWN_BRAND
    co2 = ((raw.get("ecoscore_data") or {}).get("agribalyse") or {}).get("co2_total")
    ingredients = (raw.get("ingredients_text") or raw.get("ingredients_text_en") or "").strip()
    return Product(
        id=str(raw.get("code") or raw.get("_id") or ""),
        name=name,
        brand=brand,
        image=raw.get("image_url") or raw.get("image_front_url") or PLACEHOLDER_IMAGE,
        nutri_score=coerce_grade(raw.get("nutriscore_grade"), default=None),
        eco_score=coerce_grade(raw.get("ecoscore_grade"), default=None),
        additives=[t.upper() for t in _flatten_tags(raw.get("additives_tags"))],
        nutrition=normalize_nutrition(raw.get("nutriments")),
        packaging=_flatten_tags(raw.get("packaging_tags")),
        allergens=_flatten_tags(raw.get("allergens_tags")),
        carbon_footprint=to_float(co2) if co2 not in (None, "") else None,
        ingredients=ingredients or INGREDIENTS_UNAVAILABLE,
        categories=_flatten_tags(raw.get("categories_tags")),
        description=describe(name, brand),
    )


class CatalogClient:
    """Async Open Food Facts client sharing ``ResolverCache`` state."""

    def __init__(
        self,
        cache: ResolverCache,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = OFF_API_BASE,
        api_key: str = OPENFOODFACTS_API_KEY,
        timeout: float = CATALOG_TIMEOUT_SEC,
        page_size: int = CATALOG_SEARCH_PAGE_SIZE,
    ):
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.headers = {"User-Agent": OFF_USER_AGENT}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, not_found_ok: bool = False) -> Any:
        try:
            resp = await self._http.get(url, params=params, headers=self.headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.warning(f"catalog timeout url={url}")
            raise UpstreamError("Catalog request timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"catalog request failed url={url} error={type(e).__name__}: {e}")
            raise UpstreamError("Failed to reach the product catalog") from e
        if resp.status_code == 429:
            raise RateLimitedError()
        if resp.status_code == 404 and not_found_ok:
            raise NotFoundError()
        if resp.status_code >= 400:
            logger.warning(f"catalog status={resp.status_code} url={url}")
            raise UpstreamError(f"Catalog responded with status {resp.status_code}")
        try:
            return resp.json()
        except ValueError:
            return None

    async def _cached(self, key: str, fetch) -> Any:
        cached = self.cache.catalog.get(key)
        if cached is not None:
            logger.debug(f"catalog cache hit key='{key}'")
            return cached

        async def _load():
            payload = await fetch()
            self.cache.catalog.set(key, payload)
            return payload

        return await self.cache.catalog_inflight.get_or_create(key, _load)

    async def search_by_text(self, query: str) -> List[ProductSummary]:
        normalized = normalize_query(query)
        if not normalized:
            raise ValidationError("Search query must not be empty")

        async def _fetch():
            params = {
                "search_terms": query.strip(),
                "search_simple": 1,
                "action": "process",
                "json": 1,
                "page_size": self.page_size,
                "fields": SEARCH_FIELDS,
            }
            data = await self._get_json(f"{self.base_url}/cgi/search.pl", params=params)
            return data if isinstance(data, dict) else {}

        payload = await self._cached(f"search:{normalized}", _fetch)
        raw_products = payload.get("products") or []
        summaries = [normalize_summary(p) for p in raw_products if isinstance(p, dict)]
        return [s for s in summaries if s is not None]

    async def get_by_id(self, product_id: str) -> Product:
        pid = validate_product_id(product_id)

        async def _fetch():
            data = await self._get_json(f"{self.base_url}/api/v0/product/{pid}.json", not_found_ok=True)
            if not isinstance(data, dict) or data.get("status") == 0 or not isinstance(data.get("product"), dict):
                raise NotFoundError()
            return data

        payload = await self._cached(f"product:{pid}", _fetch)
        product = normalize_product(payload["product"])
        if not product.id:
            product.id = pid
        return product


__all__ = [
    "CatalogClient",
    "normalize_product",
    "normalize_summary",
    "normalize_nutrition",
    "flatten_tag",
    "validate_product_id",
]
