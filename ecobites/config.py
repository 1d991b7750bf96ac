"""Central configuration constants and helpers.

Environment-derived values live here so the catalog client, AI adapter,
matcher and stores share one set of defaults. Keep this lightweight (no heavy
imports): it is imported by every other module.
"""
from __future__ import annotations
import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

# Project-root .env first, then CWD; real environment variables win.
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(_root, ".env"))
load_dotenv()

# Open Food Facts catalog
OFF_API_BASE: str = os.getenv("OFF_API_BASE", "https://world.openfoodfacts.org").rstrip("/")
OPENFOODFACTS_API_KEY: str = os.getenv("OPENFOODFACTS_API_KEY", "").strip()
OFF_USER_AGENT: str = os.getenv("OFF_USER_AGENT", "EcoBites - Sustainable Food Tracker")
CATALOG_TIMEOUT_SEC: float = float(os.getenv("CATALOG_TIMEOUT_SEC", "10"))
CATALOG_CACHE_TTL: float = float(os.getenv("CATALOG_CACHE_TTL", "300"))  # 5 min
CATALOG_SEARCH_PAGE_SIZE: int = int(os.getenv("CATALOG_SEARCH_PAGE_SIZE", "20"))

# Request coalescing / cache bounds
SEARCH_DEDUP_GRACE_SEC: float = float(os.getenv("SEARCH_DEDUP_GRACE_SEC", "1.0"))
CACHE_MAX_ENTRIES: int = int(os.getenv("CACHE_MAX_ENTRIES", "0"))  # 0 = unbounded

# Generative AI backend
AI_MODEL_VARIANTS: List[str] = [
    m.strip() for m in os.getenv("AI_MODEL_VARIANTS", "gpt-4o-mini,gpt-4.1-mini,gpt-4o").split(",") if m.strip()
]
AI_TIMEOUT_SEC: float = float(os.getenv("AI_TIMEOUT_SEC", "30"))
AI_TEMPERATURE: float = float(os.getenv("AI_TEMPERATURE", "0.2"))
AI_MAX_TOKENS: int = int(os.getenv("AI_MAX_TOKENS", "1024"))

# Shared database matcher
MATCH_CANDIDATE_LIMIT: int = int(os.getenv("MATCH_CANDIDATE_LIMIT", "5"))
MATCH_MIN_SCORE: int = int(os.getenv("MATCH_MIN_SCORE", "5"))

# Mongo
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB: str = os.getenv("MONGO_DB", "ecobites")
SHARED_PRODUCTS_COLLECTION: str = os.getenv("SHARED_PRODUCTS_COLLECTION", "shared_products")
PENDING_PRODUCTS_COLLECTION: str = os.getenv("PENDING_PRODUCTS_COLLECTION", "pending_products")
SCANS_COLLECTION: str = os.getenv("SCANS_COLLECTION", "scans")
SEARCH_HISTORY_COLLECTION: str = os.getenv("SEARCH_HISTORY_COLLECTION", "search_history")
USER_STATS_COLLECTION: str = os.getenv("USER_STATS_COLLECTION", "user_stats")

# Uploads
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))


def get_openai_api_key() -> str:
    # Read lazily so a .env loaded at startup is honoured.
    return os.getenv("OPENAI_API_KEY", "").strip()


@lru_cache(maxsize=1)
def get_runtime_config_snapshot() -> dict:
    """Return a cached snapshot of key runtime config values (for diagnostics)."""
    return {
        "catalog_base": OFF_API_BASE,
        "catalog_key_set": bool(OPENFOODFACTS_API_KEY),
        "catalog_timeout": CATALOG_TIMEOUT_SEC,
        "catalog_cache_ttl": CATALOG_CACHE_TTL,
        "search_dedup_grace": SEARCH_DEDUP_GRACE_SEC,
        "cache_max_entries": CACHE_MAX_ENTRIES,
        "model_variants": list(AI_MODEL_VARIANTS),
        "ai_timeout": AI_TIMEOUT_SEC,
        "ai_key_set": bool(get_openai_api_key()),
        "match_candidate_limit": MATCH_CANDIDATE_LIMIT,
        "match_min_score": MATCH_MIN_SCORE,
        "mongo_db": MONGO_DB,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }

__all__ = [
    "OFF_API_BASE",
    "OPENFOODFACTS_API_KEY",
    "OFF_USER_AGENT",
    "CATALOG_TIMEOUT_SEC",
    "CATALOG_CACHE_TTL",
    "CATALOG_SEARCH_PAGE_SIZE",
    "SEARCH_DEDUP_GRACE_SEC",
    "CACHE_MAX_ENTRIES",
    "AI_MODEL_VARIANTS",
    "AI_TIMEOUT_SEC",
    "AI_TEMPERATURE",
    "AI_MAX_TOKENS",
    "MATCH_CANDIDATE_LIMIT",
    "MATCH_MIN_SCORE",
    "MONGO_URI",
    "MONGO_DB",
    "SHARED_PRODUCTS_COLLECTION",
    "PENDING_PRODUCTS_COLLECTION",
    "SCANS_COLLECTION",
    "SEARCH_HISTORY_COLLECTION",
    "USER_STATS_COLLECTION",
    "MAX_UPLOAD_BYTES",
    "get_openai_api_key",
    "get_runtime_config_snapshot",
]
