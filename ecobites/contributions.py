"""User-contributed products: pending submission, admin approval and rejection.

Approved entries land in the shared collection with ``verified=True``, which
is what the image resolution path matches against.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from ecobites.db import ActivityStore, SharedProductStore
from ecobites.errors import NotFoundError, ValidationError
from ecobites.schemas import (
    INGREDIENTS_UNAVAILABLE,
    NUTRITION_KEYS,
    ContributionRequest,
    coerce_grade,
    coerce_str_list,
    describe,
    to_float,
)

CONTRIBUTION_POINTS = 10
DEFAULT_ECO_SCORE = "B"


def compute_nutri_score(nutrition: Dict[str, float]) -> str:
    """Simplified Nutri-Score used when the contributor leaves it blank."""
    total = (
        nutrition.get("energy", 0) / 20
        + nutrition.get("fat", 0) / 3
        + nutrition.get("sugars", 0) / 1.5
        + nutrition.get("salt", 0) * 10
    )
    if total > 30:
        return "E"
    if total > 25:
        return "D"
    if total > 20:
        return "C"
    if total > 15:
        return "B"
    return "A"


def build_contribution_entry(req: ContributionRequest) -> Dict[str, Any]:
    name = (req.product_name or "").strip()
    if not name:
        raise ValidationError("Please enter a product name")
    brand = (req.brand or "").strip() or None
    nutrition = {k: to_float(getattr(req, k)) for k in NUTRITION_KEYS}
    nutri = coerce_grade(req.nutri_score, default=None) or compute_nutri_score(nutrition)
    return {
        "user_id": req.user_id,
        "product_name": name,
        "product_name_lower": name.lower(),
        "brand": brand,
        "nutrition": nutrition,
        "ingredients": (req.ingredients or "").strip() or INGREDIENTS_UNAVAILABLE,
        "allergens": coerce_str_list(req.allergens),
        "nutri_score": nutri,
        "eco_score": coerce_grade(req.eco_score, default=DEFAULT_ECO_SCORE),
        "packaging": coerce_str_list(req.packaging),
        "description": describe(name, brand),
        "created_at": datetime.now(timezone.utc),
        "verified": False,
    }


async def submit_contribution(store: SharedProductStore, req: ContributionRequest) -> Dict[str, Any]:
    entry = build_contribution_entry(req)
    stored = await store.insert_pending(entry)
    logger.info(f"contribution pending id={stored.get('id')} name='{entry['product_name']}'")
    return stored


async def approve_contribution(
    store: SharedProductStore,
    activity: Optional[ActivityStore],
    pending_id: str,
) -> Dict[str, Any]:
    pending = await store.get_pending(pending_id)
    if pending is None:
        raise NotFoundError("Pending product not found")
    approved = await store.insert_approved(pending)
    await store.delete_pending(pending_id)
    user_id = pending.get("user_id")
    if user_id and activity is not None:
        # Points are best-effort; approval already happened.
        await activity.award_points(user_id, CONTRIBUTION_POINTS)
    logger.info(f"contribution approved pending_id={pending_id} shared_id={approved.get('id')}")
    return approved


async def reject_contribution(store: SharedProductStore, pending_id: str) -> None:
    if not await store.delete_pending(pending_id):
        raise NotFoundError("Pending product not found")
    logger.info(f"contribution rejected pending_id={pending_id}")


__all__ = [
    "CONTRIBUTION_POINTS",
    "compute_nutri_score",
    "build_contribution_entry",
    "submit_contribution",
    "approve_contribution",
    "reject_contribution",
]
