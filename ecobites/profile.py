import asyncio

from ecobites.contributions import CONTRIBUTION_POINTS
from ecobites.db import ActivityStore, SharedProductStore
from ecobites.errors import UpstreamError, ValidationError
from ecobites.schemas import ProfileStats

POINTS_PER_SCAN = 1
POINTS_PER_LEVEL = 100

_TITLES = (
    (20, "Master Contributor"),
    (15, "Expert Contributor"),
    (10, "Advanced Contributor"),
    (5, "Pro Contributor"),
    (3, "Active Contributor"),
)


def level_title(level: int) -> str:
    for threshold, title in _TITLES:
        if level >= threshold:
            return title
    return "New Contributor"


def build_stats(user_id: str, contributions: int, scans: int, recent=None) -> ProfileStats:
    points = contributions * CONTRIBUTION_POINTS + scans * POINTS_PER_SCAN
    level = points // POINTS_PER_LEVEL + 1
    return ProfileStats(
        user_id=user_id,
        total_contributions=contributions,
        total_scans=scans,
        points=points,
        level=level,
        next_level_points=level * POINTS_PER_LEVEL,
        progress_to_next_level=(points % POINTS_PER_LEVEL) / POINTS_PER_LEVEL,
        title=level_title(level),
        recent_contributions=list(recent or []),
    )


async def compute_profile_stats(shared: SharedProductStore, activity: ActivityStore, user_id: str) -> ProfileStats:
    """Independent lookups, issued concurrently and awaited together."""
    if not (user_id or "").strip():
        raise ValidationError("user_id is required")
    try:
        contributions, scans, recent = await asyncio.gather(
            shared.count_contributions(user_id),
            activity.count_scans(user_id),
            shared.recent_contributions(user_id, limit=5),
        )
    except Exception as e:
        raise UpstreamError("Failed to load profile statistics") from e
    return build_stats(user_id, contributions, scans, recent)
