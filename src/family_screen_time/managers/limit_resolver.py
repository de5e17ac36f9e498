"""
Limit resolution for a child on a given day.

Picks the weekday or weekend limit block, falls back to the configured default
when nothing is set, and reports which of the two happened so callers can tell
an explicit limit from a default one.
"""

from datetime import date
from typing import Optional

from family_screen_time.config import settings
from family_screen_time.models.screen_time_models import (
    BonusActivity,
    Child,
    LimitSource,
    ResolvedLimits,
    Schedule,
)
from family_screen_time.utils.datetime_utils import FamilyClock


def schedule_for(day: date) -> Schedule:
    return "weekend" if FamilyClock.is_weekend(day) else "weekday"


def resolve_limits(child: Child, day: date) -> ResolvedLimits:
    """
    Resolve the limits that apply to ``child`` on ``day``.

    Args:
        child: Child whose settings are read
        day: Family-local calendar day

    Returns:
        ResolvedLimits: daily total, sub-caps, source and schedule
    """
    schedule = schedule_for(day)
    block = child.settings.limits.for_schedule(schedule)

    if block is None or block.daily_total is None:
        return ResolvedLimits(
            daily_total=settings.DEFAULT_DAILY_LIMIT_MINUTES,
            per_device=dict(block.per_device) if block else {},
            per_app=dict(block.per_app) if block else {},
            source=LimitSource.DEFAULT,
            schedule=schedule,
        )

    return ResolvedLimits(
        daily_total=block.daily_total,
        per_device=dict(block.per_device),
        per_app=dict(block.per_app),
        source=LimitSource.EXPLICIT,
        schedule=schedule,
    )


def resolve_bonus_activity(child: Child, activity_id: str) -> Optional[BonusActivity]:
    activity = child.settings.bonus_activities.get(activity_id)
    if activity is None or not activity.enabled:
        return None
    return activity


def resolve_bonus_ratio(child: Child, activity_id: str) -> Optional[float]:
    """Bonus minutes per activity minute, or None when the activity is unknown or disabled."""
    activity = resolve_bonus_activity(child, activity_id)
    return activity.ratio if activity else None


def resolve_bonus_cap(child: Child) -> Optional[int]:
    """
    Daily cap on bonus minutes counted toward the limit.

    None means uncapped. A disabled bonus policy caps at zero.
    """
    policy = child.settings.limits.bonus
    if policy is None:
        return None
    if not policy.enabled:
        return 0
    return policy.daily_max
