"""
Data models for Family Screen Time.

This module contains the Pydantic domain records, typed settings patches,
lifecycle states and derived usage models.
"""

from .screen_time_models import *

__all__ = [
    # Enumerations and lifecycle
    "SessionKind",
    "SessionState",
    "LifecycleEvent",
    "ActorRole",
    "LimitSource",
    "EventType",
    "transition",
    # Records
    "Session",
    "SessionPatch",
    "DailyLimit",
    "BonusPolicy",
    "LimitSettings",
    "BonusActivity",
    "BedtimeWindow",
    "BedtimeRestrictions",
    "ApprovalFlags",
    "ChildSettings",
    "FamilySettings",
    "Guardian",
    "Child",
    "Family",
    "Actor",
    "FamilyEvent",
    # Settings patches
    "DailyTotalPatch",
    "DeviceCapPatch",
    "AppCapPatch",
    "BedtimePatch",
    "BonusActivityPatch",
    "BonusPolicyPatch",
    "ApprovalPatch",
    "SettingsPatch",
    # Derived usage
    "ResolvedLimits",
    "DailyUsageSummary",
    "HistoryDay",
    "UsageHistory",
    "FamilySnapshot",
]
