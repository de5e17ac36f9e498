"""
Pydantic models for the screen-time engine.

This module contains the domain records (family, child, session, settings),
the typed settings patches, lifecycle state handling and the derived usage
models. Wire format is camelCase; snake_case input is accepted as well.
"""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from family_screen_time.config import settings
from family_screen_time.managers.errors import InvalidTransition, SessionAlreadyClosed
from family_screen_time.utils.datetime_utils import DateTimeUtils

Schedule = Literal["weekday", "weekend"]


class CamelModel(BaseModel):
    """Base model serializing with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Enumerations ---


class SessionKind(str, Enum):
    REGULAR = "regular"
    BONUS = "bonus"
    PUNISHMENT = "punishment"


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class LifecycleEvent(str, Enum):
    START = "start"
    RECORD = "record"
    END = "end"
    EDIT = "edit"


class ActorRole(str, Enum):
    GUARDIAN = "guardian"
    CHILD = "child"


class LimitSource(str, Enum):
    EXPLICIT = "explicit"
    DEFAULT = "default"


class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_ADDED = "session_added"
    SESSION_ENDED = "session_ended"
    SESSION_UPDATED = "session_updated"
    SESSION_EDITED = "session_edited"
    SESSION_DELETED = "session_deleted"
    BONUS_APPLIED = "bonus_applied"
    PUNISHMENT_APPLIED = "punishment_applied"
    SETTINGS_CHANGED = "settings_changed"
    MASTER_SETTINGS_APPLIED = "master_settings_applied"
    AVAILABLE_APPS_UPDATED = "available_apps_updated"
    FAMILY_UPDATED = "family_updated"


GUARDIANS_AUDIENCE = "guardians"


def child_audience(child_id: str) -> str:
    return f"child:{child_id}"


# --- Lifecycle ---

_TRANSITIONS = {
    (None, LifecycleEvent.START): SessionState.ACTIVE,
    (None, LifecycleEvent.RECORD): SessionState.CLOSED,
    (SessionState.ACTIVE, LifecycleEvent.END): SessionState.CLOSED,
    (SessionState.ACTIVE, LifecycleEvent.EDIT): SessionState.ACTIVE,
    (SessionState.CLOSED, LifecycleEvent.EDIT): SessionState.CLOSED,
}


def transition(state: Optional[SessionState], event: LifecycleEvent, session_id: str = None) -> SessionState:
    """
    Return the state a session moves to when ``event`` happens in ``state``.

    ``None`` stands for a session that does not exist yet.

    Raises:
        SessionAlreadyClosed: END on a closed session
        InvalidTransition: any other event not allowed from ``state``
    """
    next_state = _TRANSITIONS.get((state, event))
    if next_state is not None:
        return next_state
    if state == SessionState.CLOSED and event == LifecycleEvent.END:
        raise SessionAlreadyClosed("Session has already ended", session_id=session_id)
    raise InvalidTransition(
        f"Cannot apply '{event.value}' to a session in state '{state.value if state else 'none'}'",
        state=state.value if state else None,
        event=event.value,
    )


# --- Session ---


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return DateTimeUtils.to_utc(value)


class Session(CamelModel):
    """One accounting record: regular usage, bonus credit or punishment debit."""

    id: str = Field(..., min_length=1, max_length=128)
    date: date
    kind: SessionKind = SessionKind.REGULAR
    state: SessionState = SessionState.CLOSED
    duration: int = Field(0, ge=0, description="Minutes; activity time for bonus sessions")
    counts_toward_total: bool = True
    app: Optional[str] = None
    device: Optional[str] = None
    time_started: Optional[datetime] = None
    time_ended: Optional[datetime] = None
    bonus_time_awarded: Optional[int] = Field(None, ge=0, description="Credited minutes, bonus sessions only")
    reason: Optional[str] = Field(None, max_length=200)
    reason_message: Optional[str] = Field(None, max_length=1000)
    activity_type: Optional[str] = None
    estimated_duration: Optional[int] = Field(None, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    version: int = Field(0, ge=0)

    @field_validator("time_started", "time_ended", "created_at", "updated_at")
    @classmethod
    def normalize_instants(cls, v):
        return _as_utc(v)

    @computed_field
    @property
    def active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def is_instantaneous(self) -> bool:
        return self.time_started is None and self.time_ended is None

    @model_validator(mode="after")
    def check_invariants(self):
        kind = self.kind
        if self.bonus_time_awarded is not None and kind != SessionKind.BONUS:
            raise ValueError("bonusTimeAwarded is only allowed on bonus sessions")
        if kind == SessionKind.REGULAR and (self.reason is not None or self.reason_message is not None):
            raise ValueError("reason is only allowed on bonus and punishment sessions")
        if kind != SessionKind.REGULAR and (
            self.app is not None or self.device is not None or self.estimated_duration is not None
        ):
            raise ValueError("app, device and estimatedDuration are only allowed on regular sessions")
        if kind != SessionKind.BONUS and self.activity_type is not None:
            raise ValueError("activityType is only allowed on bonus sessions")
        if kind == SessionKind.BONUS and self.counts_toward_total:
            raise ValueError("bonus sessions never count toward the total")
        if kind == SessionKind.PUNISHMENT and not self.counts_toward_total:
            raise ValueError("punishment sessions always count toward the total")

        if self.state == SessionState.ACTIVE:
            if kind != SessionKind.REGULAR:
                raise ValueError("only regular sessions can be active")
            if self.time_started is None or self.time_ended is not None:
                raise ValueError("an active session has timeStarted and no timeEnded")
            return self

        if self.estimated_duration is not None:
            raise ValueError("estimatedDuration is only kept while a session is active")
        if self.is_instantaneous:
            if kind == SessionKind.REGULAR:
                raise ValueError("regular sessions need timeStarted and timeEnded")
            return self
        if self.time_started is None or self.time_ended is None:
            raise ValueError("a closed session has both timeStarted and timeEnded, or neither")
        if self.time_ended < self.time_started:
            raise ValueError("timeEnded must not be before timeStarted")
        return self


class SessionPatch(CamelModel):
    """Fields a caller may change on an existing session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    duration: Optional[int] = Field(None, ge=0)
    reason: Optional[str] = Field(None, max_length=200)
    reason_message: Optional[str] = Field(None, max_length=1000)
    time_started: Optional[datetime] = None
    time_ended: Optional[datetime] = None
    app: Optional[str] = None
    device: Optional[str] = None
    counts_toward_total: Optional[bool] = None

    @field_validator("time_started", "time_ended")
    @classmethod
    def normalize_instants(cls, v):
        return _as_utc(v)

    def changes(self) -> Dict[str, Any]:
        """Explicitly supplied fields, keyed by snake_case name."""
        return self.model_dump(exclude_unset=True)


# --- Settings ---


class DailyLimit(CamelModel):
    daily_total: Optional[int] = Field(None, ge=0)
    per_device: Dict[str, int] = Field(default_factory=dict)
    per_app: Dict[str, int] = Field(default_factory=dict)

    @field_validator("per_device", "per_app")
    @classmethod
    def non_negative_caps(cls, v):
        for key, minutes in v.items():
            if minutes < 0:
                raise ValueError(f"cap for '{key}' must not be negative")
        return v


class BonusPolicy(CamelModel):
    enabled: bool = True
    daily_max: Optional[int] = Field(None, ge=0, description="Max bonus minutes counted per day")


class LimitSettings(CamelModel):
    weekday: Optional[DailyLimit] = None
    weekend: Optional[DailyLimit] = None
    bonus: Optional[BonusPolicy] = None

    def for_schedule(self, schedule: Schedule) -> Optional[DailyLimit]:
        return self.weekend if schedule == "weekend" else self.weekday


class BonusActivity(CamelModel):
    enabled: bool = True
    ratio: float = Field(..., ge=0, description="Bonus minutes earned per activity minute")
    description: Optional[str] = Field(None, max_length=200)


class BedtimeWindow(CamelModel):
    """A local rest window, ``HH:mm`` clock strings."""

    bedtime: str
    wake_time: str

    @field_validator("bedtime", "wake_time")
    @classmethod
    def validate_clock(cls, v):
        parsed = DateTimeUtils.parse_clock_time(v)
        return parsed.strftime("%H:%M")

    @property
    def bedtime_clock(self) -> time:
        return DateTimeUtils.parse_clock_time(self.bedtime)

    @property
    def wake_clock(self) -> time:
        return DateTimeUtils.parse_clock_time(self.wake_time)

    @property
    def is_overnight(self) -> bool:
        return self.bedtime_clock > self.wake_clock

    def contains(self, clock_time: time) -> bool:
        """Whether a local clock time (minute precision) is inside the window."""
        t = clock_time.replace(second=0, microsecond=0)
        if self.is_overnight:
            return t >= self.bedtime_clock or t < self.wake_clock
        return self.bedtime_clock <= t <= self.wake_clock


class BedtimeRestrictions(CamelModel):
    weekday: Optional[BedtimeWindow] = None
    weekend: Optional[BedtimeWindow] = None

    def for_schedule(self, schedule: Schedule) -> Optional[BedtimeWindow]:
        return self.weekend if schedule == "weekend" else self.weekday


class ApprovalFlags(CamelModel):
    child_activity_bonus_allowed: bool = True
    child_quick_add_allowed: bool = True


class ChildSettings(CamelModel):
    limits: LimitSettings = Field(default_factory=LimitSettings)
    bonus_activities: Dict[str, BonusActivity] = Field(default_factory=dict)
    bedtime_restrictions: BedtimeRestrictions = Field(default_factory=BedtimeRestrictions)
    approvals: ApprovalFlags = Field(default_factory=ApprovalFlags)


class FamilySettings(CamelModel):
    available_apps: List[str] = Field(default_factory=list)
    notifications_enabled: bool = True
    warning_thresholds: List[int] = Field(default_factory=lambda: list(settings.DEFAULT_WARNING_THRESHOLDS))
    auto_end_sessions: bool = False

    @field_validator("available_apps")
    @classmethod
    def dedupe_apps(cls, v):
        seen = []
        for app in v:
            app = app.strip()
            if app and app not in seen:
                seen.append(app)
        return seen

    @field_validator("warning_thresholds")
    @classmethod
    def sort_thresholds(cls, v):
        if any(m <= 0 for m in v):
            raise ValueError("warning thresholds must be positive minutes")
        return sorted(set(v), reverse=True)


# --- Typed settings patches ---


class _SettingsPatchBase(CamelModel):
    def apply(self, child_settings: ChildSettings) -> ChildSettings:
        updated = child_settings.model_copy(deep=True)
        self._apply(updated)
        return updated

    def _apply(self, target: ChildSettings) -> None:
        raise NotImplementedError

    @property
    def setting_path(self) -> str:
        raise NotImplementedError

    @staticmethod
    def _limit_block(target: ChildSettings, schedule: Schedule) -> DailyLimit:
        block = target.limits.for_schedule(schedule)
        if block is None:
            block = DailyLimit()
            setattr(target.limits, schedule, block)
        return block


class DailyTotalPatch(_SettingsPatchBase):
    field: Literal["daily_total"] = "daily_total"
    schedule: Schedule
    minutes: Optional[int] = Field(None, ge=0, description="None restores the default limit")

    def _apply(self, target: ChildSettings) -> None:
        self._limit_block(target, self.schedule).daily_total = self.minutes

    @property
    def setting_path(self) -> str:
        return f"limits.{self.schedule}.dailyTotal"


class DeviceCapPatch(_SettingsPatchBase):
    field: Literal["device_cap"] = "device_cap"
    schedule: Schedule
    device: str = Field(..., min_length=1)
    minutes: Optional[int] = Field(None, ge=0, description="None removes the cap")

    def _apply(self, target: ChildSettings) -> None:
        caps = self._limit_block(target, self.schedule).per_device
        if self.minutes is None:
            caps.pop(self.device, None)
        else:
            caps[self.device] = self.minutes

    @property
    def setting_path(self) -> str:
        return f"limits.{self.schedule}.perDevice.{self.device}"


class AppCapPatch(_SettingsPatchBase):
    field: Literal["app_cap"] = "app_cap"
    schedule: Schedule
    app: str = Field(..., min_length=1)
    minutes: Optional[int] = Field(None, ge=0, description="None removes the cap")

    def _apply(self, target: ChildSettings) -> None:
        caps = self._limit_block(target, self.schedule).per_app
        if self.minutes is None:
            caps.pop(self.app, None)
        else:
            caps[self.app] = self.minutes

    @property
    def setting_path(self) -> str:
        return f"limits.{self.schedule}.perApp.{self.app}"


class BedtimePatch(_SettingsPatchBase):
    field: Literal["bedtime"] = "bedtime"
    schedule: Schedule
    window: Optional[BedtimeWindow] = None

    def _apply(self, target: ChildSettings) -> None:
        setattr(target.bedtime_restrictions, self.schedule, self.window)

    @property
    def setting_path(self) -> str:
        return f"bedtimeRestrictions.{self.schedule}"


class BonusActivityPatch(_SettingsPatchBase):
    field: Literal["bonus_activity"] = "bonus_activity"
    activity_id: str = Field(..., min_length=1)
    activity: Optional[BonusActivity] = Field(None, description="None removes the activity")

    def _apply(self, target: ChildSettings) -> None:
        if self.activity is None:
            target.bonus_activities.pop(self.activity_id, None)
        else:
            target.bonus_activities[self.activity_id] = self.activity

    @property
    def setting_path(self) -> str:
        return f"bonusActivities.{self.activity_id}"


class BonusPolicyPatch(_SettingsPatchBase):
    field: Literal["bonus_policy"] = "bonus_policy"
    policy: Optional[BonusPolicy] = None

    def _apply(self, target: ChildSettings) -> None:
        target.limits.bonus = self.policy

    @property
    def setting_path(self) -> str:
        return "limits.bonus"


class ApprovalPatch(_SettingsPatchBase):
    field: Literal["approval"] = "approval"
    flag: Literal["child_activity_bonus_allowed", "child_quick_add_allowed"]
    allowed: bool

    @field_validator("flag", mode="before")
    @classmethod
    def accept_camel_flag(cls, v):
        return {
            "childActivityBonusAllowed": "child_activity_bonus_allowed",
            "childQuickAddAllowed": "child_quick_add_allowed",
        }.get(v, v)

    def _apply(self, target: ChildSettings) -> None:
        setattr(target.approvals, self.flag, self.allowed)

    @property
    def setting_path(self) -> str:
        return f"approvals.{to_camel(self.flag)}"


SettingsPatch = Annotated[
    Union[
        DailyTotalPatch,
        DeviceCapPatch,
        AppCapPatch,
        BedtimePatch,
        BonusActivityPatch,
        BonusPolicyPatch,
        ApprovalPatch,
    ],
    Field(discriminator="field"),
]


# --- Family aggregate ---


class Guardian(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    devices: List[str] = Field(default_factory=list)


class Child(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    devices: List[str] = Field(default_factory=list)
    sessions: List[Session] = Field(default_factory=list)
    settings: ChildSettings = Field(default_factory=ChildSettings)

    @field_validator("sessions")
    @classmethod
    def unique_session_ids(cls, v):
        ids = [s.id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError("session ids must be unique within a child")
        return v

    def find_session(self, session_id: str) -> Optional[Session]:
        return next((s for s in self.sessions if s.id == session_id), None)


class Family(CamelModel):
    family_id: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(None, max_length=100)
    timezone: Optional[str] = None
    guardians: List[Guardian] = Field(default_factory=list)
    children: Dict[str, Child] = Field(default_factory=dict)
    settings: FamilySettings = Field(default_factory=FamilySettings)
    version: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"'{v}' is not a known IANA time zone") from exc
        return v

    @field_validator("created_at", "last_updated")
    @classmethod
    def normalize_instants(cls, v):
        return _as_utc(v)

    @model_validator(mode="after")
    def children_keyed_by_id(self):
        for key, child in self.children.items():
            if key != child.id:
                raise ValueError(f"child key '{key}' does not match child id '{child.id}'")
        return self

    @property
    def effective_timezone(self) -> str:
        return self.timezone or settings.FAMILY_TIMEZONE

    def guardian_ids(self) -> List[str]:
        return [g.id for g in self.guardians]


class Actor(BaseModel):
    """Who is asking: a guardian, or a child with an optional passcode."""

    role: ActorRole
    id: Optional[str] = None
    passcode: Optional[SecretStr] = Field(None, repr=False)

    @property
    def is_guardian(self) -> bool:
        return self.role == ActorRole.GUARDIAN

    @property
    def label(self) -> str:
        return f"{self.role.value}:{self.id or 'unknown'}"


# --- Events ---


class FamilyEvent(CamelModel):
    """A change notification, appended to the event log and published live."""

    family_id: str
    sequence: int = 0
    type: EventType
    audiences: List[str] = Field(default_factory=list)
    child_id: Optional[str] = None
    session: Optional[Session] = None
    setting_path: Optional[str] = None
    value: Optional[Any] = None
    updated_by: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v):
        return _as_utc(v)

    def visible_to(self, audience: str) -> bool:
        return audience in self.audiences


# --- Derived usage ---


class ResolvedLimits(CamelModel):
    daily_total: int
    per_device: Dict[str, int] = Field(default_factory=dict)
    per_app: Dict[str, int] = Field(default_factory=dict)
    source: LimitSource
    schedule: Schedule


class DailyUsageSummary(CamelModel):
    child_id: str
    date: date
    schedule: Schedule
    limit_source: LimitSource
    daily_total: int
    bonus_earned: int
    bonus_cap: Optional[int] = None
    effective_daily_limit: int
    used_time: int
    remaining_time: int
    usage_percentage: int
    punishment_time: int = 0
    used_time_by_device: Dict[str, int] = Field(default_factory=dict)
    used_time_by_app: Dict[str, int] = Field(default_factory=dict)
    device_remaining: Dict[str, int] = Field(default_factory=dict)
    app_remaining: Dict[str, int] = Field(default_factory=dict)
    active_sessions: int = 0
    running_minutes: int = 0
    warnings_crossed: List[int] = Field(default_factory=list)


class HistoryDay(CamelModel):
    date: date
    used_time: int
    bonus_earned: int
    punishment_time: int
    effective_daily_limit: int
    session_count: int
    sessions: List[Session] = Field(default_factory=list)


class UsageHistory(CamelModel):
    child_id: str
    start: date
    end: date
    total_used: int
    average_daily_use: float
    days: List[HistoryDay] = Field(default_factory=list)


class FamilySnapshot(CamelModel):
    """Family state filtered for one viewer."""

    family_id: str
    name: Optional[str] = None
    timezone: str
    viewer_type: ActorRole
    viewer_id: Optional[str] = None
    guardians: List[Guardian] = Field(default_factory=list)
    children: Dict[str, Child] = Field(default_factory=dict)
    usage: Dict[str, DailyUsageSummary] = Field(default_factory=dict)
    settings: FamilySettings
    version: int = 0
    last_updated: Optional[datetime] = None
