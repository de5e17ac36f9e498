"""Request and response models for the screen-time routes."""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, field_validator

from family_screen_time.models.screen_time_models import (
    BedtimeWindow,
    CamelModel,
    DailyUsageSummary,
    Session,
)
from family_screen_time.utils.datetime_utils import DateTimeUtils

# Constants for validation
REASON_MAX_LENGTH: int = 200
REASON_MESSAGE_MAX_LENGTH: int = 1000
APP_NAME_MAX_LENGTH: int = 100


class StartSessionDraft(CamelModel):
    """Start a regular session now."""

    mode: Literal["start"]
    id: Optional[str] = Field(None, max_length=128)
    app: Optional[str] = Field(None, max_length=APP_NAME_MAX_LENGTH)
    device: Optional[str] = Field(None, max_length=APP_NAME_MAX_LENGTH)
    counts_toward_total: bool = True
    estimated_duration: Optional[int] = Field(None, ge=0)


class QuickAddDraft(CamelModel):
    """Record a finished regular session."""

    mode: Literal["quick_add"]
    id: Optional[str] = Field(None, max_length=128)
    duration: Optional[int] = None
    app: Optional[str] = Field(None, max_length=APP_NAME_MAX_LENGTH)
    device: Optional[str] = Field(None, max_length=APP_NAME_MAX_LENGTH)
    counts_toward_total: bool = True
    time_started: Optional[datetime] = None
    time_ended: Optional[datetime] = None

    @field_validator("time_started", "time_ended")
    @classmethod
    def normalize_instants(cls, v):
        return DateTimeUtils.to_utc(v) if v is not None else None


class BonusDraft(CamelModel):
    """Direct bonus (no activity) or activity bonus converted with its ratio."""

    mode: Literal["bonus"]
    duration: int
    reason: Optional[str] = Field(None, max_length=REASON_MAX_LENGTH)
    reason_message: Optional[str] = Field(None, max_length=REASON_MESSAGE_MAX_LENGTH)
    activity_type: Optional[str] = None


class PunishmentDraft(CamelModel):
    mode: Literal["punishment"]
    duration: int
    reason: Optional[str] = Field(None, max_length=REASON_MAX_LENGTH)
    reason_message: Optional[str] = Field(None, max_length=REASON_MESSAGE_MAX_LENGTH)


SessionDraft = Annotated[
    Union[StartSessionDraft, QuickAddDraft, BonusDraft, PunishmentDraft],
    Field(discriminator="mode"),
]


class EndSessionRequest(CamelModel):
    time_ended: Optional[datetime] = None

    @field_validator("time_ended")
    @classmethod
    def normalize_instant(cls, v):
        """Instants without an offset are taken as UTC."""
        return DateTimeUtils.to_utc(v) if v is not None else None


class AvailableAppsRequest(CamelModel):
    apps: List[str] = Field(default_factory=list)


class ChildUsageResponse(CamelModel):
    """Daily summary plus rest-window state."""

    summary: DailyUsageSummary
    bedtime_active: bool = False
    bedtime: Optional[BedtimeWindow] = None


class SessionDeletedResponse(CamelModel):
    deleted: bool = True
    session: Session


class EventPageResponse(CamelModel):
    family_id: str
    events: List[Dict[str, Any]] = Field(default_factory=list)
    last_sequence: int = 0
