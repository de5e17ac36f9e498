"""Session builders shared by the screen-time tests."""

from datetime import date, datetime, time, timedelta, timezone
from typing import List

from family_screen_time.models.screen_time_models import Child, ChildSettings, Session, SessionKind


def regular(session_id: str, minutes: int, day: date, app: str = "youtube", device: str = "tablet", counts: bool = True, start_hour: int = 10) -> Session:
    started = datetime.combine(day, time(start_hour, 0), tzinfo=timezone.utc)
    return Session(
        id=session_id,
        date=day,
        kind=SessionKind.REGULAR,
        duration=minutes,
        counts_toward_total=counts,
        app=app,
        device=device,
        time_started=started,
        time_ended=started + timedelta(minutes=minutes),
    )


def bonus(session_id: str, activity_minutes: int, awarded: int, day: date, reason: str = "chores") -> Session:
    return Session(
        id=session_id,
        date=day,
        kind=SessionKind.BONUS,
        duration=activity_minutes,
        counts_toward_total=False,
        bonus_time_awarded=awarded,
        reason=reason,
    )


def punishment(session_id: str, minutes: int, day: date, reason: str = "late homework") -> Session:
    return Session(id=session_id, date=day, kind=SessionKind.PUNISHMENT, duration=minutes, reason=reason)


def child_with(sessions: List[Session], settings: ChildSettings = None, child_id: str = "alice") -> Child:
    return Child(id=child_id, name=child_id.title(), sessions=sessions, settings=settings or ChildSettings())
