"""
Session Lifecycle Controller.

Enforces the transitions a session may take and the business guards around
them, then persists through the Session Store:

    Start      none   -> active   (quota, per-app/device caps and bedtime guards)
    QuickAdd   none   -> closed   (duration bounds)
    Bonus      none   -> closed   (duration bounds, guardian or approved activity)
    Punishment none   -> closed   (guardian only, never fails on the limit)
    End        active -> closed
    Edit       state unchanged
    Delete     guardian, or the child after the passcode challenge

Guardians bypass the quota and bedtime guards. A child may only act on their
own record.
"""

from datetime import datetime, timedelta
import secrets
from typing import Any, Dict, Optional

from pydantic import SecretStr

from family_screen_time.config import settings
from family_screen_time.managers.bedtime_evaluator import current_window
from family_screen_time.managers.errors import (
    BedtimeActive,
    InsufficientPermissions,
    InvalidDuration,
    InvalidTransition,
    PasscodeRequired,
    QuotaExceeded,
    ValidationError,
)
from family_screen_time.managers.limit_resolver import resolve_bonus_activity
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.managers.usage_aggregator import app_remaining, device_remaining, remaining_time
from family_screen_time.models.screen_time_models import (
    Actor,
    Child,
    EventType,
    Family,
    LifecycleEvent,
    Session,
    SessionKind,
    SessionPatch,
    SessionState,
    transition,
)
from family_screen_time.utils.datetime_utils import DateTimeUtils, FamilyClock, minutes_between, round_half_up

logger = get_logger(prefix="[SessionLifecycle]")


def require_guardian(actor: Actor, action: str) -> None:
    if not actor.is_guardian:
        raise InsufficientPermissions(
            f"Only a guardian can {action}", required_role="guardian", user_role=actor.role.value
        )


def require_own_record(actor: Actor, child_id: str) -> None:
    """A child may only act on their own record."""
    if not actor.is_guardian and actor.id != child_id:
        raise InsufficientPermissions(
            "Children can only act on their own sessions", required_role="guardian", user_role=actor.role.value
        )


def new_session_id(now: datetime) -> str:
    return f"session_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


class SessionLifecycleController:
    """
    Validates lifecycle operations and persists them through the store.

    Args:
        store: Session store used for every read and write
        passcode: Guardian passcode for a child's privileged actions,
            defaults to ``GUARDIAN_PASSCODE``
    """

    def __init__(self, store: SessionStore, passcode: Optional[SecretStr] = None) -> None:
        self.store = store
        self.passcode = passcode if passcode is not None else settings.GUARDIAN_PASSCODE
        self.logger = logger

    # --- helpers ---

    def _check_passcode(self, actor: Actor, action: str) -> None:
        if actor.is_guardian:
            return
        expected = self.passcode.get_secret_value()
        given = actor.passcode.get_secret_value() if actor.passcode else ""
        if not expected or not given or not secrets.compare_digest(expected.encode(), given.encode()):
            self.logger.warning("Passcode challenge failed for %s on %s", actor.label, action)
            raise PasscodeRequired(f"Guardian passcode required to {action}", action=action)

    @staticmethod
    def _check_duration(duration: Any) -> int:
        if (
            not isinstance(duration, int)
            or isinstance(duration, bool)
            or not settings.MIN_SESSION_MINUTES <= duration <= settings.MAX_SESSION_MINUTES
        ):
            raise InvalidDuration(
                f"Duration must be between {settings.MIN_SESSION_MINUTES} and {settings.MAX_SESSION_MINUTES} minutes",
                duration=duration,
                minimum=settings.MIN_SESSION_MINUTES,
                maximum=settings.MAX_SESSION_MINUTES,
            )
        return duration

    async def _load(self, family_id: str, child_id: str):
        """Family, its clock, and the child with today's sessions."""
        family: Family = await self.store.get_family_record(family_id)
        child: Child = self.store.require_child(family, child_id)
        clock: FamilyClock = self.store.clock_for(family)
        today = clock.today()
        child.sessions = await self.store.list_sessions(family_id, child_id, today, today)
        return family, child, clock

    # --- creation ---

    async def start_session(
        self,
        family_id: str,
        child_id: str,
        actor: Actor,
        app: Optional[str],
        device: Optional[str],
        counts_toward_total: bool = True,
        estimated_duration: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """
        Start a regular session now.

        Raises:
            ValidationError: app or device missing
            QuotaExceeded: counted session with no time left, or a cap used up
            BedtimeActive: inside the rest window
        """
        require_own_record(actor, child_id)
        if not app or not device:
            raise ValidationError("Select an app and a device to start a session", field="app" if not app else "device")

        _, child, clock = await self._load(family_id, child_id)
        now = clock.now()
        today = clock.today()

        if not actor.is_guardian:
            if counts_toward_total:
                remaining = remaining_time(child, today)
                if remaining <= 0:
                    raise QuotaExceeded("No screen time left today", child_id=child_id, remaining=remaining)
                for limit_type, key, left in (
                    ("app", app, app_remaining(child, today, app)),
                    ("device", device, device_remaining(child, today, device)),
                ):
                    if left is not None and left <= 0:
                        raise QuotaExceeded(
                            f"No time left today for {limit_type} '{key}'",
                            child_id=child_id,
                            remaining=left,
                            limit_type=limit_type,
                            limit_key=key,
                        )
            window = current_window(child, now, clock)
            if window is not None:
                raise BedtimeActive(
                    f"Bedtime is active until {window.wake_time}",
                    child_id=child_id,
                    bedtime=window.bedtime,
                    wake_time=window.wake_time,
                )

        session = Session(
            id=session_id or new_session_id(now),
            date=today,
            kind=SessionKind.REGULAR,
            state=transition(None, LifecycleEvent.START),
            duration=0,
            counts_toward_total=counts_toward_total,
            app=app,
            device=device,
            time_started=now,
            estimated_duration=estimated_duration,
        )
        return await self.store.add_session(
            family_id, child_id, session, EventType.SESSION_STARTED, actor_id=actor.id or actor.role.value
        )

    async def quick_add(
        self,
        family_id: str,
        child_id: str,
        actor: Actor,
        duration: int,
        app: Optional[str] = None,
        device: Optional[str] = None,
        counts_toward_total: bool = True,
        time_started: Optional[datetime] = None,
        time_ended: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """
        Record a finished regular session.

        With both timestamps the duration comes from them. Otherwise the missing
        end defaults to now and the missing start to ``duration`` minutes earlier.
        """
        require_own_record(actor, child_id)
        time_started = DateTimeUtils.to_utc(time_started) if time_started is not None else None
        time_ended = DateTimeUtils.to_utc(time_ended) if time_ended is not None else None
        _, child, clock = await self._load(family_id, child_id)
        if not actor.is_guardian and not child.settings.approvals.child_quick_add_allowed:
            raise InsufficientPermissions(
                "Quick add needs a guardian's approval", required_role="guardian", user_role=actor.role.value
            )

        if time_started is not None and time_ended is not None:
            if time_ended < time_started:
                raise ValidationError("Session end is before its start", field="time_ended")
            duration = minutes_between(time_started, time_ended)
        duration = self._check_duration(duration)
        if time_started is None and time_ended is None:
            time_ended = clock.now()
        if time_ended is None:
            time_ended = time_started + timedelta(minutes=duration)
        if time_started is None:
            time_started = time_ended - timedelta(minutes=duration)

        session = Session(
            id=session_id or new_session_id(clock.now()),
            date=clock.local_date(time_ended),
            kind=SessionKind.REGULAR,
            state=transition(None, LifecycleEvent.RECORD),
            duration=duration,
            counts_toward_total=counts_toward_total,
            app=app,
            device=device,
            time_started=time_started,
            time_ended=time_ended,
        )
        return await self.store.add_session(
            family_id, child_id, session, EventType.SESSION_ADDED, actor_id=actor.id or actor.role.value
        )

    async def award_bonus(
        self,
        family_id: str,
        child_id: str,
        actor: Actor,
        duration: int,
        reason: Optional[str] = None,
        reason_message: Optional[str] = None,
        activity_id: Optional[str] = None,
    ) -> Session:
        """
        Credit bonus minutes.

        A direct bonus (no ``activity_id``) is guardian-only, needs a reason and
        awards ``duration`` minutes. An activity bonus awards
        ``round_half_up(duration * ratio)`` minutes for ``duration`` minutes of
        the activity.
        """
        require_own_record(actor, child_id)
        duration = self._check_duration(duration)
        _, child, clock = await self._load(family_id, child_id)

        if activity_id is None:
            require_guardian(actor, "award a direct bonus")
            if not reason:
                raise ValidationError("A bonus needs a reason", field="reason")
            awarded = duration
        else:
            if not actor.is_guardian and not child.settings.approvals.child_activity_bonus_allowed:
                raise InsufficientPermissions(
                    "Activity bonus needs a guardian's approval", required_role="guardian", user_role=actor.role.value
                )
            activity = resolve_bonus_activity(child, activity_id)
            if activity is None:
                raise ValidationError(
                    f"Bonus activity '{activity_id}' is unknown or disabled", field="activity_id", value=activity_id
                )
            awarded = round_half_up(duration * activity.ratio)
            reason = reason or activity.description or activity_id

        now = clock.now()
        session = Session(
            id=new_session_id(now),
            date=clock.today(),
            kind=SessionKind.BONUS,
            state=transition(None, LifecycleEvent.RECORD),
            duration=duration,
            counts_toward_total=False,
            bonus_time_awarded=awarded,
            reason=reason,
            reason_message=reason_message,
            activity_type=activity_id,
        )
        stored = await self.store.add_session(
            family_id, child_id, session, EventType.BONUS_APPLIED, actor_id=actor.id or actor.role.value
        )
        self.logger.info("Awarded %d bonus minutes to child %s in family %s", awarded, child_id, family_id)
        return stored

    async def apply_punishment(
        self,
        family_id: str,
        child_id: str,
        actor: Actor,
        duration: int,
        reason: Optional[str],
        reason_message: Optional[str] = None,
    ) -> Session:
        """Debit minutes from today's budget; never fails on exceeding the limit."""
        require_guardian(actor, "apply a punishment")
        if not reason:
            raise ValidationError("A punishment needs a reason", field="reason")
        duration = self._check_duration(duration)
        _, _, clock = await self._load(family_id, child_id)

        session = Session(
            id=new_session_id(clock.now()),
            date=clock.today(),
            kind=SessionKind.PUNISHMENT,
            state=transition(None, LifecycleEvent.RECORD),
            duration=duration,
            counts_toward_total=True,
            reason=reason,
            reason_message=reason_message,
        )
        stored = await self.store.add_session(
            family_id, child_id, session, EventType.PUNISHMENT_APPLIED, actor_id=actor.id or actor.role.value
        )
        self.logger.info("Applied %d punishment minutes to child %s in family %s", duration, child_id, family_id)
        return stored

    # --- changes to existing sessions ---

    async def end_session(
        self,
        family_id: str,
        child_id: str,
        session_id: str,
        actor: Actor,
        time_ended: Optional[datetime] = None,
        extra_changes: Optional[Dict[str, Any]] = None,
    ) -> Session:
        """
        End an active session; duration is computed from the timestamps.

        Raises:
            SessionNotFound: unknown session
            SessionAlreadyClosed: the session has already ended
            ValidationError: end before start
        """
        require_own_record(actor, child_id)
        if extra_changes:
            self._check_passcode(actor, "edit a session")
        family = await self.store.get_family_record(family_id)
        end = DateTimeUtils.to_utc(time_ended) if time_ended is not None else self.store.clock_for(family).now()

        def guard(current: Session) -> None:
            transition(current.state, LifecycleEvent.END, session_id=current.id)
            if current.time_started is not None and end < current.time_started:
                raise ValidationError("Session end is before its start", field="time_ended")

        changes: Dict[str, Any] = dict(extra_changes or {})
        changes.update({"time_ended": end, "state": SessionState.CLOSED, "estimated_duration": None})
        return await self.store.update_session(
            family_id,
            child_id,
            session_id,
            changes,
            EventType.SESSION_ENDED,
            actor_id=actor.id or actor.role.value,
            guard=guard,
        )

    async def edit_session(
        self, family_id: str, child_id: str, session_id: str, actor: Actor, patch: SessionPatch
    ) -> Session:
        """
        Change fields of a session without changing its state.

        Raises:
            PasscodeRequired: child without the guardian passcode
            InvalidTransition: ``timeEnded`` on an active session
            InvalidDuration: explicit duration outside the bounds
        """
        require_own_record(actor, child_id)
        self._check_passcode(actor, "edit a session")
        changes = patch.changes()
        if not changes:
            raise ValidationError("Nothing to update", field="patch")
        if changes.get("duration") is not None:
            self._check_duration(changes["duration"])

        def guard(current: Session) -> None:
            transition(current.state, LifecycleEvent.EDIT, session_id=current.id)
            if current.state == SessionState.ACTIVE and "time_ended" in changes:
                raise InvalidTransition(
                    "End the session instead of setting timeEnded", state=current.state.value, event="edit"
                )

        return await self.store.update_session(
            family_id,
            child_id,
            session_id,
            patch,
            EventType.SESSION_EDITED,
            actor_id=actor.id or actor.role.value,
            guard=guard,
        )

    async def apply_update(
        self, family_id: str, child_id: str, session_id: str, actor: Actor, patch: SessionPatch
    ) -> Session:
        """A ``timeEnded`` on an active session ends it; anything else is an edit."""
        changes = patch.changes()
        if changes.get("time_ended") is not None:
            current = await self.store.get_session(family_id, child_id, session_id)
            if current.state == SessionState.ACTIVE:
                rest = {k: v for k, v in changes.items() if k != "time_ended"}
                return await self.end_session(
                    family_id, child_id, session_id, actor, changes["time_ended"], extra_changes=rest
                )
        return await self.edit_session(family_id, child_id, session_id, actor, patch)

    async def delete_session(self, family_id: str, child_id: str, session_id: str, actor: Actor) -> Session:
        require_own_record(actor, child_id)
        self._check_passcode(actor, "delete a session")
        return await self.store.delete_session(family_id, child_id, session_id, actor_id=actor.id or actor.role.value)
