"""
Session Store: the system of record for families, child settings and sessions.

Each mutation follows the same discipline:

    read -> apply in memory -> validate invariants -> conditional write on the
    version that was read

When the conditional write loses to another writer, the store re-reads and
re-applies, up to ``STORE_CAS_MAX_ATTEMPTS`` times, and then raises
``ConcurrentModification``. Adding a session is an insert into its own record,
so concurrent adds never overwrite each other. A failed mutation writes nothing.

After every successful mutation the family's ``lastUpdated`` is bumped and a
change event is handed to the notification bus, which publishes it in the
background.
"""

from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from family_screen_time.config import settings
from family_screen_time.managers.errors import (
    ChildNotFound,
    ConcurrentModification,
    FamilyNotFound,
    SessionNotFound,
    ValidationError,
)
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.notification_bus import (
    NotificationBus,
    audiences_for_child,
    audiences_for_family,
)
from family_screen_time.managers.screen_time_repository import ScreenTimeRepository
from family_screen_time.managers.usage_aggregator import daily_summary
from family_screen_time.models.screen_time_models import (
    Actor,
    Child,
    ChildSettings,
    EventType,
    Family,
    FamilyEvent,
    FamilySettings,
    FamilySnapshot,
    Session,
    SessionPatch,
    SessionState,
    SettingsPatch,
)
from family_screen_time.utils.datetime_utils import DateTimeUtils, FamilyClock, minutes_between, round_half_up
from family_screen_time.utils.logging_utils import log_performance

logger = get_logger(prefix="[SessionStore]")

SessionGuard = Callable[[Session], None]
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _first_error(exc: PydanticValidationError) -> Dict[str, Any]:
    errors = exc.errors()
    return errors[0] if errors else {}


def validate_session(data: Mapping[str, Any]) -> Session:
    """Build a Session, turning model errors into the engine's ValidationError."""
    try:
        return Session.model_validate(dict(data))
    except PydanticValidationError as exc:
        first = _first_error(exc)
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        message = first.get("msg", "Invalid session").removeprefix("Value error, ")
        raise ValidationError(message, field=field, constraint=first.get("type")) from exc


def validate_family(data: Mapping[str, Any]) -> Family:
    try:
        return Family.model_validate(dict(data))
    except PydanticValidationError as exc:
        first = _first_error(exc)
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        message = first.get("msg", "Invalid family").removeprefix("Value error, ")
        raise ValidationError(message, field=field, constraint=first.get("type")) from exc


class SessionStore:
    """
    Compare-and-swap store over a ``ScreenTimeRepository``.

    Args:
        repository: Record-level backend (MongoDB or in-memory)
        bus: Notification bus receiving change events, optional
        clock: Time source; the family's own zone is applied per call
        max_attempts: Conditional-write attempts before giving up
    """

    def __init__(
        self,
        repository: ScreenTimeRepository,
        bus: Optional[NotificationBus] = None,
        clock: Optional[FamilyClock] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.clock = clock or FamilyClock(settings.FAMILY_TIMEZONE)
        self.max_attempts = max_attempts or settings.STORE_CAS_MAX_ATTEMPTS
        self.logger = logger

    # --- reads ---

    def clock_for(self, family: Family) -> FamilyClock:
        return self.clock.with_timezone(family.effective_timezone)

    async def get_family_record(self, family_id: str) -> Family:
        """Family record without sessions."""
        family = await self.repository.get_family(family_id)
        if family is None:
            raise FamilyNotFound(f"Family '{family_id}' not found", family_id=family_id)
        return family

    @staticmethod
    def require_child(family: Family, child_id: str) -> Child:
        child = family.children.get(child_id)
        if child is None:
            raise ChildNotFound(
                f"Child '{child_id}' not found in family '{family.family_id}'",
                family_id=family.family_id,
                child_id=child_id,
            )
        return child

    @log_performance("get_family")
    async def get_family(self, family_id: str) -> Family:
        """Return the family with every child's sessions loaded."""
        family = await self.get_family_record(family_id)
        sessions = await self.repository.list_sessions(family_id)
        for child_id, session in sessions:
            child = family.children.get(child_id)
            if child is not None:
                child.sessions.append(session)
        for child in family.children.values():
            child.sessions.sort(key=lambda s: (s.date, s.created_at or s.time_started or EPOCH))
        return family

    async def get_child(
        self, family_id: str, child_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> Child:
        """Return one child with the sessions between ``start`` and ``end`` loaded."""
        family = await self.get_family_record(family_id)
        child = self.require_child(family, child_id)
        child.sessions = await self.list_sessions(family_id, child_id, start, end)
        return child

    async def list_sessions(
        self, family_id: str, child_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Session]:
        found = await self.repository.list_sessions(family_id, child_id, start, end)
        return sorted((s for _, s in found), key=lambda s: (s.date, s.id))

    async def get_session(self, family_id: str, child_id: str, session_id: str) -> Session:
        family = await self.get_family_record(family_id)
        self.require_child(family, child_id)
        return await self._existing_session(family_id, child_id, session_id)

    async def _existing_session(self, family_id: str, child_id: str, session_id: str) -> Session:
        session = await self.repository.get_session(family_id, child_id, session_id)
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found", child_id=child_id, session_id=session_id)
        return session

    async def get_family_snapshot(self, family_id: str, viewer: Actor, day: Optional[date] = None) -> FamilySnapshot:
        """
        Family state filtered for ``viewer``.

        Guardians get every child with a usage summary for ``day``. A child gets
        only their own record plus the family-wide settings.

        Raises:
            FamilyNotFound, ChildNotFound: unknown family or child viewer
            ValidationError: child viewer without an id
        """
        family = await self.get_family(family_id)
        clock = self.clock_for(family)
        day = day or clock.today()
        now = clock.now()

        if viewer.is_guardian:
            children = family.children
            guardians = family.guardians
        else:
            if not viewer.id:
                raise ValidationError("A child viewer needs an id", field="viewer_id")
            children = {viewer.id: self.require_child(family, viewer.id)}
            guardians = []

        return FamilySnapshot(
            family_id=family.family_id,
            name=family.name,
            timezone=family.effective_timezone,
            viewer_type=viewer.role,
            viewer_id=viewer.id,
            guardians=guardians,
            children=children,
            usage={
                child_id: daily_summary(child, day, now, family.settings.warning_thresholds)
                for child_id, child in children.items()
            },
            settings=family.settings,
            version=family.version,
            last_updated=family.last_updated,
        )

    async def export_family(self, family_id: str) -> Dict[str, Any]:
        """Full family with all sessions, as camelCase JSON."""
        family = await self.get_family(family_id)
        exported = family.model_dump(mode="json", by_alias=True)
        exported["exportedAt"] = DateTimeUtils.format_iso(self.clock.now())
        exported["sessionCount"] = sum(len(c.sessions) for c in family.children.values())
        return exported

    # --- session mutations ---

    @log_performance("add_session")
    async def add_session(
        self,
        family_id: str,
        child_id: str,
        session: Session,
        event_type: EventType = EventType.SESSION_ADDED,
        actor_id: Optional[str] = None,
    ) -> Session:
        """
        Insert a new session for a child.

        Raises:
            FamilyNotFound, ChildNotFound: unknown family or child
            ValidationError: invariant violation or duplicate session id
        """
        family = await self.get_family_record(family_id)
        self.require_child(family, child_id)

        now = self.clock.now()
        data = session.model_dump()
        data.update(
            {
                "created_at": session.created_at or now,
                "updated_at": now,
                "updated_by": actor_id or session.updated_by,
                "version": 1,
            }
        )
        stored = validate_session(data)

        if not await self.repository.insert_session(family_id, child_id, stored):
            raise ValidationError(
                f"Session '{stored.id}' already exists", field="id", value=stored.id, constraint="unique"
            )

        await self.repository.touch_family(family_id, now)
        self.logger.info("Added %s session %s for child %s in family %s", stored.kind.value, stored.id, child_id, family_id)
        self._emit(
            family_id,
            audiences_for_child(child_id),
            event_type,
            child_id=child_id,
            session=stored,
            actor_id=actor_id,
            live=family.settings.notifications_enabled,
        )
        return stored

    @log_performance("update_session")
    async def update_session(
        self,
        family_id: str,
        child_id: str,
        session_id: str,
        patch: Union[SessionPatch, Mapping[str, Any]],
        event_type: EventType = EventType.SESSION_UPDATED,
        actor_id: Optional[str] = None,
        guard: Optional[SessionGuard] = None,
    ) -> Session:
        """
        Merge ``patch`` into a session with compare-and-swap.

        ``duration`` is recomputed from the timestamps when the patch moves one of
        them, both are present after the merge and the patch did not supply
        ``duration``. Moving a timestamp also moves ``date`` to the family-local
        day of the end (closed) or start (active). A new ``duration`` on a bonus
        rescales ``bonusTimeAwarded`` by the ratio it was awarded with.
        ``guard`` is called with the freshly read session on every attempt and
        may raise to abort.

        Raises:
            FamilyNotFound, ChildNotFound, SessionNotFound: unknown records
            ValidationError: merged session breaks an invariant
            ConcurrentModification: lost every compare-and-swap attempt
        """
        changes = patch.changes() if isinstance(patch, SessionPatch) else dict(patch)
        family = await self.get_family_record(family_id)
        self.require_child(family, child_id)
        clock = self.clock_for(family)
        retimed = "time_started" in changes or "time_ended" in changes

        for attempt in range(1, self.max_attempts + 1):
            current = await self._existing_session(family_id, child_id, session_id)
            if guard is not None:
                guard(current)

            now = self.clock.now()
            merged = current.model_dump(exclude={"active"})
            merged.update(changes)
            if retimed and "duration" not in changes and merged.get("time_started") and merged.get("time_ended"):
                merged["duration"] = max(0, minutes_between(merged["time_started"], merged["time_ended"]))
            if retimed:
                # A closed session belongs to the day it ended, an active one to the day it started
                anchor = merged.get("time_ended") if current.state == SessionState.CLOSED else merged.get("time_started")
                if anchor is not None:
                    merged["date"] = clock.local_date(anchor)
            if changes.get("duration") is not None and current.bonus_time_awarded is not None and current.duration:
                merged["bonus_time_awarded"] = round_half_up(
                    merged["duration"] * current.bonus_time_awarded / current.duration
                )
            merged.update({"updated_at": now, "updated_by": actor_id, "version": current.version + 1})
            updated = validate_session(merged)

            if await self.repository.replace_session(family_id, child_id, updated, current.version):
                await self.repository.touch_family(family_id, now)
                self.logger.info("Updated session %s for child %s (attempt %d)", session_id, child_id, attempt)
                self._emit(
                    family_id,
                    audiences_for_child(child_id),
                    event_type,
                    child_id=child_id,
                    session=updated,
                    actor_id=actor_id,
                    live=family.settings.notifications_enabled,
                )
                return updated

            self.logger.warning(
                "Version conflict updating session %s (attempt %d/%d)", session_id, attempt, self.max_attempts
            )

        raise ConcurrentModification(
            f"Session '{session_id}' kept changing, please retry", record=f"session:{session_id}", attempts=self.max_attempts
        )

    @log_performance("delete_session")
    async def delete_session(
        self,
        family_id: str,
        child_id: str,
        session_id: str,
        actor_id: Optional[str] = None,
        guard: Optional[SessionGuard] = None,
    ) -> Session:
        """Remove a session and return the deleted record."""
        family = await self.get_family_record(family_id)
        self.require_child(family, child_id)

        for attempt in range(1, self.max_attempts + 1):
            current = await self._existing_session(family_id, child_id, session_id)
            if guard is not None:
                guard(current)
            if await self.repository.delete_session(family_id, child_id, session_id, current.version):
                await self.repository.touch_family(family_id, self.clock.now())
                self.logger.info("Deleted session %s for child %s in family %s", session_id, child_id, family_id)
                self._emit(
                    family_id,
                    audiences_for_child(child_id),
                    EventType.SESSION_DELETED,
                    child_id=child_id,
                    session=current,
                    actor_id=actor_id,
                    live=family.settings.notifications_enabled,
                )
                return current
            self.logger.warning(
                "Version conflict deleting session %s (attempt %d/%d)", session_id, attempt, self.max_attempts
            )

        raise ConcurrentModification(
            f"Session '{session_id}' kept changing, please retry", record=f"session:{session_id}", attempts=self.max_attempts
        )

    # --- family and settings mutations ---

    async def _mutate_family(self, family_id: str, mutate: Callable[[Family], Family]) -> Family:
        for attempt in range(1, self.max_attempts + 1):
            current = await self.get_family_record(family_id)
            now = self.clock.now()
            changed = mutate(current.model_copy(deep=True))
            data = changed.model_dump()
            data.update({"version": current.version + 1, "last_updated": now})
            updated = validate_family(data)
            if await self.repository.replace_family(updated, current.version):
                return updated
            self.logger.warning(
                "Version conflict updating family %s (attempt %d/%d)", family_id, attempt, self.max_attempts
            )
        raise ConcurrentModification(
            f"Family '{family_id}' kept changing, please retry", record=f"family:{family_id}", attempts=self.max_attempts
        )

    @log_performance("put_family")
    async def put_family(self, family: Family, actor_id: Optional[str] = None) -> Family:
        """
        Create a family or replace its guardians, children and settings.

        Stored sessions are kept; sessions in the payload are ignored.
        """
        for child in family.children.values():
            child.sessions = []

        now = self.clock.now()
        existing = await self.repository.get_family(family.family_id)
        if existing is None:
            data = family.model_dump()
            data.update({"version": 1, "created_at": now, "last_updated": now})
            created = validate_family(data)
            if await self.repository.insert_family(created):
                self.logger.info("Created family %s with %d children", created.family_id, len(created.children))
                self._emit(
                    created.family_id,
                    audiences_for_family(created),
                    EventType.FAMILY_UPDATED,
                    actor_id=actor_id,
                    live=created.settings.notifications_enabled,
                )
                return created

        def replace(current: Family) -> Family:
            return current.model_copy(
                update={
                    "name": family.name,
                    "timezone": family.timezone,
                    "guardians": family.guardians,
                    "children": family.children,
                    "settings": family.settings,
                }
            )

        updated = await self._mutate_family(family.family_id, replace)
        self.logger.info("Replaced family %s with %d children", updated.family_id, len(updated.children))
        self._emit(
            updated.family_id,
            audiences_for_family(updated),
            EventType.FAMILY_UPDATED,
            actor_id=actor_id,
            live=updated.settings.notifications_enabled,
        )
        return updated

    @log_performance("update_child_settings")
    async def update_child_settings(
        self, family_id: str, child_id: str, child_settings: ChildSettings, actor_id: Optional[str] = None
    ) -> ChildSettings:
        def replace(family: Family) -> Family:
            self.require_child(family, child_id).settings = child_settings
            return family

        updated = await self._mutate_family(family_id, replace)
        result = updated.children[child_id].settings
        self.logger.info("Replaced settings of child %s in family %s", child_id, family_id)
        self._emit(
            family_id,
            audiences_for_child(child_id),
            EventType.SETTINGS_CHANGED,
            child_id=child_id,
            setting_path="settings",
            value=result.model_dump(mode="json", by_alias=True),
            actor_id=actor_id,
            live=updated.settings.notifications_enabled,
        )
        return result

    @log_performance("patch_child_settings")
    async def patch_child_settings(
        self, family_id: str, child_id: str, patch: SettingsPatch, actor_id: Optional[str] = None
    ) -> ChildSettings:
        """Apply one typed settings patch; only its target field changes."""

        def apply(family: Family) -> Family:
            child = self.require_child(family, child_id)
            child.settings = patch.apply(child.settings)
            return family

        updated = await self._mutate_family(family_id, apply)
        result = updated.children[child_id].settings
        self.logger.info("Patched %s of child %s in family %s", patch.setting_path, child_id, family_id)
        self._emit(
            family_id,
            audiences_for_child(child_id),
            EventType.SETTINGS_CHANGED,
            child_id=child_id,
            setting_path=patch.setting_path,
            value=patch.model_dump(mode="json", by_alias=True),
            actor_id=actor_id,
            live=updated.settings.notifications_enabled,
        )
        return result

    @log_performance("apply_master_settings")
    async def apply_master_settings(
        self, family_id: str, master: ChildSettings, actor_id: Optional[str] = None
    ) -> Family:
        """Copy one settings template onto every child of the family."""

        def apply(family: Family) -> Family:
            for child in family.children.values():
                child.settings = master.model_copy(deep=True)
            return family

        updated = await self._mutate_family(family_id, apply)
        self.logger.info("Applied master settings to %d children in family %s", len(updated.children), family_id)
        self._emit(
            family_id,
            audiences_for_family(updated),
            EventType.MASTER_SETTINGS_APPLIED,
            setting_path="settings",
            value=master.model_dump(mode="json", by_alias=True),
            actor_id=actor_id,
            live=updated.settings.notifications_enabled,
        )
        return updated

    @log_performance("update_available_apps")
    async def update_available_apps(
        self, family_id: str, apps: List[str], actor_id: Optional[str] = None
    ) -> FamilySettings:
        def apply(family: Family) -> Family:
            family.settings = family.settings.model_copy(update={"available_apps": list(apps)})
            return family

        updated = await self._mutate_family(family_id, apply)
        self.logger.info("Updated available apps of family %s (%d apps)", family_id, len(updated.settings.available_apps))
        self._emit(
            family_id,
            audiences_for_family(updated),
            EventType.AVAILABLE_APPS_UPDATED,
            setting_path="availableApps",
            value=updated.settings.available_apps,
            actor_id=actor_id,
            live=updated.settings.notifications_enabled,
        )
        return updated.settings

    # --- events ---

    def _emit(
        self,
        family_id: str,
        audiences: List[str],
        event_type: EventType,
        child_id: Optional[str] = None,
        session: Optional[Session] = None,
        setting_path: Optional[str] = None,
        value: Any = None,
        actor_id: Optional[str] = None,
        live: bool = True,
    ) -> None:
        """Hand an event to the bus; ``live=False`` only logs it (notifications off)."""
        if self.bus is None:
            return
        event = FamilyEvent(
            family_id=family_id,
            type=event_type,
            child_id=child_id,
            session=session,
            setting_path=setting_path,
            value=value,
            updated_by=actor_id,
            timestamp=self.clock.now(),
        )
        self.bus.schedule(family_id, audiences, event, live=live)

