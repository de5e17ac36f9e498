"""
Screen-time routes for families, children, sessions and settings.

This module provides the REST API of the engine:
- Family snapshots filtered per viewer, and family create/replace
- Session lifecycle (start, quick add, bonus, punishment, end, edit, delete)
- Daily usage summaries and usage history
- Child, master and family-wide settings
- Event log catch-up and family export

Engine errors are answered with their HTTP status and a
``{"error", "message", "context"}`` detail.
"""

from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from family_screen_time.managers.bedtime_evaluator import current_window
from family_screen_time.managers.errors import ScreenTimeError, ValidationError
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.notification_bus import NotificationBus, event_payload
from family_screen_time.managers.session_lifecycle import SessionLifecycleController, require_own_record
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.managers.usage_aggregator import daily_summary, history
from family_screen_time.models.screen_time_models import (
    GUARDIANS_AUDIENCE,
    Actor,
    ChildSettings,
    Family,
    FamilySettings,
    FamilySnapshot,
    Session,
    SessionPatch,
    SettingsPatch,
    UsageHistory,
    child_audience,
)
from family_screen_time.routes.screen_time.dependencies import (
    get_actor,
    get_bus,
    get_controller,
    get_store,
    require_guardian_actor,
)
from family_screen_time.routes.screen_time.models import (
    AvailableAppsRequest,
    BonusDraft,
    ChildUsageResponse,
    EndSessionRequest,
    EventPageResponse,
    PunishmentDraft,
    QuickAddDraft,
    SessionDeletedResponse,
    SessionDraft,
    StartSessionDraft,
)
from family_screen_time.utils.logging_utils import log_error_with_context

logger = get_logger(prefix="[ScreenTime Routes]")

router = APIRouter(prefix="/api/families", tags=["Screen Time"])

HISTORY_DEFAULT_DAYS = 7


def _http_error(e: ScreenTimeError, operation: str, **context) -> HTTPException:
    """Log an engine error and turn it into the matching HTTPException."""
    if e.http_status >= 500:
        log_error_with_context(e, context, operation=operation)
        logger.error("%s failed: %s", operation, e)
    else:
        logger.warning("%s rejected (%s): %s", operation, e.error_code, e)
    return HTTPException(status_code=e.http_status, detail=e.to_detail())


# --- Family ---


@router.get("/{family_id}", response_model=FamilySnapshot)
async def get_family_snapshot(
    family_id: str,
    day: Optional[date] = Query(None, description="Usage day, defaults to today in the family's zone"),
    actor: Actor = Depends(get_actor),
    store: SessionStore = Depends(get_store),
):
    """
    Get the family state as seen by the viewer.

    - Guardians see every child with today's usage summary.
    - A child sees only their own record and the family-wide settings.
    """
    try:
        return await store.get_family_snapshot(family_id, actor, day)
    except ScreenTimeError as e:
        raise _http_error(e, "get_family_snapshot", family_id=family_id, viewer=actor.label)


@router.put("/{family_id}", response_model=Family)
async def put_family(
    family_id: str,
    family: Family,
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    """Create a family, or replace its guardians, children and settings. Stored sessions are kept."""
    try:
        if family.family_id != family_id:
            raise ValidationError("familyId in body does not match the path", field="familyId", value=family.family_id)
        return await store.put_family(family, actor_id=actor.id or actor.role.value)
    except ScreenTimeError as e:
        raise _http_error(e, "put_family", family_id=family_id)


@router.get("/{family_id}/export")
async def export_family(
    family_id: str,
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    """Export the whole family with every session as camelCase JSON."""
    try:
        exported = await store.export_family(family_id)
        logger.info("Family %s exported by %s", family_id, actor.label)
        return exported
    except ScreenTimeError as e:
        raise _http_error(e, "export_family", family_id=family_id)


# --- Sessions ---


@router.post(
    "/{family_id}/children/{child_id}/sessions",
    response_model=Session,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(
    family_id: str,
    child_id: str,
    draft: SessionDraft = Body(...),
    actor: Actor = Depends(get_actor),
    controller: SessionLifecycleController = Depends(get_controller),
):
    """
    Create a session from a draft tagged by ``mode``.

    **Modes:**
    - ``start``: start a regular session now (quota, app/device caps and bedtime apply to children)
    - ``quick_add``: record a finished session
    - ``bonus``: direct bonus (guardian) or activity bonus
    - ``punishment``: debit minutes (guardian)
    """
    try:
        if isinstance(draft, StartSessionDraft):
            return await controller.start_session(
                family_id,
                child_id,
                actor,
                app=draft.app,
                device=draft.device,
                counts_toward_total=draft.counts_toward_total,
                estimated_duration=draft.estimated_duration,
                session_id=draft.id,
            )
        if isinstance(draft, QuickAddDraft):
            if draft.duration is None and (draft.time_started is None or draft.time_ended is None):
                raise ValidationError("Quick add needs a duration or both timestamps", field="duration")
            return await controller.quick_add(
                family_id,
                child_id,
                actor,
                duration=draft.duration,
                app=draft.app,
                device=draft.device,
                counts_toward_total=draft.counts_toward_total,
                time_started=draft.time_started,
                time_ended=draft.time_ended,
                session_id=draft.id,
            )
        if isinstance(draft, BonusDraft):
            return await controller.award_bonus(
                family_id,
                child_id,
                actor,
                duration=draft.duration,
                reason=draft.reason,
                reason_message=draft.reason_message,
                activity_id=draft.activity_type,
            )
        if isinstance(draft, PunishmentDraft):
            return await controller.apply_punishment(
                family_id, child_id, actor, duration=draft.duration, reason=draft.reason, reason_message=draft.reason_message
            )
        raise ValidationError("Unknown session mode", field="mode")
    except ScreenTimeError as e:
        raise _http_error(e, f"create_session:{draft.mode}", family_id=family_id, child_id=child_id, actor=actor.label)


@router.put("/{family_id}/children/{child_id}/sessions/{session_id}", response_model=Session)
async def update_session(
    family_id: str,
    child_id: str,
    session_id: str,
    patch: SessionPatch,
    actor: Actor = Depends(get_actor),
    controller: SessionLifecycleController = Depends(get_controller),
):
    """Partially update a session. A ``timeEnded`` on an active session ends it."""
    try:
        return await controller.apply_update(family_id, child_id, session_id, actor, patch)
    except ScreenTimeError as e:
        raise _http_error(e, "update_session", family_id=family_id, child_id=child_id, session_id=session_id)


@router.post("/{family_id}/children/{child_id}/sessions/{session_id}/end", response_model=Session)
async def end_session(
    family_id: str,
    child_id: str,
    session_id: str,
    request: Optional[EndSessionRequest] = Body(None),
    actor: Actor = Depends(get_actor),
    controller: SessionLifecycleController = Depends(get_controller),
):
    try:
        return await controller.end_session(
            family_id, child_id, session_id, actor, time_ended=request.time_ended if request else None
        )
    except ScreenTimeError as e:
        raise _http_error(e, "end_session", family_id=family_id, child_id=child_id, session_id=session_id)


@router.delete("/{family_id}/children/{child_id}/sessions/{session_id}", response_model=SessionDeletedResponse)
async def delete_session(
    family_id: str,
    child_id: str,
    session_id: str,
    actor: Actor = Depends(get_actor),
    controller: SessionLifecycleController = Depends(get_controller),
):
    """Delete a session. Children need the guardian passcode header."""
    try:
        deleted = await controller.delete_session(family_id, child_id, session_id, actor)
        return SessionDeletedResponse(session=deleted)
    except ScreenTimeError as e:
        raise _http_error(e, "delete_session", family_id=family_id, child_id=child_id, session_id=session_id)


# --- Usage ---


@router.get("/{family_id}/children/{child_id}/usage", response_model=ChildUsageResponse)
async def get_child_usage(
    family_id: str,
    child_id: str,
    day: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    store: SessionStore = Depends(get_store),
):
    """Daily usage summary for one child, plus whether the rest window is active now."""
    try:
        require_own_record(actor, child_id)
        family = await store.get_family_record(family_id)
        clock = store.clock_for(family)
        day = day or clock.today()
        child = await store.get_child(family_id, child_id, day, day)
        now = clock.now()
        window = current_window(child, now, clock)
        return ChildUsageResponse(
            summary=daily_summary(child, day, now, family.settings.warning_thresholds),
            bedtime_active=window is not None,
            bedtime=window,
        )
    except ScreenTimeError as e:
        raise _http_error(e, "get_child_usage", family_id=family_id, child_id=child_id)


@router.get("/{family_id}/children/{child_id}/history", response_model=UsageHistory)
async def get_child_history(
    family_id: str,
    child_id: str,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    actor: Actor = Depends(get_actor),
    store: SessionStore = Depends(get_store),
):
    """Usage history for an inclusive date range, the last seven days by default."""
    try:
        require_own_record(actor, child_id)
        family = await store.get_family_record(family_id)
        end = end or store.clock_for(family).today()
        start = start or end - timedelta(days=HISTORY_DEFAULT_DAYS - 1)
        child = await store.get_child(family_id, child_id, start, end)
        return history(child, start, end)
    except ScreenTimeError as e:
        raise _http_error(e, "get_child_history", family_id=family_id, child_id=child_id)


# --- Settings ---


@router.put("/{family_id}/children/{child_id}/settings", response_model=ChildSettings)
async def replace_child_settings(
    family_id: str,
    child_id: str,
    child_settings: ChildSettings,
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    try:
        return await store.update_child_settings(family_id, child_id, child_settings, actor_id=actor.id or actor.role.value)
    except ScreenTimeError as e:
        raise _http_error(e, "replace_child_settings", family_id=family_id, child_id=child_id)


@router.patch("/{family_id}/children/{child_id}/settings", response_model=ChildSettings)
async def patch_child_settings(
    family_id: str,
    child_id: str,
    patch: SettingsPatch = Body(...),
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    """Apply one typed settings change, selected by its ``field`` tag."""
    try:
        return await store.patch_child_settings(family_id, child_id, patch, actor_id=actor.id or actor.role.value)
    except ScreenTimeError as e:
        raise _http_error(e, "patch_child_settings", family_id=family_id, child_id=child_id, field=patch.field)


@router.put("/{family_id}/master-settings", response_model=Family)
async def apply_master_settings(
    family_id: str,
    master: ChildSettings,
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    """Copy one settings template onto every child of the family."""
    try:
        return await store.apply_master_settings(family_id, master, actor_id=actor.id or actor.role.value)
    except ScreenTimeError as e:
        raise _http_error(e, "apply_master_settings", family_id=family_id)


@router.put("/{family_id}/available-apps", response_model=FamilySettings)
async def update_available_apps(
    family_id: str,
    request: AvailableAppsRequest,
    actor: Actor = Depends(require_guardian_actor),
    store: SessionStore = Depends(get_store),
):
    try:
        return await store.update_available_apps(family_id, request.apps, actor_id=actor.id or actor.role.value)
    except ScreenTimeError as e:
        raise _http_error(e, "update_available_apps", family_id=family_id)


# --- Events ---


@router.get("/{family_id}/events", response_model=EventPageResponse)
async def get_events(
    family_id: str,
    after: int = Query(0, ge=0, description="Last sequence the client has seen"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    store: SessionStore = Depends(get_store),
    bus: NotificationBus = Depends(get_bus),
):
    """Logged events after ``after`` that the viewer is allowed to see."""
    try:
        await store.get_family_record(family_id)
        audience = GUARDIANS_AUDIENCE if actor.is_guardian else child_audience(actor.id)
        events = await bus.events_since(family_id, audience, after, limit)
        return EventPageResponse(
            family_id=family_id,
            events=[event_payload(e) for e in events],
            last_sequence=events[-1].sequence if events else after,
        )
    except ScreenTimeError as e:
        raise _http_error(e, "get_events", family_id=family_id, after=after)
