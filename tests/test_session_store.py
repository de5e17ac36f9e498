"""
Tests for the session store.

Covers session inserts and updates with compare-and-swap retries, the family
and settings mutations, per-viewer snapshots and the change events handed to
the notification bus.
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FAMILY_ID, FIXED_NOW, make_family
from family_screen_time.managers.errors import (
    ChildNotFound,
    ConcurrentModification,
    FamilyNotFound,
    SessionNotFound,
    ValidationError,
)
from family_screen_time.managers.screen_time_repository import MongoScreenTimeRepository, family_to_document
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.models.screen_time_models import (
    Actor,
    ActorRole,
    AppCapPatch,
    ChildSettings,
    DailyLimit,
    EventType,
    LimitSettings,
    SessionPatch,
)
from screen_time_factories import bonus, regular

TODAY = date(2024, 3, 6)


async def _events(store, audience=None):
    await store.bus.drain()
    return await store.bus.events_since(FAMILY_ID, audience)


class TestAddSession:
    async def test_add_stamps_version_and_emits_event(self, seeded_store):
        stored = await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY), actor_id="mom")

        assert stored.version == 1
        assert stored.updated_by == "mom"
        assert stored.created_at == FIXED_NOW

        events = await _events(seeded_store)
        assert [e.type for e in events] == [EventType.FAMILY_UPDATED, EventType.SESSION_ADDED]
        added = events[-1]
        assert added.sequence == 2
        assert added.child_id == "alice"
        assert added.session.id == "s1"
        assert added.audiences == ["guardians", "child:alice"]

    async def test_duplicate_session_id(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        with pytest.raises(ValidationError) as exc_info:
            await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 10, TODAY))
        assert exc_info.value.context["field"] == "id"

    async def test_unknown_family_and_child(self, seeded_store):
        with pytest.raises(FamilyNotFound):
            await seeded_store.add_session("nope", "alice", regular("s1", 30, TODAY))
        with pytest.raises(ChildNotFound):
            await seeded_store.add_session(FAMILY_ID, "carol", regular("s1", 30, TODAY))

    async def test_add_bumps_last_updated(self, seeded_store, now):
        now.advance(minutes=5)
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        family = await seeded_store.get_family_record(FAMILY_ID)
        assert family.last_updated == FIXED_NOW + timedelta(minutes=5)

    async def test_last_updated_compares_instants(self, seeded_store, repository):
        half_second_later = FIXED_NOW + timedelta(milliseconds=500)

        await repository.touch_family(FAMILY_ID, half_second_later)
        await repository.touch_family(FAMILY_ID, FIXED_NOW)

        family = await seeded_store.get_family_record(FAMILY_ID)
        assert family.last_updated == half_second_later

    async def test_sessions_loaded_per_child(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        await seeded_store.add_session(FAMILY_ID, "bob", regular("s2", 20, TODAY))
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s3", 10, TODAY - timedelta(days=1)))

        family = await seeded_store.get_family(FAMILY_ID)
        assert [s.id for s in family.children["alice"].sessions] == ["s3", "s1"]
        assert [s.id for s in family.children["bob"].sessions] == ["s2"]

        child = await seeded_store.get_child(FAMILY_ID, "alice", TODAY, TODAY)
        assert [s.id for s in child.sessions] == ["s1"]


class TestUpdateSession:
    async def test_timestamp_change_recomputes_duration(self, seeded_store):
        session = await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        updated = await seeded_store.update_session(
            FAMILY_ID, "alice", "s1", SessionPatch(time_ended=session.time_started + timedelta(minutes=45))
        )
        assert updated.duration == 45
        assert updated.version == 2

    async def test_explicit_duration_survives_other_edits(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        updated = await seeded_store.update_session(FAMILY_ID, "alice", "s1", SessionPatch(app="minecraft"))
        assert updated.duration == 30
        assert updated.app == "minecraft"

    async def test_same_patch_twice_is_idempotent(self, seeded_store):
        session = await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        patch = SessionPatch(time_ended=session.time_started + timedelta(minutes=50), app="minecraft")

        first = await seeded_store.update_session(FAMILY_ID, "alice", "s1", patch)
        second = await seeded_store.update_session(FAMILY_ID, "alice", "s1", patch)

        ignored = {"updated_at", "version"}
        assert second.model_dump(exclude=ignored) == first.model_dump(exclude=ignored)
        assert second.duration == 50
        assert second.version == first.version + 1

    async def test_moved_timestamps_move_the_day(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        yesterday_evening = FIXED_NOW - timedelta(days=1) + timedelta(hours=7)

        updated = await seeded_store.update_session(
            FAMILY_ID,
            "alice",
            "s1",
            SessionPatch(time_started=yesterday_evening, time_ended=yesterday_evening + timedelta(minutes=20)),
        )

        assert updated.date == TODAY - timedelta(days=1)
        assert updated.duration == 20
        child = await seeded_store.get_child(FAMILY_ID, "alice", TODAY, TODAY)
        assert child.sessions == []

    async def test_bonus_duration_edit_rescales_award(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", bonus("b1", 40, 20, TODAY))

        updated = await seeded_store.update_session(FAMILY_ID, "alice", "b1", SessionPatch(duration=15))

        assert updated.duration == 15
        assert updated.bonus_time_awarded == 8
        assert updated.date == TODAY

    async def test_invalid_patch_writes_nothing(self, seeded_store):
        session = await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        with pytest.raises(ValidationError):
            await seeded_store.update_session(
                FAMILY_ID, "alice", "s1", SessionPatch(time_ended=session.time_started - timedelta(minutes=1))
            )
        current = await seeded_store.get_session(FAMILY_ID, "alice", "s1")
        assert current.version == 1
        assert current.time_ended == session.time_ended

    async def test_unknown_session(self, seeded_store):
        with pytest.raises(SessionNotFound):
            await seeded_store.update_session(FAMILY_ID, "alice", "missing", SessionPatch(app="x"))

    async def test_guard_aborts_update(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))

        def refuse(current):
            raise ValidationError("no", field="guard")

        with pytest.raises(ValidationError):
            await seeded_store.update_session(FAMILY_ID, "alice", "s1", SessionPatch(app="x"), guard=refuse)
        assert (await seeded_store.get_session(FAMILY_ID, "alice", "s1")).app == "youtube"

    async def test_lost_race_is_reapplied_on_fresh_read(self, seeded_store, repository):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        real_replace = repository.replace_session
        rival_done = []

        async def racing_replace(family_id, child_id, session, expected_version):
            if not rival_done:
                rival_done.append(True)
                current = await repository.get_session(family_id, child_id, session.id)
                rival = current.model_copy(update={"device": "tv", "version": current.version + 1})
                assert await real_replace(family_id, child_id, rival, current.version)
            return await real_replace(family_id, child_id, session, expected_version)

        repository.replace_session = AsyncMock(side_effect=racing_replace)

        updated = await seeded_store.update_session(FAMILY_ID, "alice", "s1", SessionPatch(app="minecraft"))

        assert repository.replace_session.await_count == 2
        assert updated.app == "minecraft"
        assert updated.device == "tv"
        assert updated.version == 3

    async def test_gives_up_after_max_attempts(self, seeded_store, repository):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        repository.replace_session = AsyncMock(return_value=False)

        with pytest.raises(ConcurrentModification) as exc_info:
            await seeded_store.update_session(FAMILY_ID, "alice", "s1", SessionPatch(app="minecraft"))

        assert repository.replace_session.await_count == 3
        assert exc_info.value.context["attempts"] == 3


class TestDeleteSession:
    async def test_delete_returns_record_and_emits(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        deleted = await seeded_store.delete_session(FAMILY_ID, "alice", "s1", actor_id="mom")

        assert deleted.id == "s1"
        with pytest.raises(SessionNotFound):
            await seeded_store.get_session(FAMILY_ID, "alice", "s1")
        events = await _events(seeded_store)
        assert events[-1].type == EventType.SESSION_DELETED

    async def test_delete_unknown(self, seeded_store):
        with pytest.raises(SessionNotFound):
            await seeded_store.delete_session(FAMILY_ID, "alice", "missing")


class TestFamilyMutations:
    async def test_put_family_keeps_stored_sessions(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        replacement = make_family()
        replacement.name = "Renamed"

        updated = await seeded_store.put_family(replacement)

        assert updated.version == 2
        family = await seeded_store.get_family(FAMILY_ID)
        assert family.name == "Renamed"
        assert [s.id for s in family.children["alice"].sessions] == ["s1"]

    async def test_patch_child_settings_changes_only_target(self, seeded_store):
        before = await seeded_store.get_family_record(FAMILY_ID)
        patch = AppCapPatch(schedule="weekday", app="youtube", minutes=30)

        result = await seeded_store.patch_child_settings(FAMILY_ID, "alice", patch, actor_id="mom")

        assert result.limits.weekday.per_app == {"youtube": 30}
        assert result.limits.weekday.daily_total == 90
        assert result.limits.weekend.daily_total == 150
        after = await seeded_store.get_family_record(FAMILY_ID)
        assert after.children["bob"].settings == before.children["bob"].settings
        assert after.version == before.version + 1

        event = (await _events(seeded_store))[-1]
        assert event.type == EventType.SETTINGS_CHANGED
        assert event.setting_path == "limits.weekday.perApp.youtube"
        assert event.audiences == ["guardians", "child:alice"]

    async def test_update_child_settings_replaces_whole_block(self, seeded_store):
        replacement = ChildSettings(limits=LimitSettings(weekday=DailyLimit(daily_total=45)))
        result = await seeded_store.update_child_settings(FAMILY_ID, "alice", replacement)
        assert result.limits.weekday.daily_total == 45
        assert result.limits.weekend is None

    async def test_settings_for_unknown_child(self, seeded_store):
        with pytest.raises(ChildNotFound):
            await seeded_store.update_child_settings(FAMILY_ID, "carol", ChildSettings())

    async def test_master_settings_reach_every_child(self, seeded_store):
        master = ChildSettings(limits=LimitSettings(weekday=DailyLimit(daily_total=60)))
        family = await seeded_store.apply_master_settings(FAMILY_ID, master, actor_id="mom")

        assert all(c.settings.limits.weekday.daily_total == 60 for c in family.children.values())
        bob_events = await _events(seeded_store, "child:bob")
        assert bob_events[-1].type == EventType.MASTER_SETTINGS_APPLIED

    async def test_available_apps(self, seeded_store):
        result = await seeded_store.update_available_apps(FAMILY_ID, ["youtube", "minecraft", "youtube"])
        assert result.available_apps == ["youtube", "minecraft"]
        event = (await _events(seeded_store, "child:alice"))[-1]
        assert event.type == EventType.AVAILABLE_APPS_UPDATED
        assert event.value == ["youtube", "minecraft"]

    async def test_family_write_conflict_exhausts(self, seeded_store, repository):
        repository.replace_family = AsyncMock(return_value=False)
        with pytest.raises(ConcurrentModification):
            await seeded_store.update_available_apps(FAMILY_ID, ["youtube"])
        assert repository.replace_family.await_count == 3


class TestReads:
    async def test_guardian_snapshot(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        snapshot = await seeded_store.get_family_snapshot(FAMILY_ID, Actor(role=ActorRole.GUARDIAN, id="mom"))

        assert set(snapshot.children) == {"alice", "bob"}
        assert snapshot.usage["alice"].used_time == 30
        assert snapshot.usage["alice"].remaining_time == 60
        assert snapshot.usage["bob"].daily_total == 120
        assert [g.id for g in snapshot.guardians] == ["mom"]

    async def test_child_snapshot_is_filtered(self, seeded_store):
        snapshot = await seeded_store.get_family_snapshot(FAMILY_ID, Actor(role=ActorRole.CHILD, id="alice"))
        assert list(snapshot.children) == ["alice"]
        assert list(snapshot.usage) == ["alice"]
        assert snapshot.guardians == []

    async def test_child_snapshot_needs_known_child(self, seeded_store):
        with pytest.raises(ChildNotFound):
            await seeded_store.get_family_snapshot(FAMILY_ID, Actor(role=ActorRole.CHILD, id="carol"))
        with pytest.raises(ValidationError):
            await seeded_store.get_family_snapshot(FAMILY_ID, Actor(role=ActorRole.CHILD))

    async def test_snapshot_for_another_day(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        snapshot = await seeded_store.get_family_snapshot(
            FAMILY_ID, Actor(role=ActorRole.GUARDIAN), day=TODAY - timedelta(days=1)
        )
        assert snapshot.usage["alice"].used_time == 0

    async def test_export(self, seeded_store):
        await seeded_store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
        await seeded_store.add_session(FAMILY_ID, "bob", regular("s2", 20, TODAY))

        exported = await seeded_store.export_family(FAMILY_ID)

        assert exported["familyId"] == FAMILY_ID
        assert exported["sessionCount"] == 2
        assert exported["exportedAt"] == "2024-03-06T15:00:00Z"
        assert exported["children"]["alice"]["sessions"][0]["countsTowardTotal"] is True

    async def test_unknown_family(self, store):
        with pytest.raises(FamilyNotFound):
            await store.get_family(FAMILY_ID)


async def test_store_without_bus(repository, clock):
    store = SessionStore(repository, clock=clock)
    await store.put_family(make_family())
    stored = await store.add_session(FAMILY_ID, "alice", regular("s1", 30, TODAY))
    assert stored.version == 1



class TestMongoFamilyDocuments:
    def _repository(self, collection):
        db = MagicMock()
        db.get_collection.return_value = collection
        db.log_query_start.return_value = 0.0
        return MongoScreenTimeRepository(db)

    async def test_touch_uses_max_on_an_instant(self):
        collection = MagicMock()
        collection.update_one = AsyncMock()
        at = FIXED_NOW + timedelta(milliseconds=500)

        await self._repository(collection).touch_family(FAMILY_ID, at)

        query, update = collection.update_one.await_args.args
        assert query == {"family_id": FAMILY_ID}
        assert update == {"$max": {"last_updated": at}}

    def test_document_keeps_last_updated_as_instant(self):
        family = make_family().model_copy(update={"last_updated": FIXED_NOW, "version": 1})
        doc = family_to_document(family)
        assert doc["last_updated"] == FIXED_NOW
        assert "sessions" not in doc["children"]["alice"]
