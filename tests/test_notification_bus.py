"""
Tests for the notification bus, the event logs and the Redis live channels.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import PyMongoError
import pytest
from redis.exceptions import RedisError

from conftest import FAMILY_ID, FIXED_NOW, ManualNow, make_family
from family_screen_time.managers.errors import StoreUnavailable
from family_screen_time.managers.notification_bus import (
    InMemoryEventLog,
    InMemoryLivePublisher,
    MongoEventLog,
    NotificationBus,
    RedisLivePublisher,
    audiences_for_child,
    audiences_for_family,
    event_payload,
)
from family_screen_time.managers.redis_manager import RedisManager
from family_screen_time.managers.screen_time_repository import InMemoryScreenTimeRepository
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.models.screen_time_models import EventType, FamilyEvent


def _event(event_type=EventType.SESSION_ADDED, child_id="alice"):
    return FamilyEvent(family_id=FAMILY_ID, type=event_type, child_id=child_id)


@pytest.fixture
def memory_bus():
    return NotificationBus(InMemoryEventLog(), InMemoryLivePublisher())


def test_audiences():
    assert audiences_for_child("alice") == ["guardians", "child:alice"]
    assert audiences_for_family(make_family()) == ["guardians", "child:alice", "child:bob"]


def test_payload_hides_audiences():
    event = _event().model_copy(update={"audiences": ["guardians"], "sequence": 3, "setting_path": "availableApps"})
    payload = event_payload(event)
    assert "audiences" not in payload
    assert payload["sequence"] == 3
    assert payload["familyId"] == FAMILY_ID
    assert payload["settingPath"] == "availableApps"
    assert payload["type"] == "session_added"


class TestEventLog:
    async def test_sequences_are_per_family(self, memory_bus):
        first = await memory_bus.publish(FAMILY_ID, ["guardians"], _event())
        second = await memory_bus.publish(FAMILY_ID, ["guardians"], _event())
        other = await memory_bus.publish("fam2", ["guardians"], _event())

        assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
        assert other.family_id == "fam2"

    async def test_audiences_are_deduplicated(self, memory_bus):
        stored = await memory_bus.publish(FAMILY_ID, ["guardians", "guardians", "child:alice"], _event())
        assert stored.audiences == ["guardians", "child:alice"]

    async def test_events_since_filters_by_audience_and_sequence(self, memory_bus):
        await memory_bus.publish(FAMILY_ID, audiences_for_child("alice"), _event())
        await memory_bus.publish(FAMILY_ID, audiences_for_child("bob"), _event(child_id="bob"))
        await memory_bus.publish(FAMILY_ID, audiences_for_family(make_family()), _event(EventType.AVAILABLE_APPS_UPDATED, None))

        assert [e.sequence for e in await memory_bus.events_since(FAMILY_ID, "child:bob")] == [2, 3]
        assert [e.sequence for e in await memory_bus.events_since(FAMILY_ID, "guardians", 1)] == [2, 3]
        assert [e.sequence for e in await memory_bus.events_since(FAMILY_ID, None, 0, limit=1)] == [1]
        assert await memory_bus.events_since("unknown", None) == []

    async def test_replay_reads_every_page(self, memory_bus):
        for _ in range(7):
            await memory_bus.publish(FAMILY_ID, ["guardians"], _event())

        replayed = [e.sequence async for e in memory_bus.replay(FAMILY_ID, "guardians", 1, page_size=3)]

        assert replayed == [2, 3, 4, 5, 6, 7]

    async def test_memory_log_drops_events_past_retention(self):
        now = ManualNow(FIXED_NOW)
        event_log = InMemoryEventLog(retention_days=1, now=now)
        await event_log.append(_event())
        now.advance(minutes=2 * 24 * 60)
        await event_log.append(_event())

        remaining = await event_log.since(FAMILY_ID, None, 0, 10)

        assert [e.sequence for e in remaining] == [2]


class TestLiveFanOut:
    async def test_subscriber_receives_own_audience_only(self, memory_bus):
        async with memory_bus.subscribe(FAMILY_ID, ["child:alice"]) as live:
            await memory_bus.publish(FAMILY_ID, ["guardians"], _event(child_id="bob"))
            await memory_bus.publish(FAMILY_ID, audiences_for_child("alice"), _event())

            payload = await asyncio.wait_for(live.__anext__(), timeout=1)

        assert payload["sequence"] == 2
        assert payload["childId"] == "alice"
        assert not memory_bus.live._subscribers["fam1:child:alice"]

    async def test_subscription_buffers_until_read(self, memory_bus):
        async with memory_bus.subscribe(FAMILY_ID, ["guardians"]) as live:
            await memory_bus.publish(FAMILY_ID, ["guardians"], _event())
            await memory_bus.publish(FAMILY_ID, ["guardians"], _event())

            received = [await asyncio.wait_for(live.__anext__(), timeout=1) for _ in range(2)]

        assert [p["sequence"] for p in received] == [1, 2]

    async def test_publish_without_live_only_logs(self, memory_bus):
        async with memory_bus.subscribe(FAMILY_ID, ["guardians"]) as live:
            stored = await memory_bus.publish(FAMILY_ID, ["guardians"], _event(), live=False)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(live.__anext__(), timeout=0.05)

        assert stored.sequence == 1
        assert [e.sequence for e in await memory_bus.events_since(FAMILY_ID, "guardians")] == [1]

    async def test_notifications_disabled_family_is_logged_not_pushed(self, clock):
        bus = NotificationBus(InMemoryEventLog(), InMemoryLivePublisher())
        bus.live.publish = AsyncMock()
        store = SessionStore(InMemoryScreenTimeRepository(), bus, clock)
        family = make_family()
        family.settings.notifications_enabled = False

        await store.put_family(family, actor_id="mom")
        await bus.drain()

        bus.live.publish.assert_not_awaited()
        assert [e.type for e in await bus.events_since(FAMILY_ID, "guardians")] == [EventType.FAMILY_UPDATED]

    async def test_live_failure_does_not_fail_publish(self):
        live = MagicMock()
        live.publish = AsyncMock(side_effect=StoreUnavailable("down", operation="publish", backend="redis"))
        bus = NotificationBus(InMemoryEventLog(), live)

        stored = await bus.publish(FAMILY_ID, ["guardians", "child:alice"], _event())

        assert stored.sequence == 1
        assert live.publish.await_count == 2
        assert len(await bus.events_since(FAMILY_ID, "guardians")) == 1

    async def test_scheduled_failure_is_logged_not_raised(self):
        event_log = MagicMock()
        event_log.append = AsyncMock(side_effect=StoreUnavailable("down", operation="append_event"))
        bus = NotificationBus(event_log, InMemoryLivePublisher())

        bus.schedule(FAMILY_ID, ["guardians"], _event())
        await bus.drain()

        assert event_log.append.await_count == 1
        assert not bus._pending

    async def test_store_write_survives_failing_bus(self, clock):
        event_log = MagicMock()
        event_log.append = AsyncMock(side_effect=StoreUnavailable("down", operation="append_event"))
        bus = NotificationBus(event_log, InMemoryLivePublisher())
        store = SessionStore(InMemoryScreenTimeRepository(), bus, clock)

        created = await store.put_family(make_family())
        await bus.drain()

        assert created.version == 1
        assert (await store.get_family_record(FAMILY_ID)).name == "The Testers"


class TestMongoEventLog:
    def _db(self, collection):
        db = MagicMock()
        db.get_collection.return_value = collection
        db.log_query_start.return_value = 0.0
        return db

    async def test_append_takes_counter_sequence(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"_id": FAMILY_ID, "sequence": 7})
        collection.insert_one = AsyncMock()
        db = self._db(collection)

        stored = await MongoEventLog(db).append(_event().model_copy(update={"audiences": ["guardians"]}))

        assert stored.sequence == 7
        doc = collection.insert_one.await_args.args[0]
        assert doc["sequence"] == 7
        assert doc["family_id"] == FAMILY_ID
        assert doc["audiences"] == ["guardians"]
        db.log_query_success.assert_called_once()

    async def test_append_failure(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"sequence": 1})
        collection.insert_one = AsyncMock(side_effect=PyMongoError("down"))
        db = self._db(collection)

        with pytest.raises(StoreUnavailable):
            await MongoEventLog(db).append(_event())
        db.log_query_error.assert_called_once()

    async def test_since_queries_by_audience(self):
        stored = _event().model_copy(update={"sequence": 4, "audiences": ["guardians"]})
        collection = MagicMock()
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[stored.model_dump(mode="json")])
        db = self._db(collection)

        events = await MongoEventLog(db).since(FAMILY_ID, "guardians", 3, 50)

        assert [e.sequence for e in events] == [4]
        query = collection.find.call_args.args[0]
        assert query == {"family_id": FAMILY_ID, "sequence": {"$gt": 3}, "audiences": "guardians"}
        collection.find.return_value.sort.assert_called_once_with("sequence", 1)

    async def test_family_publications_are_serialized(self):
        sequences = iter(range(1, 10))
        first_insert = asyncio.Event()
        inserted = []

        async def insert_one(doc):
            if doc["sequence"] == 1:
                await first_insert.wait()
            inserted.append(doc["sequence"])

        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(side_effect=lambda *a, **kw: {"sequence": next(sequences)})
        collection.insert_one = AsyncMock(side_effect=insert_one)
        live = MagicMock()
        live.publish = AsyncMock()
        bus = NotificationBus(MongoEventLog(self._db(collection)), live)

        bus.schedule(FAMILY_ID, ["guardians"], _event())
        bus.schedule(FAMILY_ID, ["guardians"], _event())
        for _ in range(5):
            await asyncio.sleep(0)
        # The second event has not taken a sequence while the first is unwritten
        assert collection.find_one_and_update.await_count == 1

        first_insert.set()
        await bus.drain()

        assert inserted == [1, 2]
        assert [c.args[2]["sequence"] for c in live.publish.await_args_list] == [1, 2]


class TestRedisChannels:
    def test_channel_names(self):
        assert RedisManager("redis://localhost", channel_prefix="fst").channel(FAMILY_ID, "guardians") == "fst:fam1:guardians"
        assert RedisManager("redis://localhost", channel_prefix="").channel(FAMILY_ID, "child:alice") == "fam1:child:alice"

    async def test_publish_json(self):
        manager = RedisManager("redis://localhost", channel_prefix="fst")
        client = MagicMock()
        client.publish = AsyncMock(return_value=2)
        manager.get_redis = AsyncMock(return_value=client)

        receivers = await manager.publish_json("fst:fam1:guardians", {"sequence": 1})

        assert receivers == 2
        channel, message = client.publish.await_args.args
        assert channel == "fst:fam1:guardians"
        assert json.loads(message) == {"sequence": 1}

    async def test_publish_failure(self):
        manager = RedisManager("redis://localhost")
        client = MagicMock()
        client.publish = AsyncMock(side_effect=RedisError("gone"))
        manager.get_redis = AsyncMock(return_value=client)

        with pytest.raises(StoreUnavailable):
            await manager.publish_json("c", {})

    async def test_health_check_false_when_unreachable(self):
        manager = RedisManager("redis://localhost")
        manager.get_redis = AsyncMock(side_effect=StoreUnavailable("down", operation="connect", backend="redis"))
        assert await manager.health_check() is False

    async def test_live_publisher_uses_family_channel(self):
        manager = RedisManager("redis://localhost", channel_prefix="fst")
        manager.publish_json = AsyncMock(return_value=1)

        await RedisLivePublisher(manager).publish(FAMILY_ID, "child:alice", {"sequence": 5})

        manager.publish_json.assert_awaited_once_with("fst:fam1:child:alice", {"sequence": 5})

    def _pubsub(self, reply):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.get_message = AsyncMock(return_value=reply)
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()

        async def listen():
            yield {"type": "message", "channel": "fst:fam1:guardians", "data": "not json"}
            yield {"type": "message", "channel": "fst:fam1:guardians", "data": json.dumps({"sequence": 4})}

        pubsub.listen = listen
        return pubsub

    async def test_subscribe_is_confirmed_before_entry(self):
        manager = RedisManager("redis://localhost", channel_prefix="fst")
        pubsub = self._pubsub({"type": "subscribe", "channel": "fst:fam1:guardians", "data": 1})
        client = MagicMock()
        client.pubsub.return_value = pubsub
        manager.get_redis = AsyncMock(return_value=client)

        async with manager.subscribe("fst:fam1:guardians") as messages:
            pubsub.subscribe.assert_awaited_once_with("fst:fam1:guardians")
            pubsub.get_message.assert_awaited_once()
            assert await messages.__anext__() == {"sequence": 4}

        pubsub.unsubscribe.assert_awaited_once_with("fst:fam1:guardians")
        pubsub.aclose.assert_awaited_once()

    async def test_unconfirmed_subscription_fails(self):
        manager = RedisManager("redis://localhost")
        pubsub = self._pubsub(None)
        client = MagicMock()
        client.pubsub.return_value = pubsub
        manager.get_redis = AsyncMock(return_value=client)

        with pytest.raises(StoreUnavailable):
            async with manager.subscribe("fam1:guardians"):
                pass
        pubsub.aclose.assert_awaited_once()
