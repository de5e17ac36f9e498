"""
Notification bus: durable event log plus live fan-out.

Every change event is first appended to a per-family event log, where it gets a
monotonically increasing ``sequence``. It is then published live on one channel
per audience (``guardians`` or ``child:<id>``). Live delivery is at-most-once;
a subscriber that was offline catches up by reading the log after the last
sequence it saw.

Publication is scheduled as a background task once a write has been persisted.
Publications of one family run one at a time, so event N is logged and sent
live before event N+1 takes its sequence. Failures are logged and never
surface to the writer.

A subscriber opens its live channels first, then reads the log page by page,
then forwards the live messages that arrived meanwhile, skipping any sequence
it already sent.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
)

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from family_screen_time.config import settings
from family_screen_time.database import COUNTERS_COLLECTION, EVENTS_COLLECTION, DatabaseManager, db_manager
from family_screen_time.managers.errors import StoreUnavailable
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.redis_manager import RedisManager, redis_manager
from family_screen_time.models.screen_time_models import (
    GUARDIANS_AUDIENCE,
    Family,
    FamilyEvent,
    child_audience,
)

logger = get_logger(prefix="[NotificationBus]")

LiveMessages = AsyncIterator[Dict[str, Any]]


def audiences_for_child(child_id: str) -> List[str]:
    """Child-scoped events go to the guardians and that child."""
    return [GUARDIANS_AUDIENCE, child_audience(child_id)]


def audiences_for_family(family: Family) -> List[str]:
    """Family-wide events go to the guardians and every child."""
    return [GUARDIANS_AUDIENCE] + [child_audience(child_id) for child_id in family.children]


def event_payload(event: FamilyEvent) -> Dict[str, Any]:
    """Wire form of an event as sent to subscribers."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"audiences"})


class EventLog(Protocol):
    async def append(self, event: FamilyEvent) -> FamilyEvent: ...

    async def since(
        self, family_id: str, audience: Optional[str], after: int, limit: int
    ) -> List[FamilyEvent]: ...


class LivePublisher(Protocol):
    async def publish(self, family_id: str, audience: str, payload: Dict[str, Any]) -> None: ...

    def subscribe(self, family_id: str, audiences: List[str]) -> AsyncContextManager[LiveMessages]: ...


class MongoEventLog:
    """Event log in MongoDB with a per-family counter document for sequences."""

    def __init__(self, database: DatabaseManager = None) -> None:
        self.db_manager = database or db_manager

    async def _next_sequence(self, family_id: str) -> int:
        counter = await self.db_manager.get_collection(COUNTERS_COLLECTION).find_one_and_update(
            {"_id": family_id},
            {"$inc": {"sequence": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["sequence"]

    async def append(self, event: FamilyEvent) -> FamilyEvent:
        start_time = self.db_manager.log_query_start(EVENTS_COLLECTION, "append_event", {"family_id": event.family_id})
        try:
            stored = event.model_copy(update={"sequence": await self._next_sequence(event.family_id)})
            doc = stored.model_dump(mode="json")
            doc["recorded_at"] = datetime.now(timezone.utc)
            await self.db_manager.get_collection(EVENTS_COLLECTION).insert_one(doc)
        except (PyMongoError, RuntimeError) as e:
            self.db_manager.log_query_error(EVENTS_COLLECTION, "append_event", start_time, e)
            raise StoreUnavailable("Failed to append event", operation="append_event", backend="mongodb") from e
        self.db_manager.log_query_success(EVENTS_COLLECTION, "append_event", start_time, 1)
        return stored

    async def since(self, family_id: str, audience: Optional[str], after: int, limit: int) -> List[FamilyEvent]:
        query: Dict[str, Any] = {"family_id": family_id, "sequence": {"$gt": after}}
        if audience is not None:
            query["audiences"] = audience
        start_time = self.db_manager.log_query_start(EVENTS_COLLECTION, "events_since", query)
        try:
            docs = (
                await self.db_manager.get_collection(EVENTS_COLLECTION)
                .find(query, {"_id": 0, "recorded_at": 0})
                .sort("sequence", 1)
                .limit(limit)
                .to_list(length=limit)
            )
        except (PyMongoError, RuntimeError) as e:
            self.db_manager.log_query_error(EVENTS_COLLECTION, "events_since", start_time, e, query)
            raise StoreUnavailable("Failed to read events", operation="events_since", backend="mongodb") from e
        self.db_manager.log_query_success(EVENTS_COLLECTION, "events_since", start_time, len(docs))
        return [FamilyEvent.model_validate(doc) for doc in docs]


class InMemoryEventLog:
    """
    Process-local event log.

    Events recorded more than ``retention_days`` ago are dropped on append,
    like the TTL index on ``recorded_at`` in the MongoDB log. Sequences keep
    counting from their own counter.
    """

    def __init__(
        self, retention_days: Optional[int] = None, now: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.retention = timedelta(days=retention_days or settings.EVENT_LOG_RETENTION_DAYS)
        self.now = now or (lambda: datetime.now(timezone.utc))
        self._events: Dict[str, List[Tuple[datetime, FamilyEvent]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def append(self, event: FamilyEvent) -> FamilyEvent:
        async with self._lock:
            sequence = self._sequences.get(event.family_id, 0) + 1
            self._sequences[event.family_id] = sequence
            stored = event.model_copy(update={"sequence": sequence})
            recorded_at = self.now()
            cutoff = recorded_at - self.retention
            log = [entry for entry in self._events.get(event.family_id, []) if entry[0] >= cutoff]
            log.append((recorded_at, stored))
            self._events[event.family_id] = log
            return stored

    async def since(self, family_id: str, audience: Optional[str], after: int, limit: int) -> List[FamilyEvent]:
        matching = [
            e
            for _, e in self._events.get(family_id, [])
            if e.sequence > after and (audience is None or e.visible_to(audience))
        ]
        return matching[:limit]


class RedisLivePublisher:
    """Publishes on ``<prefix>:<familyId>:<audience>`` Redis channels."""

    def __init__(self, manager: RedisManager = None) -> None:
        self.redis_manager = manager or redis_manager

    async def publish(self, family_id: str, audience: str, payload: Dict[str, Any]) -> None:
        await self.redis_manager.publish_json(self.redis_manager.channel(family_id, audience), payload)

    def subscribe(self, family_id: str, audiences: List[str]) -> AsyncContextManager[LiveMessages]:
        channels = [self.redis_manager.channel(family_id, audience) for audience in audiences]
        return self.redis_manager.subscribe(*channels)


class InMemoryLivePublisher:
    """Process-local channels backed by one asyncio.Queue per subscriber."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, family_id: str, audience: str, payload: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(f"{family_id}:{audience}", ())):
            queue.put_nowait(payload)

    @staticmethod
    async def _messages(queue: asyncio.Queue) -> LiveMessages:
        while True:
            yield await queue.get()

    @asynccontextmanager
    async def subscribe(self, family_id: str, audiences: List[str]) -> AsyncIterator[LiveMessages]:
        """Registered on entry; messages queue up until they are read."""
        queue: asyncio.Queue = asyncio.Queue()
        keys = [f"{family_id}:{audience}" for audience in audiences]
        for key in keys:
            self._subscribers.setdefault(key, set()).add(queue)
        try:
            yield self._messages(queue)
        finally:
            for key in keys:
                self._subscribers.get(key, set()).discard(queue)


class NotificationBus:
    """Appends events to the log, then fans them out to live subscribers."""

    def __init__(self, event_log: EventLog, live: LivePublisher) -> None:
        self.event_log = event_log
        self.live = live
        self.logger = logger
        self._pending: Set[asyncio.Task] = set()
        self._family_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, family_id: str) -> asyncio.Lock:
        return self._family_locks.setdefault(family_id, asyncio.Lock())

    async def publish(
        self, family_id: str, audiences: Iterable[str], event: FamilyEvent, live: bool = True
    ) -> FamilyEvent:
        """
        Append ``event`` to the log and, when ``live``, publish it to each audience.

        Returns:
            FamilyEvent: the logged event with its sequence

        Raises:
            StoreUnavailable: If the event could not be appended to the log
        """
        event = event.model_copy(update={"family_id": family_id, "audiences": list(dict.fromkeys(audiences))})
        async with self._lock_for(family_id):
            stored = await self.event_log.append(event)
            if live:
                payload = event_payload(stored)
                for audience in stored.audiences:
                    try:
                        await self.live.publish(family_id, audience, payload)
                    except StoreUnavailable as e:
                        self.logger.warning(
                            "Live fan-out of event %d to %s:%s failed: %s", stored.sequence, family_id, audience, e
                        )
        self.logger.debug("Published %s #%d to %s (live=%s)", stored.type.value, stored.sequence, stored.audiences, live)
        return stored

    def schedule(
        self, family_id: str, audiences: Iterable[str], event: FamilyEvent, live: bool = True
    ) -> asyncio.Task:
        """Publish in a background task; failures are logged only."""
        task = asyncio.get_running_loop().create_task(self.publish(family_id, list(audiences), event, live=live))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Event publication failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for every scheduled publication to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def events_since(
        self, family_id: str, audience: Optional[str], after_sequence: int = 0, limit: Optional[int] = None
    ) -> List[FamilyEvent]:
        """Logged events after ``after_sequence`` visible to ``audience`` (all when None)."""
        return await self.event_log.since(
            family_id, audience, max(0, after_sequence), limit or settings.EVENT_LOG_PAGE_SIZE
        )

    async def replay(
        self, family_id: str, audience: Optional[str], after_sequence: int = 0, page_size: Optional[int] = None
    ) -> AsyncIterator[FamilyEvent]:
        """Every logged event after ``after_sequence``, read page by page."""
        page_size = page_size or settings.EVENT_LOG_PAGE_SIZE
        after = max(0, after_sequence)
        while True:
            page = await self.events_since(family_id, audience, after, page_size)
            for event in page:
                yield event
            if len(page) < page_size:
                return
            after = page[-1].sequence

    def subscribe(self, family_id: str, audiences: List[str]) -> AsyncContextManager[LiveMessages]:
        """
        Live messages for ``audiences``.

        The channels are registered when the context is entered, so anything
        published from then on is buffered until it is read.
        """
        return self.live.subscribe(family_id, audiences)
