"""
Persistence backends for families and sessions.

Families and sessions are separately addressable records, each carrying a
``version``. Every conditional write matches on the version that was read and
bumps it, so a writer that lost a race sees ``False`` and can re-read.

Two backends are provided:
    - ``MongoScreenTimeRepository`` over Motor, one document per family and one
      per session with a unique ``(family_id, child_id, session_id)`` index
    - ``InMemoryScreenTimeRepository`` for a single process, guarded by an
      ``asyncio.Lock``

Backend failures surface as ``StoreUnavailable``.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from family_screen_time.database import (
    FAMILIES_COLLECTION,
    SESSIONS_COLLECTION,
    DatabaseManager,
    db_manager,
)
from family_screen_time.managers.errors import StoreUnavailable
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.models.screen_time_models import Family, Session
from family_screen_time.utils.datetime_utils import DateTimeUtils

logger = get_logger(prefix="[ScreenTimeRepository]")

SessionKey = Tuple[str, str, str]


def family_to_document(family: Family) -> Dict[str, Any]:
    """Snake_case storage form of a family, without sessions.

    ``last_updated`` stays an instant so that ``$max`` compares dates, not strings.
    """
    doc = family.model_dump(mode="json", exclude={"children": {"__all__": {"sessions"}}})
    if family.last_updated is not None:
        doc["last_updated"] = DateTimeUtils.to_utc(family.last_updated)
    return doc


def session_to_document(family_id: str, child_id: str, session: Session) -> Dict[str, Any]:
    doc = session.model_dump(mode="json", exclude={"active"})
    doc.update({"family_id": family_id, "child_id": child_id, "session_id": session.id})
    return doc


def session_from_document(doc: Dict[str, Any]) -> Session:
    data = {k: v for k, v in doc.items() if k not in ("_id", "family_id", "child_id", "session_id")}
    return Session.model_validate(data)


class ScreenTimeRepository(Protocol):
    """Record-level storage contract used by the session store."""

    async def get_family(self, family_id: str) -> Optional[Family]: ...

    async def insert_family(self, family: Family) -> bool: ...

    async def replace_family(self, family: Family, expected_version: int) -> bool: ...

    async def touch_family(self, family_id: str, at: datetime) -> None: ...

    async def list_sessions(
        self, family_id: str, child_id: Optional[str] = None, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Tuple[str, Session]]: ...

    async def get_session(self, family_id: str, child_id: str, session_id: str) -> Optional[Session]: ...

    async def insert_session(self, family_id: str, child_id: str, session: Session) -> bool: ...

    async def replace_session(
        self, family_id: str, child_id: str, session: Session, expected_version: int
    ) -> bool: ...

    async def delete_session(self, family_id: str, child_id: str, session_id: str, expected_version: int) -> bool: ...

    async def ping(self) -> bool: ...


class MongoScreenTimeRepository:
    """MongoDB backend using Motor collections from the database manager."""

    def __init__(self, database: DatabaseManager = None) -> None:
        self.db_manager = database or db_manager
        self.logger = logger

    @property
    def families(self):
        return self.db_manager.get_collection(FAMILIES_COLLECTION)

    @property
    def sessions(self):
        return self.db_manager.get_collection(SESSIONS_COLLECTION)

    def _unavailable(self, operation: str, collection: str, start_time: float, error: Exception, query=None):
        self.db_manager.log_query_error(collection, operation, start_time, error, query)
        return StoreUnavailable(f"Store operation '{operation}' failed", operation=operation, backend="mongodb")

    async def get_family(self, family_id: str) -> Optional[Family]:
        query = {"family_id": family_id}
        start_time = self.db_manager.log_query_start(FAMILIES_COLLECTION, "get_family", query)
        try:
            doc = await self.families.find_one(query, {"_id": 0})
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("get_family", FAMILIES_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(FAMILIES_COLLECTION, "get_family", start_time, 1 if doc else 0)
        return Family.model_validate(doc) if doc else None

    async def insert_family(self, family: Family) -> bool:
        start_time = self.db_manager.log_query_start(FAMILIES_COLLECTION, "insert_family", {"family_id": family.family_id})
        try:
            await self.families.insert_one(family_to_document(family))
        except DuplicateKeyError:
            self.logger.debug("Family %s already exists", family.family_id)
            return False
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("insert_family", FAMILIES_COLLECTION, start_time, e) from e
        self.db_manager.log_query_success(FAMILIES_COLLECTION, "insert_family", start_time, 1)
        return True

    async def replace_family(self, family: Family, expected_version: int) -> bool:
        query = {"family_id": family.family_id, "version": expected_version}
        start_time = self.db_manager.log_query_start(FAMILIES_COLLECTION, "replace_family", query)
        try:
            result = await self.families.replace_one(query, family_to_document(family))
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("replace_family", FAMILIES_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(FAMILIES_COLLECTION, "replace_family", start_time, result.modified_count)
        return result.matched_count == 1

    async def touch_family(self, family_id: str, at: datetime) -> None:
        query = {"family_id": family_id}
        start_time = self.db_manager.log_query_start(FAMILIES_COLLECTION, "touch_family", query)
        try:
            await self.families.update_one(query, {"$max": {"last_updated": DateTimeUtils.to_utc(at)}})
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("touch_family", FAMILIES_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(FAMILIES_COLLECTION, "touch_family", start_time)

    async def list_sessions(
        self, family_id: str, child_id: Optional[str] = None, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Tuple[str, Session]]:
        query: Dict[str, Any] = {"family_id": family_id}
        if child_id is not None:
            query["child_id"] = child_id
        if start is not None or end is not None:
            query["date"] = {}
            if start is not None:
                query["date"]["$gte"] = start.isoformat()
            if end is not None:
                query["date"]["$lte"] = end.isoformat()
        start_time = self.db_manager.log_query_start(SESSIONS_COLLECTION, "list_sessions", query)
        try:
            docs = await self.sessions.find(query, {"_id": 0}).to_list(length=None)
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("list_sessions", SESSIONS_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(SESSIONS_COLLECTION, "list_sessions", start_time, len(docs))
        return [(doc["child_id"], session_from_document(doc)) for doc in docs]

    async def get_session(self, family_id: str, child_id: str, session_id: str) -> Optional[Session]:
        query = {"family_id": family_id, "child_id": child_id, "session_id": session_id}
        start_time = self.db_manager.log_query_start(SESSIONS_COLLECTION, "get_session", query)
        try:
            doc = await self.sessions.find_one(query, {"_id": 0})
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("get_session", SESSIONS_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(SESSIONS_COLLECTION, "get_session", start_time, 1 if doc else 0)
        return session_from_document(doc) if doc else None

    async def insert_session(self, family_id: str, child_id: str, session: Session) -> bool:
        start_time = self.db_manager.log_query_start(SESSIONS_COLLECTION, "insert_session", {"session_id": session.id})
        try:
            await self.sessions.insert_one(session_to_document(family_id, child_id, session))
        except DuplicateKeyError:
            self.logger.debug("Session id %s already exists for child %s", session.id, child_id)
            return False
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("insert_session", SESSIONS_COLLECTION, start_time, e) from e
        self.db_manager.log_query_success(SESSIONS_COLLECTION, "insert_session", start_time, 1)
        return True

    async def replace_session(self, family_id: str, child_id: str, session: Session, expected_version: int) -> bool:
        query = {"family_id": family_id, "child_id": child_id, "session_id": session.id, "version": expected_version}
        start_time = self.db_manager.log_query_start(SESSIONS_COLLECTION, "replace_session", query)
        try:
            result = await self.sessions.replace_one(query, session_to_document(family_id, child_id, session))
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("replace_session", SESSIONS_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(SESSIONS_COLLECTION, "replace_session", start_time, result.modified_count)
        return result.matched_count == 1

    async def delete_session(self, family_id: str, child_id: str, session_id: str, expected_version: int) -> bool:
        query = {"family_id": family_id, "child_id": child_id, "session_id": session_id, "version": expected_version}
        start_time = self.db_manager.log_query_start(SESSIONS_COLLECTION, "delete_session", query)
        try:
            result = await self.sessions.delete_one(query)
        except (PyMongoError, RuntimeError) as e:
            raise self._unavailable("delete_session", SESSIONS_COLLECTION, start_time, e, query) from e
        self.db_manager.log_query_success(SESSIONS_COLLECTION, "delete_session", start_time, result.deleted_count)
        return result.deleted_count == 1

    async def ping(self) -> bool:
        return await self.db_manager.health_check()


class InMemoryScreenTimeRepository:
    """Single-process backend with the same version checks as the MongoDB one."""

    def __init__(self) -> None:
        self._families: Dict[str, Dict[str, Any]] = {}
        self._sessions: Dict[SessionKey, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_family(self, family_id: str) -> Optional[Family]:
        doc = self._families.get(family_id)
        return Family.model_validate(doc) if doc else None

    async def insert_family(self, family: Family) -> bool:
        async with self._lock:
            if family.family_id in self._families:
                return False
            self._families[family.family_id] = family_to_document(family)
            return True

    async def replace_family(self, family: Family, expected_version: int) -> bool:
        async with self._lock:
            current = self._families.get(family.family_id)
            if current is None or current.get("version") != expected_version:
                return False
            self._families[family.family_id] = family_to_document(family)
            return True

    async def touch_family(self, family_id: str, at: datetime) -> None:
        async with self._lock:
            doc = self._families.get(family_id)
            if doc is None:
                return
            stamp = DateTimeUtils.to_utc(at)
            if doc.get("last_updated") is None or doc["last_updated"] < stamp:
                doc["last_updated"] = stamp

    async def list_sessions(
        self, family_id: str, child_id: Optional[str] = None, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[Tuple[str, Session]]:
        found = []
        for (fid, cid, _), doc in list(self._sessions.items()):
            if fid != family_id or (child_id is not None and cid != child_id):
                continue
            if start is not None and doc["date"] < start.isoformat():
                continue
            if end is not None and doc["date"] > end.isoformat():
                continue
            found.append((cid, session_from_document(doc)))
        return found

    async def get_session(self, family_id: str, child_id: str, session_id: str) -> Optional[Session]:
        doc = self._sessions.get((family_id, child_id, session_id))
        return session_from_document(doc) if doc else None

    async def insert_session(self, family_id: str, child_id: str, session: Session) -> bool:
        key = (family_id, child_id, session.id)
        async with self._lock:
            if key in self._sessions:
                return False
            self._sessions[key] = session_to_document(family_id, child_id, session)
            return True

    async def replace_session(self, family_id: str, child_id: str, session: Session, expected_version: int) -> bool:
        key = (family_id, child_id, session.id)
        async with self._lock:
            current = self._sessions.get(key)
            if current is None or current.get("version") != expected_version:
                return False
            self._sessions[key] = session_to_document(family_id, child_id, session)
            return True

    async def delete_session(self, family_id: str, child_id: str, session_id: str, expected_version: int) -> bool:
        key = (family_id, child_id, session_id)
        async with self._lock:
            current = self._sessions.get(key)
            if current is None or current.get("version") != expected_version:
                return False
            del self._sessions[key]
            return True

    async def ping(self) -> bool:
        return True
