"""
Pytest configuration for the screen-time engine tests.

Provides a controllable clock, the in-memory backends and a seeded family so
that every test runs without MongoDB or Redis.
"""

from datetime import datetime, timedelta, timezone
import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Test environment, set before the settings object is created
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOKI_ENABLED", "false")
os.environ.setdefault("GUARDIAN_PASSCODE", "7319")
os.environ.setdefault("FAMILY_TIMEZONE", "UTC")

from pydantic import SecretStr  # noqa: E402

from family_screen_time.managers.notification_bus import (  # noqa: E402
    InMemoryEventLog,
    InMemoryLivePublisher,
    NotificationBus,
)
from family_screen_time.managers.screen_time_repository import InMemoryScreenTimeRepository  # noqa: E402
from family_screen_time.managers.session_lifecycle import SessionLifecycleController  # noqa: E402
from family_screen_time.managers.session_store import SessionStore  # noqa: E402
from family_screen_time.models.screen_time_models import (  # noqa: E402
    Actor,
    ActorRole,
    Child,
    ChildSettings,
    DailyLimit,
    Family,
    Guardian,
    LimitSettings,
)
from family_screen_time.utils.datetime_utils import FamilyClock  # noqa: E402

# Wednesday afternoon
FIXED_NOW = datetime(2024, 3, 6, 15, 0, tzinfo=timezone.utc)
TEST_PASSCODE = "7319"
FAMILY_ID = "fam1"


class ManualNow:
    """Callable time source that tests move by hand."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, minutes: int = 0, seconds: int = 0) -> datetime:
        self.current += timedelta(minutes=minutes, seconds=seconds)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def now():
    return ManualNow(FIXED_NOW)


@pytest.fixture
def clock(now):
    return FamilyClock("UTC", now)


@pytest.fixture
def repository():
    return InMemoryScreenTimeRepository()


@pytest.fixture
def bus():
    return NotificationBus(InMemoryEventLog(), InMemoryLivePublisher())


@pytest.fixture
def store(repository, bus, clock):
    return SessionStore(repository, bus, clock)


@pytest.fixture
def controller(store):
    return SessionLifecycleController(store, passcode=SecretStr(TEST_PASSCODE))


def make_family(family_id: str = FAMILY_ID) -> Family:
    """Two children; Alice has explicit 90/150 minute limits, Bob uses the default."""
    return Family(
        family_id=family_id,
        name="The Testers",
        guardians=[Guardian(id="mom", name="Mom", devices=["phone"])],
        children={
            "alice": Child(
                id="alice",
                name="Alice",
                devices=["tablet"],
                settings=ChildSettings(
                    limits=LimitSettings(weekday=DailyLimit(daily_total=90), weekend=DailyLimit(daily_total=150))
                ),
            ),
            "bob": Child(id="bob", name="Bob", devices=["laptop"]),
        },
    )


@pytest.fixture
def family():
    return make_family()


@pytest.fixture
async def seeded_store(store, family):
    await store.put_family(family, actor_id="mom")
    await store.bus.drain()
    return store


@pytest.fixture
def guardian():
    return Actor(role=ActorRole.GUARDIAN, id="mom")


@pytest.fixture
def alice():
    return Actor(role=ActorRole.CHILD, id="alice")


@pytest.fixture
def alice_with_passcode():
    return Actor(role=ActorRole.CHILD, id="alice", passcode=SecretStr(TEST_PASSCODE))
