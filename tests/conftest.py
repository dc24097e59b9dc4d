"""Shared test fixtures and configuration.

Sets up fake environment variables before any medreminder imports, and
provides in-memory fakes for the two external seams: the durable key-value
store and the trigger backend. Time is driven by a FakeClock so lifecycle
tests never sleep.
"""

import os

# Patch env vars BEFORE any medreminder imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timedelta, timezone

import pytest

from medreminder.ports.storage_port import StorageFailure
from medreminder.ports.trigger_port import BackendUnavailable, LiveTrigger

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryKeyValue:
    """KeyValuePort over a dict, with failure injection and call counts."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail_writes = False
        self.fail_reads = False
        self.reads = 0
        self.writes = 0

    async def get(self, key):
        self.reads += 1
        if self.fail_reads:
            raise StorageFailure(f"read of {key} failed")
        return self.data.get(key)

    async def set(self, key, value):
        if self.fail_writes:
            raise StorageFailure(f"write of {key} failed")
        self.writes += 1
        self.data[key] = value

    async def remove(self, key):
        if self.fail_writes:
            raise StorageFailure(f"remove of {key} failed")
        self.data.pop(key, None)


class FakeTriggerBackend:
    """Stateful TriggerBackend: keeps live triggers in a dict."""

    def __init__(self):
        self.live: dict[str, LiveTrigger] = {}
        self.available = True
        self.fail_request_ids: set[str] = set()
        self.fail_all_requests = False
        self.fail_cancel = False
        self.fail_list = False
        self.requested: list[str] = []
        self.cancelled: list[str] = []

    async def is_available(self):
        return self.available

    async def request_trigger(self, trigger_id, fire_at, payload):
        if self.fail_all_requests or trigger_id in self.fail_request_ids:
            raise BackendUnavailable(f"cannot register {trigger_id}")
        self.requested.append(trigger_id)
        self.live[trigger_id] = LiveTrigger(id=trigger_id, fire_at=fire_at, payload=payload)
        return trigger_id

    async def cancel_trigger(self, trigger_id):
        if self.fail_cancel:
            raise BackendUnavailable(f"cannot cancel {trigger_id}")
        self.cancelled.append(trigger_id)
        self.live.pop(trigger_id, None)

    async def cancel_all_triggers(self):
        if self.fail_cancel:
            raise BackendUnavailable("cannot cancel all")
        self.live.clear()

    async def list_live_triggers(self):
        if self.fail_list:
            raise BackendUnavailable("cannot list")
        return list(self.live.values())

    def fire(self, trigger_id):
        """Remove a trigger as the platform does when it fires; returns it."""
        return self.live.pop(trigger_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return InMemoryKeyValue()


@pytest.fixture
def store(kv):
    from medreminder.data.store import CoordinatedStore
    return CoordinatedStore(kv)


@pytest.fixture
def backend():
    return FakeTriggerBackend()


@pytest.fixture
def policy():
    from medreminder.core.status_rules import ReminderPolicy
    return ReminderPolicy()


@pytest.fixture
def repository(store, policy):
    from medreminder.data.repository import ReminderRepository
    return ReminderRepository(store, max_snooze=policy.max_snooze)


@pytest.fixture
def ledger(store):
    from medreminder.data.ledger import ScheduleLedger
    return ScheduleLedger(store)


@pytest.fixture
def engine(backend, ledger, policy, clock):
    from medreminder.core.scheduling_engine import SchedulingEngine
    return SchedulingEngine(backend, ledger, policy=policy, clock=clock)


@pytest.fixture
def resolver(repository, engine, policy, clock):
    from medreminder.core.action_resolver import ActionResolver
    return ActionResolver(repository, engine, tz=timezone.utc, policy=policy, clock=clock)


@pytest.fixture
def reconciler(repository, engine, backend, clock):
    from medreminder.core.reconciler import RestorationReconciler
    return RestorationReconciler(repository, engine, backend, tz=timezone.utc, clock=clock)


@pytest.fixture
def service(store, backend, policy, clock):
    """A ReminderService that has not been started yet."""
    from medreminder.core.reminder_service import ReminderService
    return ReminderService(store, backend, tz=timezone.utc, policy=policy, clock=clock)


@pytest.fixture
def make_reminder():
    """Factory for pending Reminder records due at T0 unless overridden."""
    from medreminder.data.models import MedicationType, Reminder

    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "id": f"r{counter['n']}",
            "name": "Aspirin",
            "dosage": "100mg",
            "type": MedicationType.TABLET,
            "date": T0.strftime("%Y-%m-%d"),
            "time": T0.strftime("%H:%M"),
        }
        fields.update(overrides)
        return Reminder(**fields)

    return _make


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_reminders.db")
