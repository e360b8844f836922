import os

# app.core.db builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.db import Base
from app.jobs.sync.config import ReconcileTables
from app.jobs.sync.errors import NoCredential, PersistenceError
from app.jobs.sync.pipeline import SyncContext
from app.jobs.sync.rate_limit import RateLimiter
from app.jobs.sync.sources.base import CarrierClient, Credential, TokenProvider
from app.jobs.sync.storage import Storage
from app.jobs.sync.types import CanonicalState, Event, TrackingRecord
from app.models.carrier_accounts import CarrierAccount  # noqa: F401
from app.models.job_runs import JobRun  # noqa: F401
from app.models.shipment_events import ShipmentEvent  # noqa: F401
from app.models.shipments import Shipment  # noqa: F401

# 12:00 in Buenos Aires, well outside the nightly reset window
NOW = datetime(2024, 5, 3, 15, 0, tzinfo=timezone.utc)
# 00:00 in Buenos Aires, inside it
NIGHT = datetime(2024, 5, 3, 3, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeStorage(Storage):
    def __init__(self):
        self.records: dict[uuid.UUID, TrackingRecord] = {}
        self.histories: dict[uuid.UUID, list[Event]] = {}
        self.fail_on: set[uuid.UUID] = set()
        self.saves = 0
        self.last_filters = None

    def add(self, history=(), **kwargs) -> TrackingRecord:
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("account_id", "A1")
        record = TrackingRecord(**kwargs)
        self.records[record.id] = record
        self.histories[record.id] = list(history)
        return record

    def select_pending(self, limit, filters):
        self.last_filters = filters
        return list(self.records.values())[filters.offset: filters.offset + limit]

    def load_history(self, record_id):
        return list(self.histories.get(record_id, []))

    def save_reconciliation(self, record_id, history, canonical, flags, synced_at):
        if record_id in self.fail_on:
            raise PersistenceError(f"write refused for {record_id}")
        self.saves += 1
        self.histories[record_id] = list(history)
        record = self.records[record_id]
        record.canonical = canonical
        record.confirmed_flags = dict(flags)
        record.last_synced_at = synced_at

    def correct_external_id(self, record_id, external_id):
        record = self.records[record_id]
        if record.external_id == external_id:
            return False
        record.external_id = external_id
        return True


class FakeTokens(TokenProvider):
    def __init__(self, tokens: Optional[dict[str, str]] = None):
        self.tokens = dict(tokens or {})
        self.refreshed: list[str] = []

    def get_credential(self, account_id, *, force_refresh=False):
        if force_refresh:
            self.refreshed.append(account_id)
        token = self.tokens.get(account_id)
        if not token:
            raise NoCredential(f"no token for {account_id}")
        return Credential(account_id=account_id, access_token=token)


class FakeCarrier(CarrierClient):
    def __init__(self):
        self.snapshots: dict[str, Any] = {}
        self.histories: dict[str, list] = {}
        self.checkpoints: dict[str, Any] = {}
        self.orders: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def _call(self, kind: str, key: str) -> None:
        self.calls.append((kind, key))
        err = self.errors.get(key)
        if err is not None:
            raise err

    def get_snapshot(self, external_id):
        self._call("snapshot", external_id)
        return self.snapshots.get(external_id)

    def get_history(self, external_id):
        self._call("history", external_id)
        return self.histories.get(external_id, [])

    def get_checkpoints(self, external_id):
        self._call("checkpoints", external_id)
        return self.checkpoints.get(external_id)

    def resolve_shipment_id_from_order(self, order_id):
        self._call("order", order_id)
        return self.orders.get(order_id)


def ev(at, status, detail="", origin="history", **kwargs) -> Event:
    return Event(occurred_at=at, status=status, detail=detail, origin=origin, **kwargs)


def state(status, detail, at) -> CanonicalState:
    return CanonicalState(status=status, detail=detail, at=at)


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


@pytest.fixture
def tables():
    return ReconcileTables()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def tokens():
    return FakeTokens({"A1": "tok-a1"})


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def ctx(storage, tokens, carrier, tables, clock):
    return SyncContext(
        storage=storage,
        tokens=tokens,
        client_factory=lambda cred, limiter: carrier,
        tables=tables,
        limiter=RateLimiter(0),
        clock=clock,
    )


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'trackwise.db'}", future=True)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def add_shipment(session_factory):
    def _add(**kwargs) -> uuid.UUID:
        kwargs.setdefault("account_id", "A1")
        with session_factory() as db:
            row = Shipment(**kwargs)
            db.add(row)
            db.commit()
            return row.id

    return _add


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
