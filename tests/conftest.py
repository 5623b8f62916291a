"""Shared fixtures: in-memory core wiring and a SQLite-backed API client."""

import asyncio
import os
import tempfile

# must be set before database/app are imported
os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.mkdtemp(), "cropchain-test.db")
)
os.environ.setdefault("LEDGER_DELAY_MS", "0")
os.environ.setdefault("LEDGER_ATTEMPTS", "2")

import pytest
from fastapi.testclient import TestClient

from errors import LedgerSubmissionError
from ledger import SimulatedLedger
from provenance import ProvenanceCore
from schemas import CreateBatch
from store import InMemoryStore

T0 = 1_760_000_000_000


class StepClock:
    """Epoch-ms clock that advances ``step`` on every read."""

    def __init__(self, start=T0, step=1000):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class FlakyLedger:
    """Fails the first ``failures`` submissions, then behaves."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    async def submit(self, content_hash):
        self.calls += 1
        if self.calls <= self.failures:
            raise LedgerSubmissionError("node unreachable")
        return "0x" + content_hash


class DownLedger:
    def __init__(self):
        self.calls = 0

    async def submit(self, content_hash):
        self.calls += 1
        raise LedgerSubmissionError("node unreachable")


class CrashingLedger:
    """Raises an error type the core knows nothing about."""

    def __init__(self):
        self.calls = 0

    async def submit(self, content_hash):
        self.calls += 1
        raise RuntimeError("rpc exploded")


class SlowLedger:
    async def submit(self, content_hash):
        await asyncio.sleep(5)
        return "0xslow"


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger():
    return SimulatedLedger(delay=0)


@pytest.fixture
def core(store, ledger, clock):
    return ProvenanceCore(store, ledger, ledger_backoff=0, clock=clock)


@pytest.fixture
def make_core(store, clock):
    """Factory: another core over the same store with a different ledger."""

    def _factory(ledger, **kwargs):
        kwargs.setdefault("ledger_backoff", 0)
        kwargs.setdefault("clock", clock)
        return ProvenanceCore(store, ledger, **kwargs)

    return _factory


@pytest.fixture
def coffee():
    return CreateBatch(
        producer_id="P1",
        crop="Coffee",
        quantity="500kg",
        origin_description="Plot 4",
        harvest_timestamp="2025-11-20",
    )


@pytest.fixture
def client():
    from app import app, get_ledger
    from database import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_ledger] = lambda: SimulatedLedger(delay=0)
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def use_ledger(client):
    """Swap the app's ledger for the duration of one test."""
    from app import app, get_ledger

    def _use(factory):
        app.dependency_overrides[get_ledger] = factory

    try:
        yield _use
    finally:
        app.dependency_overrides.pop(get_ledger, None)
