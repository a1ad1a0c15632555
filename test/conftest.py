from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

import pytest
from pytest_asyncio import fixture

from rfq_ledger.adaptors.sqlite import sqlite_object_store
from rfq_ledger.errors import PreconditionFailed, StorageTransient
from rfq_ledger.idempotency import MARKER_PREFIX
from rfq_ledger.ledger import RfqLedger
from rfq_ledger.models import Contact, Manufacturer, NewRfq
from rfq_ledger.protocols import ObjectStore, Precondition, StoredObject


class ManualClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyStore(ObjectStore):
    """
    Wraps a store and injects failures:

    - `fail_next(n)`: the next n calls raise StorageTransient before reaching the store.
    - `lose_responses(n, containing)`: the next n matching puts commit, then raise StorageTransient.
    - `contend(suffix, n)`: the next n conditional puts to keys ending in `suffix` fail as if raced.
    - `break_list_after(n)`: the next listing raises StorageTransient after yielding n keys.
    """

    def __init__(self, inner: ObjectStore):
        self.inner = inner
        self.transient = 0
        self.lost: List[list] = []
        self.contended: Dict[str, int] = {}
        self.list_break: Optional[int] = None

    def fail_next(self, n: int):
        self.transient = n

    def lose_responses(self, n: int, containing: str = ""):
        self.lost.append([containing, n])

    def contend(self, suffix: str, n: int):
        self.contended[suffix] = n

    def break_list_after(self, n: int):
        self.list_break = n

    def _maybe_fail(self, operation: str, key: str):
        if self.transient > 0:
            self.transient -= 1
            raise StorageTransient(f"injected failure on {operation} {key}")

    async def get(self, key: str) -> StoredObject:
        self._maybe_fail("get", key)
        return await self.inner.get(key)

    async def put(self, key: str, body: bytes, precondition: Optional[Precondition] = None) -> str:
        self._maybe_fail("put", key)
        if precondition is not None:
            for suffix, remaining in self.contended.items():
                if remaining > 0 and key.endswith(suffix):
                    self.contended[suffix] = remaining - 1
                    raise PreconditionFailed(key, "injected contention")
        etag = await self.inner.put(key, body, precondition)
        for entry in self.lost:
            containing, remaining = entry
            if remaining > 0 and containing in key:
                entry[1] = remaining - 1
                raise StorageTransient(f"injected lost response on put {key}")
        return etag

    async def list(self, prefix: str, start_after: Optional[str] = None) -> AsyncIterator[str]:
        self._maybe_fail("list", prefix)
        yielded = 0
        async for key in self.inner.list(prefix, start_after=start_after):
            if self.list_break is not None and yielded >= self.list_break:
                self.list_break = None
                raise StorageTransient(f"injected failure listing {prefix}")
            yielded += 1
            yield key

    async def delete(self, key: str) -> None:
        self._maybe_fail("delete", key)
        await self.inner.delete(key)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, meta, event):
        self.calls.append((meta, event))


@pytest.fixture
def clock():
    return ManualClock()


@fixture
async def store(clock):
    """A clean in-memory object store for each test function."""
    async with sqlite_object_store(
        ":memory:", lifecycle={MARKER_PREFIX: timedelta(hours=24)}, clock=clock
    ) as s:
        yield s


@fixture
async def ledger(store, clock):
    yield RfqLedger(store, RecordingNotifier(), clock=clock, base_delay=0)


def new_rfq(**overrides) -> NewRfq:
    fields = dict(
        tenant_id="t_acme",
        manufacturer_id="mfg_123",
        buyer=Contact(email="buyer@example.com", name="Buyer"),
        subject="CNC prototype",
    )
    fields.update(overrides)
    return NewRfq(**fields)


def manufacturer(manufacturer_id: str, categories, state: Optional[str] = None, **overrides) -> Manufacturer:
    fields = dict(
        id=manufacturer_id,
        tenant_id="t_acme",
        name=f"Manufacturer {manufacturer_id}",
        categories=list(categories),
        location={"city": "Springfield", "state": state} if state else None,
        contact_email=f"{manufacturer_id}@example.com",
    )
    fields.update(overrides)
    return Manufacturer(**fields)
