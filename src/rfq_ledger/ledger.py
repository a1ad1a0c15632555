"""
The RFQ ledger: an append-only, totally ordered event stream per RFQ, kept
on top of a store that only offers single-key conditional writes.

Layout per RFQ:

    rfq/{id}/meta.json                         RfqMeta (status, cached last_event_ts)
    rfq/{id}/index.json                        RfqIndex (count, last event, recent ids)
    rfq/{id}/events/{ts}-{event_id}.json       one object per committed event

The event objects are the source of truth. An append writes its event first
(`IfAbsent`); only once that write has succeeded are the meta record and the
side index advanced, each through a bounded optimistic `IfMatch` loop. If
those loops give up, the event is still committed and readers still see it;
the caches merely lag until the next append or an explicit `reindex`.
"""
import asyncio
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, List, Optional, Tuple, Type, TypeVar

import pydantic_core
from pydantic import BaseModel

from .cursor import MAX_LIMIT, SeenEvents, paginate, parse_since
from .errors import (
    NotFound,
    ObjectNotFound,
    PreconditionFailed,
    StorageContention,
    StorageFatal,
    StorageTransient,
    ValidationError,
)
from .models import (
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    AppendResult,
    EventAuthor,
    EventPage,
    NewRfq,
    RfqIndex,
    RfqMeta,
    RfqStatus,
    StatusDraft,
    StatusEvent,
    StatusType,
    commit_draft,
    rfq_event_adapter,
    sort_key,
)
from .protocols import IfAbsent, IfMatch, Notifier, ObjectStore, Precondition
from .store import backoff

M = TypeVar("M", bound=BaseModel)

RFQ_ID_PATTERN = re.compile(r"^r_[A-Za-z0-9]+$")
_KEY_TS_FORMAT = "%Y%m%dT%H%M%S%fZ"
RECENT_EVENT_IDS = 32


def new_rfq_id() -> str:
    return f"r_{uuid.uuid4().hex[:12].upper()}"


def new_event_id(ts: datetime) -> str:
    """Time-prefixed, so ids sort roughly with their timestamps; the random tail keeps them unique."""
    micros = int(ts.timestamp() * 1_000_000)
    return f"{micros:014x}{secrets.token_hex(6)}"


def meta_key(rfq_id: str) -> str:
    return f"rfq/{rfq_id}/meta.json"


def index_key(rfq_id: str) -> str:
    return f"rfq/{rfq_id}/index.json"


def events_prefix(rfq_id: str) -> str:
    return f"rfq/{rfq_id}/events/"


def event_key(rfq_id: str, ts: datetime, event_id: str) -> str:
    stamp = ts.astimezone(timezone.utc).strftime(_KEY_TS_FORMAT)
    return f"{events_prefix(rfq_id)}{stamp}-{event_id}.json"


def ts_from_event_key(key: str) -> Optional[datetime]:
    """Recovers the timestamp embedded in an event key, or None if the key is foreign."""
    name = key.rsplit("/", 1)[-1]
    try:
        return datetime.strptime(name.split("-", 1)[0], _KEY_TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _advance_meta(meta: RfqMeta, event) -> Optional[RfqMeta]:
    """Applies one committed event to the meta record. None means nothing to change."""
    update = {}
    if meta.last_event_ts is None or event.ts > meta.last_event_ts:
        update["last_event_ts"] = event.ts
    if isinstance(event, StatusEvent) and meta.status not in TERMINAL_STATUSES:
        new_status = STATUS_TRANSITIONS.get(event.status)
        if new_status is not None:
            update["status"] = new_status
    return meta.model_copy(update=update) if update else None


def _advance_index(index: RfqIndex, event) -> Optional[RfqIndex]:
    if event.id in index.recent_event_ids:
        # Our own earlier attempt already landed.
        return None
    update = {
        "count": index.count + 1,
        "recent_event_ids": (index.recent_event_ids + [event.id])[-RECENT_EVENT_IDS:],
    }
    if index.last_event_ts is None or (event.ts, event.id) > (index.last_event_ts, index.last_event_id or ""):
        update["last_event_ts"] = event.ts
        update["last_event_id"] = event.id
    return index.model_copy(update=update)


class RfqLedger:
    def __init__(
        self,
        store: ObjectStore,
        notifier: Optional[Notifier] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        max_retries: int = 5,
        base_delay: float = 0.01,
        fetch_concurrency: int = 16,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.fetch_concurrency = fetch_concurrency

    # --- meta records ---

    @staticmethod
    def _check_id(rfq_id: str) -> str:
        if not RFQ_ID_PATTERN.match(rfq_id or "") or len(rfq_id) > 50:
            raise ValidationError(f"Malformed RFQ id: {rfq_id!r}")
        return rfq_id

    async def _read_meta(self, rfq_id: str) -> Tuple[RfqMeta, str]:
        self._check_id(rfq_id)
        try:
            stored = await self.store.get(meta_key(rfq_id))
        except ObjectNotFound:
            raise NotFound(f"RFQ {rfq_id} not found")
        return RfqMeta.model_validate_json(stored.body), stored.etag

    async def get_rfq(self, rfq_id: str) -> RfqMeta:
        meta, _ = await self._read_meta(rfq_id)
        return meta

    async def get_index(self, rfq_id: str) -> RfqIndex:
        """The side index is an accelerator; a missing one reads as empty."""
        self._check_id(rfq_id)
        try:
            stored = await self.store.get(index_key(rfq_id))
        except ObjectNotFound:
            return RfqIndex()
        return RfqIndex.model_validate_json(stored.body)

    async def create_rfq(self, draft: NewRfq) -> RfqMeta:
        """
        Writes a new meta record under a fresh id, then appends the initial
        `rfq_created` status event. An id collision is an id-generation bug,
        so it is logged and retried with a new id.
        """
        for _ in range(self.max_retries):
            meta = RfqMeta(
                id=new_rfq_id(),
                tenant_id=draft.tenant_id,
                manufacturer_id=draft.manufacturer_id,
                buyer=draft.buyer,
                subject=draft.subject,
                status=RfqStatus.OPEN,
                created_at=self.clock(),
                participants=draft.participants,
            )
            try:
                await self.store.put(
                    meta_key(meta.id), meta.model_dump_json().encode("utf-8"), IfAbsent()
                )
                break
            except PreconditionFailed:
                logging.error(f"RFQ id collision on {meta.id}, generating a new id")
        else:
            raise StorageContention("Could not allocate a unique RFQ id")

        result = await self.append_event(
            meta.id, StatusDraft(by=EventAuthor.SYSTEM, status=StatusType.RFQ_CREATED)
        )
        logging.info(f"Created RFQ {meta.id} for manufacturer {meta.manufacturer_id}")
        return meta.model_copy(update={"last_event_ts": result.event.ts})

    # --- appending ---

    async def append_event(self, rfq_id: str, draft) -> AppendResult:
        meta, meta_etag = await self._read_meta(rfq_id)

        # Keep this RFQ's timestamps strictly increasing as far as this writer knows.
        ts = self.clock()
        if meta.last_event_ts is not None and ts <= meta.last_event_ts:
            ts = meta.last_event_ts + timedelta(microseconds=1)
        event = commit_draft(draft, rfq_id=rfq_id, event_id=new_event_id(ts), ts=ts)
        body = rfq_event_adapter.dump_json(event)
        key = event_key(rfq_id, ts, event.id)

        try:
            await self.store.put(key, body, IfAbsent())
        except PreconditionFailed:
            existing = await self.store.get(key)
            if existing.body != body:
                raise StorageFatal(f"Event key collision on {key}")
            logging.info(f"Event {event.id} was already committed by an earlier attempt")

        anomaly = meta.status in TERMINAL_STATUSES
        if anomaly:
            logging.warning(
                f"Appended {event.type} event {event.id} to RFQ {rfq_id} in terminal state {meta.status.value}"
            )

        # The event is committed from here on; cache maintenance failures are soft.
        settled = True
        try:
            meta = await self._update(
                meta_key(rfq_id),
                RfqMeta,
                lambda current: _advance_meta(current, event),
                known=(meta, meta_etag),
            )
        except (StorageContention, StorageTransient) as e:
            settled = False
            logging.warning(f"Meta record of RFQ {rfq_id} lags event {event.id}: {e}")
        try:
            await self._update(
                index_key(rfq_id),
                RfqIndex,
                lambda current: _advance_index(current, event),
                create=RfqIndex,
            )
        except (StorageContention, StorageTransient) as e:
            settled = False
            logging.warning(f"Side index of RFQ {rfq_id} lags event {event.id}: {e}")

        if self.notifier is not None:
            self.notifier.notify(meta, event)
        return AppendResult(event=event, metadata_settled=settled, anomaly=anomaly)

    async def _update(
        self,
        key: str,
        model: Type[M],
        mutate: Callable[[M], Optional[M]],
        *,
        known: Optional[Tuple[M, str]] = None,
        create: Optional[Callable[[], M]] = None,
    ) -> M:
        """
        Optimistic read-modify-write of one record. `mutate` returns the new
        record, or None if the stored one already reflects the change.
        """
        for attempt in range(self.max_retries):
            precondition: Precondition
            if known is not None:
                current, etag = known
                known = None
                precondition = IfMatch(etag=etag)
            else:
                try:
                    stored = await self.store.get(key)
                    current = model.model_validate_json(stored.body)
                    precondition = IfMatch(etag=stored.etag)
                except ObjectNotFound:
                    if create is None:
                        raise
                    current = create()
                    precondition = IfAbsent()

            updated = mutate(current)
            if updated is None:
                return current
            try:
                await self.store.put(key, updated.model_dump_json().encode("utf-8"), precondition)
                return updated
            except PreconditionFailed:
                await backoff(attempt, self.base_delay)
        raise StorageContention(f"Gave up updating {key} after {self.max_retries} attempts")

    # --- reading ---

    async def _fetch_event(self, key: str, semaphore: asyncio.Semaphore):
        async with semaphore:
            try:
                stored = await self.store.get(key)
            except ObjectNotFound:
                return None
        try:
            return rfq_event_adapter.validate_json(stored.body)
        except (pydantic_core.ValidationError, ValueError) as e:
            logging.warning(f"Skipping undecodable event object {key}: {e}")
            return None

    async def scan_events(self, rfq_id: str, after: Optional[datetime] = None) -> List:
        """
        Reads every committed event of an RFQ, unordered. The whole key range
        is listed before anything is sorted, because listing order means
        nothing. Keys whose embedded timestamp is not after `after` are
        skipped without being fetched.
        """
        keys = []
        async for key in self.store.list(events_prefix(rfq_id)):
            if after is not None:
                key_ts = ts_from_event_key(key)
                if key_ts is not None and key_ts <= after:
                    continue
            keys.append(key)

        semaphore = asyncio.Semaphore(self.fetch_concurrency)
        fetched = await asyncio.gather(*(self._fetch_event(key, semaphore) for key in keys))
        return [event for event in fetched if event is not None]

    async def list_events(
        self, rfq_id: str, since=None, limit: Optional[int] = None
    ) -> EventPage:
        await self._read_meta(rfq_id)
        since = parse_since(since)
        events = await self.scan_events(rfq_id, after=since)
        return paginate(events, since, limit)

    async def watch(
        self, rfq_id: str, since=None, *, interval: float = 1.0
    ) -> AsyncIterator:
        """Polls the event feed forever, yielding each event once."""
        seen = SeenEvents()
        cursor = parse_since(since)
        while True:
            page = await self.list_events(rfq_id, cursor, MAX_LIMIT)
            for event in page.items:
                if seen.add(event.id):
                    yield event
            cursor = page.next_since
            if len(page.items) < MAX_LIMIT:
                await asyncio.sleep(interval)

    # --- repair ---

    async def reindex(self, rfq_id: str) -> RfqIndex:
        """
        Recomputes every derived field (meta status and last_event_ts, the
        side index) from a full scan of the committed events.
        """
        await self._read_meta(rfq_id)
        events = sorted(await self.scan_events(rfq_id), key=sort_key)

        status = RfqStatus.OPEN
        for event in events:
            if isinstance(event, StatusEvent) and status not in TERMINAL_STATUSES:
                status = STATUS_TRANSITIONS.get(event.status, status)
        last = events[-1] if events else None
        index = RfqIndex(
            count=len(events),
            last_event_ts=last.ts if last else None,
            last_event_id=last.id if last else None,
            recent_event_ids=[e.id for e in events[-RECENT_EVENT_IDS:]],
        )

        def fix_meta(current: RfqMeta) -> Optional[RfqMeta]:
            expected = {"status": status, "last_event_ts": index.last_event_ts}
            if all(getattr(current, name) == value for name, value in expected.items()):
                return None
            return current.model_copy(update=expected)

        await self._update(meta_key(rfq_id), RfqMeta, fix_meta)
        await self._update(
            index_key(rfq_id),
            RfqIndex,
            lambda current: None if current == index else index,
            create=RfqIndex,
        )
        logging.info(f"Reindexed RFQ {rfq_id}: {index.count} events")
        return index
