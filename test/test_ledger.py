import asyncio
import re

import pytest

from conftest import FlakyStore, new_rfq
from rfq_ledger.errors import NotFound, ValidationError
from rfq_ledger.ledger import (
    RECENT_EVENT_IDS,
    RfqLedger,
    _advance_index,
    event_key,
    events_prefix,
    index_key,
    ts_from_event_key,
)
from rfq_ledger.models import (
    AttachmentDraft,
    AttachmentRef,
    EventAuthor,
    MessageDraft,
    RfqStatus,
    StatusDraft,
    StatusType,
)
from rfq_ledger.store import RetryingObjectStore


@pytest.mark.asyncio
async def test_create_rfq(ledger):
    meta = await ledger.create_rfq(new_rfq())

    assert re.match(r"^r_[A-Za-z0-9]+$", meta.id)
    assert meta.status == RfqStatus.OPEN
    assert meta.subject == "CNC prototype"

    page = await ledger.list_events(meta.id)
    assert len(page.items) == 1
    assert page.items[0].type == "status"
    assert page.items[0].status == StatusType.RFQ_CREATED
    assert meta.last_event_ts == page.items[0].ts

    index = await ledger.get_index(meta.id)
    assert index.count == 1
    assert index.last_event_id == page.items[0].id


@pytest.mark.asyncio
async def test_events_come_back_in_append_order(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="Need 10 units"))
    await ledger.append_event(
        meta.id,
        AttachmentDraft(
            by=EventAuthor.BUYER,
            attachments=[
                AttachmentRef(
                    id="att_1", file_name="part.pdf", content_type="application/pdf", size_bytes=10, key="uploads/part.pdf"
                )
            ],
        ),
    )

    page = await ledger.list_events(meta.id)
    assert [e.type for e in page.items] == ["status", "message", "attachment"]
    assert page.items[1].body == "Need 10 units"
    assert page.items[2].attachments[0].file_name == "part.pdf"


@pytest.mark.asyncio
async def test_timestamps_strictly_increase_with_a_frozen_clock(ledger):
    # The manual clock never moves on its own.
    meta = await ledger.create_rfq(new_rfq())
    for i in range(5):
        await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body=str(i)))

    events = (await ledger.list_events(meta.id)).items
    stamps = [e.ts for e in events]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


@pytest.mark.asyncio
async def test_since_pagination(ledger, clock):
    meta = await ledger.create_rfq(new_rfq())
    created = (await ledger.list_events(meta.id)).items[0]
    clock.advance(seconds=1)
    t2 = (await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="two"))).event
    clock.advance(seconds=1)
    t3 = (await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.MANUFACTURER, body="three"))).event

    page = await ledger.list_events(meta.id, since=created.ts, limit=1)
    assert [e.id for e in page.items] == [t2.id]
    assert page.next_since == t2.ts

    page = await ledger.list_events(meta.id, since=page.next_since, limit=1)
    assert [e.id for e in page.items] == [t3.id]

    page = await ledger.list_events(meta.id, since=page.next_since, limit=1)
    assert page.items == []
    assert page.next_since == t3.ts

    # The cursor is accepted in its wire form too.
    page = await ledger.list_events(meta.id, since=created.ts.isoformat().replace("+00:00", "Z"))
    assert [e.id for e in page.items] == [t2.id, t3.id]


@pytest.mark.asyncio
async def test_unknown_and_malformed_ids(ledger):
    with pytest.raises(NotFound):
        await ledger.get_rfq("r_DOESNOTEXIST")
    with pytest.raises(NotFound):
        await ledger.append_event("r_DOESNOTEXIST", MessageDraft(by=EventAuthor.BUYER, body="x"))
    with pytest.raises(ValidationError):
        await ledger.get_rfq("../../etc")
    with pytest.raises(ValidationError):
        await ledger.list_events("not-an-id")


@pytest.mark.asyncio
async def test_status_transitions(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await ledger.append_event(meta.id, StatusDraft(by=EventAuthor.MANUFACTURER, status=StatusType.VENDOR_VIEWED))
    assert (await ledger.get_rfq(meta.id)).status == RfqStatus.OPEN

    result = await ledger.append_event(meta.id, StatusDraft(status=StatusType.CLOSED, note="Quoted"))
    assert not result.anomaly
    assert (await ledger.get_rfq(meta.id)).status == RfqStatus.CLOSED

    # The first terminal transition wins.
    await ledger.append_event(meta.id, StatusDraft(status=StatusType.ARCHIVED))
    assert (await ledger.get_rfq(meta.id)).status == RfqStatus.CLOSED


@pytest.mark.asyncio
async def test_append_to_terminal_rfq_is_accepted_and_flagged(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await ledger.append_event(meta.id, StatusDraft(status=StatusType.ARCHIVED))

    result = await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="late"))
    assert result.anomaly
    assert (await ledger.list_events(meta.id)).items[-1].id == result.event.id


@pytest.mark.asyncio
async def test_notifier_sees_committed_events(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="hello"))

    kinds = [event.type for _, event in ledger.notifier.calls]
    assert kinds == ["status", "message"]


@pytest.mark.asyncio
async def test_metadata_contention_is_soft(store, clock):
    flaky = FlakyStore(store)
    ledger = RfqLedger(flaky, clock=clock, base_delay=0)
    meta = await ledger.create_rfq(new_rfq())

    flaky.contend("meta.json", 100)
    flaky.contend("index.json", 100)
    result = await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="still here"))

    assert not result.metadata_settled
    # The event is committed and visible even though the caches lag.
    page = await ledger.list_events(meta.id)
    assert page.items[-1].id == result.event.id
    assert (await ledger.get_rfq(meta.id)).last_event_ts < result.event.ts
    assert (await ledger.get_index(meta.id)).count == 1

    flaky.contend("meta.json", 0)
    flaky.contend("index.json", 0)
    index = await ledger.reindex(meta.id)
    assert index.count == 2
    assert index.last_event_id == result.event.id
    assert (await ledger.get_rfq(meta.id)).last_event_ts == result.event.ts


@pytest.mark.asyncio
async def test_lost_event_write_response_commits_once(store, clock):
    flaky = FlakyStore(store)
    ledger = RfqLedger(RetryingObjectStore(flaky, base_delay=0), clock=clock, base_delay=0)
    meta = await ledger.create_rfq(new_rfq())

    flaky.lose_responses(1, containing="/events/")
    result = await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="once"))

    assert result.metadata_settled
    messages = [e for e in (await ledger.list_events(meta.id)).items if e.type == "message"]
    assert [e.id for e in messages] == [result.event.id]
    assert (await ledger.get_index(meta.id)).count == 2


@pytest.mark.asyncio
async def test_lost_index_write_response_does_not_double_count(store, clock):
    flaky = FlakyStore(store)
    ledger = RfqLedger(RetryingObjectStore(flaky, base_delay=0), clock=clock, base_delay=0)
    meta = await ledger.create_rfq(new_rfq())

    flaky.lose_responses(1, containing="index.json")
    await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="x"))
    assert (await ledger.get_index(meta.id)).count == 2


@pytest.mark.asyncio
async def test_late_index_retry_after_a_newer_append_is_not_counted(ledger):
    meta = await ledger.create_rfq(new_rfq())
    a = (await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="a"))).event
    await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.MANUFACTURER, body="b"))

    index = await ledger.get_index(meta.id)
    assert index.count == 3
    # A retried update for `a` arriving after `b` already moved the index.
    assert _advance_index(index, a) is None


@pytest.mark.asyncio
async def test_index_remembers_a_bounded_number_of_event_ids(ledger):
    meta = await ledger.create_rfq(new_rfq())
    for i in range(RECENT_EVENT_IDS + 3):
        await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body=str(i)))

    index = await ledger.get_index(meta.id)
    assert index.count == RECENT_EVENT_IDS + 4
    assert len(index.recent_event_ids) == RECENT_EVENT_IDS
    assert index.recent_event_ids[-1] == index.last_event_id
    assert await ledger.reindex(meta.id) == index


@pytest.mark.asyncio
async def test_concurrent_appends_all_commit(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await asyncio.gather(
        *(
            ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body=str(i)))
            for i in range(10)
        )
    )

    page = await ledger.list_events(meta.id)
    assert len(page.items) == 11
    assert len({e.id for e in page.items}) == 11
    assert (await ledger.reindex(meta.id)).count == 11


@pytest.mark.asyncio
async def test_undecodable_event_objects_are_skipped(ledger, store):
    meta = await ledger.create_rfq(new_rfq())
    await store.put(f"{events_prefix(meta.id)}garbage.json", b"not json")

    page = await ledger.list_events(meta.id)
    assert len(page.items) == 1


@pytest.mark.asyncio
async def test_event_keys_embed_their_timestamp(ledger):
    meta = await ledger.create_rfq(new_rfq())
    event = (await ledger.list_events(meta.id)).items[0]
    key = event_key(meta.id, event.ts, event.id)

    assert key.startswith(events_prefix(meta.id))
    assert ts_from_event_key(key) == event.ts
    assert ts_from_event_key(index_key(meta.id)) is None


@pytest.mark.asyncio
async def test_watch_yields_each_event_once(ledger):
    meta = await ledger.create_rfq(new_rfq())
    await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.BUYER, body="one"))

    feed = ledger.watch(meta.id, interval=0.01)
    first = await asyncio.wait_for(feed.__anext__(), timeout=1)
    second = await asyncio.wait_for(feed.__anext__(), timeout=1)
    assert [first.type, second.type] == ["status", "message"]

    appended = await ledger.append_event(meta.id, MessageDraft(by=EventAuthor.MANUFACTURER, body="two"))
    third = await asyncio.wait_for(feed.__anext__(), timeout=1)
    assert third.id == appended.event.id
    await feed.aclose()
