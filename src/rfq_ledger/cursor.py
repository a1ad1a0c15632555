"""
Poll cursors for the RFQ event feed.

A cursor is nothing more than the `ts` of the last event a client has seen.
A page holds the events strictly after the cursor, in `(ts, id)` order. A
page never ends in the middle of a run of events that share one timestamp:
the next cursor would skip the rest of that run.

Events can still be delivered twice (for instance when a client re-polls
with an older cursor after a timeout), so consumers dedupe by event `id`;
`SeenEvents` does that with bounded memory.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from .errors import ValidationError
from .models import EventPage, sort_key

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def parse_since(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parses a client-supplied cursor. Naive timestamps are taken to be UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid since timestamp: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    if limit < 1:
        raise ValidationError("limit must be at least 1", details={"limit": limit})
    return min(limit, MAX_LIMIT)


def paginate(events: Iterable, since: Optional[datetime], limit: Optional[int]) -> EventPage:
    """Sorts, filters and truncates a full (unordered) event set into one page."""
    limit = clamp_limit(limit)
    ordered = sorted(events, key=sort_key)
    if since is not None:
        ordered = [e for e in ordered if e.ts > since]

    page: List = ordered[:limit]
    if page:
        # Extend through any events sharing the last timestamp.
        boundary = page[-1].ts
        for event in ordered[limit:]:
            if event.ts != boundary:
                break
            page.append(event)

    next_since = page[-1].ts if page else since
    return EventPage(items=page, next_since=next_since)


class SeenEvents:
    """Remembers the most recent `capacity` event ids a poller has delivered."""

    def __init__(self, capacity: int = 1024):
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._ids

    def add(self, event_id: str) -> bool:
        """Records an id. Returns False if it had already been seen."""
        if event_id in self._ids:
            self._ids.move_to_end(event_id)
            return False
        self._ids[event_id] = None
        if len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True
