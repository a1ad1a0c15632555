"""
Exactly-once effect for mutating calls that carry a client idempotency token.

The guard keeps one marker object per token in the object store. Creating
the marker with `IfAbsent` is what elects the single caller allowed to run
the effect; every later caller with the same token either replays the stored
response, is told the token was reused with a different payload, or (while
the first call is still running) is asked to retry later.

Markers expire through the store's lifecycle rules, never through this
module, so a marker may vanish at any moment. Absence always means "never
attempted".
"""
import hashlib
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, Optional, Type, TypeVar

from pydantic import BaseModel

from .errors import (
    IdempotencyConflict,
    IdempotencyInProgress,
    NotFound,
    PreconditionFailed,
    StorageTransient,
)
from .protocols import IfAbsent, IfMatch, ObjectStore
from .store import retry_transient

M = TypeVar("M", bound=BaseModel)

MARKER_PREFIX = "idem/"
MARKER_RETENTION = timedelta(hours=24)


class IdempotencyMarker(BaseModel):
    request_hash: str
    state: Literal["pending", "completed"]
    ts: datetime
    owner: Optional[str] = None
    response: Optional[Any] = None


def hash_request(payload: Any) -> str:
    """SHA-256 of the payload's canonical JSON form."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def marker_key(token: str, scope: str = "") -> str:
    digest = hashlib.sha256(f"{scope}:{token}".encode("utf-8")).hexdigest()
    return f"{MARKER_PREFIX}{digest}.json"


class IdempotencyGuard:
    def __init__(
        self,
        store: ObjectStore,
        *,
        pending_lease: timedelta = timedelta(seconds=60),
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 3,
        completion_attempts: int = 5,
        base_delay: float = 0.05,
    ):
        self.store = store
        self.pending_lease = pending_lease
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max_attempts
        self.completion_attempts = completion_attempts
        self.base_delay = base_delay

    async def guard(
        self,
        token: str,
        request_hash: str,
        effect: Callable[[], Awaitable[M]],
        response_model: Type[M],
        *,
        scope: str = "",
    ) -> M:
        key = marker_key(token, scope)
        pending = IdempotencyMarker(
            request_hash=request_hash, state="pending", ts=self.clock(), owner=uuid.uuid4().hex
        )
        pending_body = pending.model_dump_json().encode("utf-8")

        for _ in range(self.max_attempts):
            try:
                etag = await self.store.put(key, pending_body, IfAbsent())
            except PreconditionFailed:
                try:
                    stored = await self.store.get(key)
                except NotFound:
                    # Expired between our put and get: never attempted.
                    continue
                if stored.body == pending_body:
                    # Our own create landed but its response was lost.
                    return await self._run(key, stored.etag, request_hash, effect)
                marker = IdempotencyMarker.model_validate_json(stored.body)
                if marker.request_hash != request_hash:
                    raise IdempotencyConflict(
                        "Idempotency-Key was already used with a different request body"
                    )
                if marker.state == "completed":
                    logging.info(f"Replaying stored response for idempotency marker {key}")
                    return response_model.model_validate(marker.response)
                if self.clock() - marker.ts < self.pending_lease:
                    raise IdempotencyInProgress(
                        "A request with this Idempotency-Key is still being processed"
                    )
                # The first attempt died without releasing its marker: take it over.
                try:
                    etag = await self.store.put(key, pending_body, IfMatch(etag=stored.etag))
                except PreconditionFailed:
                    continue
                logging.warning(f"Took over stale pending idempotency marker {key}")
            return await self._run(key, etag, request_hash, effect)

        raise IdempotencyInProgress("Could not acquire the idempotency marker, retry later")

    async def _run(
        self,
        key: str,
        etag: str,
        request_hash: str,
        effect: Callable[[], Awaitable[M]],
    ) -> M:
        try:
            result = await effect()
        except BaseException:
            await self._release(key)
            raise

        completed = IdempotencyMarker(
            request_hash=request_hash,
            state="completed",
            ts=self.clock(),
            response=result.model_dump(mode="json"),
        )
        body = completed.model_dump_json().encode("utf-8")
        try:
            await self.store.put(key, body, IfMatch(etag=etag))
        except PreconditionFailed:
            # Someone took the marker over as stale while we were still running.
            # Our effect did happen; record it unconditionally so replays see it.
            logging.warning(f"Idempotency marker {key} changed under a running request")
            await self._record_completed(key, body)
        except StorageTransient:
            # The write may have landed; rewrite it unconditionally.
            await self._record_completed(key, body)
        return result

    async def _record_completed(self, key: str, body: bytes) -> None:
        """
        The effect is already committed, so failing here must not fail the
        request. If every attempt fails the marker stays pending, and a retry
        after the lease runs the effect again.
        """
        try:
            await retry_transient(
                lambda: self.store.put(key, body),
                attempts=self.completion_attempts,
                base_delay=self.base_delay,
                description=f"record completed marker {key}",
            )
        except StorageTransient as e:
            logging.error(f"Effect committed but idempotency marker {key} was not completed: {e}")

    async def _release(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except Exception as e:
            logging.error(f"Failed to release idempotency marker {key}: {e}")
