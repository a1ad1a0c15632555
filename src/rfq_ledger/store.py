"""
Backend-independent pieces of the object store layer: key validation,
bounded jittered backoff, and two `ObjectStore` wrappers.

`RetryingObjectStore` retries `StorageTransient` failures at the point where
they happen, so nothing above it has to. `EncryptedObjectStore` keeps private
blobs (RFQ meta, events, idempotency markers) Fernet-encrypted at rest while
public catalog data stays plain and byte-stable.
"""
import asyncio
import logging
import random
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from .errors import StorageFatal, StorageTransient
from .protocols import ObjectStore, Precondition, StoredObject

T = TypeVar("T")

MAX_KEY_BYTES = 1024
PRIVATE_PREFIXES = ("rfq/", "idem/")


def validate_key(key: str) -> str:
    """Rejects keys no backend should accept. Raised as `StorageFatal`: never retried."""
    if not isinstance(key, str) or not key:
        raise StorageFatal("Object key must be a non-empty string")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise StorageFatal(f"Object key longer than {MAX_KEY_BYTES} bytes")
    if key.startswith("/") or ".." in key.split("/"):
        raise StorageFatal(f"Malformed object key: {key!r}")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in key):
        raise StorageFatal("Object key contains control characters")
    return key


async def backoff(attempt: int, base_delay: float, max_delay: float = 2.0) -> None:
    """Full-jitter exponential backoff for the given zero-based attempt."""
    delay = min(max_delay, base_delay * (2 ** attempt))
    await asyncio.sleep(random.uniform(0, delay))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 4,
    base_delay: float = 0.05,
    description: str = "store call",
) -> T:
    for attempt in range(attempts - 1):
        try:
            return await operation()
        except StorageTransient as e:
            logging.warning(f"Transient failure on {description} (attempt {attempt + 1}): {e}")
            await backoff(attempt, base_delay)
    try:
        return await operation()
    except StorageTransient as e:
        logging.error(f"Giving up on {description} after {attempts} attempts: {e}")
        raise


class RetryingObjectStore(ObjectStore):
    def __init__(self, inner: ObjectStore, *, attempts: int = 4, base_delay: float = 0.05):
        self.inner = inner
        self.attempts = attempts
        self.base_delay = base_delay

    async def get(self, key: str) -> StoredObject:
        return await retry_transient(
            lambda: self.inner.get(key),
            attempts=self.attempts,
            base_delay=self.base_delay,
            description=f"get {key}",
        )

    async def put(
        self, key: str, body: bytes, precondition: Optional[Precondition] = None
    ) -> str:
        return await retry_transient(
            lambda: self.inner.put(key, body, precondition),
            attempts=self.attempts,
            base_delay=self.base_delay,
            description=f"put {key}",
        )

    async def list(self, prefix: str, start_after: Optional[str] = None) -> AsyncIterator[str]:
        # Listing is restartable: on a transient failure, resume after the last key we yielded.
        last_key = start_after
        failures = 0
        while True:
            try:
                async for key in self.inner.list(prefix, start_after=last_key):
                    yield key
                    last_key = key
                return
            except StorageTransient as e:
                failures += 1
                if failures >= self.attempts:
                    raise
                logging.warning(f"Transient failure listing {prefix}, resuming after {last_key}: {e}")
                await backoff(failures - 1, self.base_delay)

    async def delete(self, key: str) -> None:
        await retry_transient(
            lambda: self.inner.delete(key),
            attempts=self.attempts,
            base_delay=self.base_delay,
            description=f"delete {key}",
        )


class EncryptedObjectStore(ObjectStore):
    """
    Encrypts bodies under the given prefixes with Fernet. Etags are those of
    the ciphertext, so conditional writes keep working unchanged; equality of
    content must be judged on the decrypted body returned by `get`.
    """

    def __init__(
        self,
        inner: ObjectStore,
        key: bytes,
        prefixes: Iterable[str] = PRIVATE_PREFIXES,
    ):
        self.inner = inner
        self.fernet = Fernet(key)
        self.prefixes = tuple(prefixes)

    def _is_private(self, key: str) -> bool:
        return key.startswith(self.prefixes)

    async def get(self, key: str) -> StoredObject:
        stored = await self.inner.get(key)
        if not self._is_private(key):
            return stored
        try:
            plain = self.fernet.decrypt(stored.body)
        except InvalidToken:
            raise StorageFatal(f"Object {key!r} cannot be decrypted with the configured key")
        return stored.model_copy(update={"body": plain})

    async def put(
        self, key: str, body: bytes, precondition: Optional[Precondition] = None
    ) -> str:
        if self._is_private(key):
            body = self.fernet.encrypt(body)
        return await self.inner.put(key, body, precondition)

    def list(self, prefix: str, start_after: Optional[str] = None) -> AsyncIterator[str]:
        return self.inner.list(prefix, start_after=start_after)

    async def delete(self, key: str) -> None:
        await self.inner.delete(key)
