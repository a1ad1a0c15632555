"""
This module defines the abstract protocols for storage and notification.

Everything above the object store (idempotency guard, ledger, catalog
publisher) talks to the `ObjectStore` protocol, never to a concrete backend.
The store holds keyed byte blobs and offers only single-key conditional
writes and an unordered listing. Every higher-level guarantee is built from
`put(..., IfAbsent())` and `put(..., IfMatch(etag))`.
"""
from typing import AsyncIterator, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from .models import RfqEvent, RfqMeta


class IfAbsent(BaseModel):
    """Write only if no (unexpired) object exists under the key."""

    model_config = ConfigDict(frozen=True)


class IfMatch(BaseModel):
    """Write only if the stored object's etag still equals `etag`."""

    model_config = ConfigDict(frozen=True)

    etag: str


Precondition = Union[IfAbsent, IfMatch]


class StoredObject(BaseModel):
    key: str
    body: bytes
    etag: str


class ObjectStore(Protocol):
    """
    Uniform get/put/list/delete over keyed byte blobs.

    Any call may raise `StorageTransient` (safe to retry) or `StorageFatal`.
    `list` makes no ordering promise; callers that need an order sort.
    """

    async def get(self, key: str) -> StoredObject:
        ...

    async def put(
        self, key: str, body: bytes, precondition: Optional[Precondition] = None
    ) -> str:
        ...

    def list(self, prefix: str, start_after: Optional[str] = None) -> AsyncIterator[str]:
        ...

    async def delete(self, key: str) -> None:
        ...


class Notifier(Protocol):
    """
    Post-commit hook invoked by the ledger. Must return promptly and never
    raise into the commit path.
    """

    def notify(self, meta: RfqMeta, event: RfqEvent) -> None:
        ...


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None:
        ...
