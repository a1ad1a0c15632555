# rfq_ledger package

from .adaptors.sqlite import sqlite_object_store
from .catalog import CatalogPublisher, ManufacturerDirectory
from .idempotency import IdempotencyGuard
from .ledger import RfqLedger
from .models import (
    AttachmentDraft,
    Manufacturer,
    MessageDraft,
    NewRfq,
    RfqEvent,
    RfqMeta,
    SliceKey,
    StatusDraft,
)
from .store import EncryptedObjectStore, RetryingObjectStore

__all__ = [
    "AttachmentDraft",
    "CatalogPublisher",
    "EncryptedObjectStore",
    "IdempotencyGuard",
    "Manufacturer",
    "ManufacturerDirectory",
    "MessageDraft",
    "NewRfq",
    "RetryingObjectStore",
    "RfqEvent",
    "RfqLedger",
    "RfqMeta",
    "SliceKey",
    "StatusDraft",
    "sqlite_object_store",
]
