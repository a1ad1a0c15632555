"""
This module defines the core data models of the marketplace core using Pydantic.
These models are what gets serialized into the object store, so their JSON
shape is the storage format: RFQ meta records, the per-RFQ side index, the
tagged event union, manufacturers and the derived catalog slices.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

CATEGORY_PATTERN = r"^[a-z0-9][a-z0-9-]{0,62}$"
MANUFACTURER_ID_PATTERN = r"^mfg_[A-Za-z0-9_-]+$"
TENANT_ID_PATTERN = r"^[A-Za-z0-9_-]+$"


class RfqStatus(str, Enum):
    OPEN = "open"
    ARCHIVED = "archived"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset({RfqStatus.ARCHIVED, RfqStatus.CLOSED})


class EventAuthor(str, Enum):
    BUYER = "buyer"
    MANUFACTURER = "manufacturer"
    SYSTEM = "system"


class StatusType(str, Enum):
    RFQ_CREATED = "rfq_created"
    VENDOR_VIEWED = "vendor_viewed"
    VENDOR_REPLIED = "vendor_replied"
    BUYER_VIEWED = "buyer_viewed"
    CLOSED = "closed"
    ARCHIVED = "archived"


# Status events that move RFQ.status; every other status value is informational.
STATUS_TRANSITIONS = {
    StatusType.CLOSED: RfqStatus.CLOSED,
    StatusType.ARCHIVED: RfqStatus.ARCHIVED,
}


class ParticipantRole(str, Enum):
    BUYER = "buyer"
    MANUFACTURER = "manufacturer"


class Contact(BaseModel):
    email: str
    name: Optional[str] = None


class Participant(BaseModel):
    role: ParticipantRole
    email: str
    name: Optional[str] = None


class AttachmentRef(BaseModel):
    id: str
    file_name: str
    content_type: str
    size_bytes: int
    key: str  # object key issued by the upload presigner


# --- RFQ meta and side index ---


class NewRfq(BaseModel):
    tenant_id: str
    manufacturer_id: str
    buyer: Contact
    subject: str
    participants: List[Participant] = Field(default_factory=list)


class RfqMeta(BaseModel):
    id: str
    tenant_id: str
    manufacturer_id: str
    buyer: Contact
    subject: str
    status: RfqStatus = RfqStatus.OPEN
    created_at: datetime
    last_event_ts: Optional[datetime] = None
    participants: List[Participant] = Field(default_factory=list)


class RfqIndex(BaseModel):
    count: int = 0
    last_event_ts: Optional[datetime] = None
    last_event_id: Optional[str] = None
    # Ids of the newest counted events, so a retried update is not counted twice.
    recent_event_ids: List[str] = Field(default_factory=list)


# --- Events ---
#
# Drafts are what callers hand to the ledger; the ledger stamps `id`, `rfq_id`
# and `ts` to produce the committed event. Both unions are closed and
# discriminated on `type`.


class MessageDraft(BaseModel):
    type: Literal["message"] = "message"
    by: EventAuthor
    body: str


class StatusDraft(BaseModel):
    type: Literal["status"] = "status"
    by: EventAuthor = EventAuthor.SYSTEM
    status: StatusType
    note: Optional[str] = None


class AttachmentDraft(BaseModel):
    type: Literal["attachment"] = "attachment"
    by: EventAuthor
    attachments: List[AttachmentRef]


EventDraft = Annotated[
    Union[MessageDraft, StatusDraft, AttachmentDraft], Field(discriminator="type")
]


class _CommittedFields(BaseModel):
    id: str
    rfq_id: str
    ts: datetime


class MessageEvent(_CommittedFields, MessageDraft):
    pass


class StatusEvent(_CommittedFields, StatusDraft):
    pass


class AttachmentEvent(_CommittedFields, AttachmentDraft):
    pass


RfqEvent = Annotated[
    Union[MessageEvent, StatusEvent, AttachmentEvent], Field(discriminator="type")
]
rfq_event_adapter: TypeAdapter = TypeAdapter(RfqEvent)


def commit_draft(draft: BaseModel, *, rfq_id: str, event_id: str, ts: datetime):
    """Stamps a draft with its server-assigned identity, yielding the committed event."""
    payload = draft.model_dump()
    payload.update(id=event_id, rfq_id=rfq_id, ts=ts)
    return rfq_event_adapter.validate_python(payload)


def sort_key(event) -> tuple:
    """Total order of a single RFQ's events: timestamp first, id breaks ties."""
    return (event.ts, event.id)


class AppendResult(BaseModel):
    event: RfqEvent
    # False when the meta/index caches could not be updated; the event is still committed.
    metadata_settled: bool = True
    # True when the event was appended to an RFQ already in a terminal state.
    anomaly: bool = False


class EventPage(BaseModel):
    items: List[RfqEvent]
    next_since: Optional[datetime] = None


# --- Manufacturers and catalog ---


class Location(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class MediaRef(BaseModel):
    image_manifest_id: str
    alt: Optional[str] = None


class Manufacturer(BaseModel):
    id: str = Field(pattern=MANUFACTURER_ID_PATTERN, max_length=50)
    tenant_id: str = Field(pattern=TENANT_ID_PATTERN, min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    location: Optional[Location] = None
    categories: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    contact_email: Optional[str] = None
    media: List[MediaRef] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @field_validator("categories")
    @classmethod
    def _categories_are_a_set(cls, value: List[str]) -> List[str]:
        # Stored as a sorted set so identical membership serializes identically.
        categories = sorted({c.strip().lower() for c in value if c.strip()})
        for category in categories:
            if not re.match(CATEGORY_PATTERN, category):
                raise ValueError(f"invalid category slug: {category!r}")
        return categories


class SliceDimension(str, Enum):
    CATEGORY = "category"
    CATEGORY_STATE = "category_state"


class SliceKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: SliceDimension
    category: str
    state: Optional[str] = None

    @property
    def object_key(self) -> str:
        if self.dimension is SliceDimension.CATEGORY:
            return f"catalog/category/{self.category}.json"
        return f"catalog/category_state/{self.category}/{self.state}.json"

    @property
    def sort_tuple(self) -> tuple:
        return (self.dimension.value, self.category, self.state or "")


class ManufacturerSummary(BaseModel):
    id: str
    name: str
    city: Optional[str] = None
    state: Optional[str] = None
    categories: List[str]
    capabilities: List[str] = Field(default_factory=list)
    logo: Optional[str] = None


class CatalogSlice(BaseModel):
    dimension: SliceDimension
    category: str
    state: Optional[str] = None
    generated_at: Optional[datetime] = None
    items: List[ManufacturerSummary] = Field(default_factory=list)


class CatalogMembership(BaseModel):
    manufacturer_id: str
    slices: List[SliceKey] = Field(default_factory=list)
