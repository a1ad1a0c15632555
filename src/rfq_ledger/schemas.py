"""Request and response bodies of the HTTP surface, with their boundary limits."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .models import (
    MANUFACTURER_ID_PATTERN,
    TENANT_ID_PATTERN,
    SliceKey,
    StatusType,
)

MAX_BODY_LENGTH = 8000
MAX_SUBJECT_LENGTH = 200
MAX_ATTACHMENTS = 10
MAX_ATTACHMENT_BYTES = 15 * 1024 * 1024

AttachmentContentType = Literal[
    "image/jpeg", "image/png", "image/webp", "image/avif", "application/pdf"
]


class AttachmentUpload(BaseModel):
    upload_key: str = Field(min_length=1, max_length=1024)
    file_name: str = Field(min_length=1, max_length=255)
    content_type: AttachmentContentType
    size_bytes: int = Field(ge=1, le=MAX_ATTACHMENT_BYTES)


class BuyerContact(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    name: Optional[str] = Field(default=None, max_length=200)


class CreateRfqRequest(BaseModel):
    tenant_id: str = Field(pattern=TENANT_ID_PATTERN, min_length=1, max_length=50)
    manufacturer_id: str = Field(pattern=MANUFACTURER_ID_PATTERN, max_length=50)
    buyer: BuyerContact
    subject: str = Field(min_length=1, max_length=MAX_SUBJECT_LENGTH)
    body: str = Field(min_length=1, max_length=MAX_BODY_LENGTH)
    attachments: List[AttachmentUpload] = Field(default_factory=list, max_length=MAX_ATTACHMENTS)


class PostMessageRequest(BaseModel):
    by: Literal["buyer", "manufacturer"]
    body: str = Field(min_length=1, max_length=MAX_BODY_LENGTH)
    attachments: List[AttachmentUpload] = Field(default_factory=list, max_length=MAX_ATTACHMENTS)


class PostStatusRequest(BaseModel):
    status: StatusType
    by: Literal["buyer", "manufacturer", "system"] = "system"
    note: Optional[str] = Field(default=None, max_length=MAX_BODY_LENGTH)


class CreateRfqResponse(BaseModel):
    id: str
    last_event_ts: Optional[datetime] = None


class EventCreatedResponse(BaseModel):
    id: str
    ts: datetime
    metadata_settled: bool = True


class CatalogRebuildResponse(BaseModel):
    id: str
    slices: List[SliceKey]
