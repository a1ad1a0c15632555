"""
Use-case layer between the HTTP routes and the storage-facing components.

Every mutating call optionally carries an idempotency token. With a token,
the whole composed effect (for instance "create RFQ, append message, append
attachments") runs at most once per token and its response is replayed to
retries; without one, the call simply runs.
"""
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .catalog import CatalogPublisher, ManufacturerDirectory
from .idempotency import IdempotencyGuard, hash_request
from .ledger import RfqLedger
from .models import (
    AttachmentDraft,
    AttachmentRef,
    Contact,
    EventAuthor,
    EventPage,
    Manufacturer,
    MessageDraft,
    NewRfq,
    Participant,
    ParticipantRole,
    RfqMeta,
    StatusDraft,
)
from .schemas import (
    AttachmentUpload,
    CatalogRebuildResponse,
    CreateRfqRequest,
    CreateRfqResponse,
    EventCreatedResponse,
    PostMessageRequest,
    PostStatusRequest,
)

R = TypeVar("R", bound=BaseModel)


def attachment_refs(uploads: List[AttachmentUpload]) -> List[AttachmentRef]:
    return [
        AttachmentRef(
            id=f"att_{uuid.uuid4().hex[:12]}",
            file_name=upload.file_name,
            content_type=upload.content_type,
            size_bytes=upload.size_bytes,
            key=upload.upload_key,
        )
        for upload in uploads
    ]


class RfqService:
    def __init__(
        self,
        ledger: RfqLedger,
        guard: IdempotencyGuard,
        directory: ManufacturerDirectory,
        publisher: CatalogPublisher,
    ):
        self.ledger = ledger
        self.guard = guard
        self.directory = directory
        self.publisher = publisher

    async def _once(
        self,
        scope: str,
        token: Optional[str],
        request: BaseModel,
        effect: Callable[[], Awaitable[R]],
        response_model: Type[R],
    ) -> R:
        if not token:
            return await effect()
        request_hash = hash_request(request.model_dump(mode="json"))
        return await self.guard.guard(token, request_hash, effect, response_model, scope=scope)

    # --- RFQs ---

    async def open_rfq(
        self, request: CreateRfqRequest, idempotency_key: Optional[str] = None
    ) -> CreateRfqResponse:
        async def effect() -> CreateRfqResponse:
            manufacturer = await self.directory.get(request.manufacturer_id)
            participants = [
                Participant(
                    role=ParticipantRole.BUYER, email=request.buyer.email, name=request.buyer.name
                )
            ]
            if manufacturer.contact_email:
                participants.append(
                    Participant(
                        role=ParticipantRole.MANUFACTURER,
                        email=manufacturer.contact_email,
                        name=manufacturer.name,
                    )
                )
            meta = await self.ledger.create_rfq(
                NewRfq(
                    tenant_id=request.tenant_id,
                    manufacturer_id=request.manufacturer_id,
                    buyer=Contact(email=request.buyer.email, name=request.buyer.name),
                    subject=request.subject,
                    participants=participants,
                )
            )
            result = await self.ledger.append_event(
                meta.id, MessageDraft(by=EventAuthor.BUYER, body=request.body)
            )
            last_ts = result.event.ts
            if request.attachments:
                result = await self.ledger.append_event(
                    meta.id,
                    AttachmentDraft(
                        by=EventAuthor.BUYER, attachments=attachment_refs(request.attachments)
                    ),
                )
                last_ts = result.event.ts
            return CreateRfqResponse(id=meta.id, last_event_ts=last_ts)

        return await self._once("rfqs", idempotency_key, request, effect, CreateRfqResponse)

    async def post_message(
        self,
        rfq_id: str,
        request: PostMessageRequest,
        idempotency_key: Optional[str] = None,
    ) -> EventCreatedResponse:
        async def effect() -> EventCreatedResponse:
            author = EventAuthor(request.by)
            result = await self.ledger.append_event(
                rfq_id, MessageDraft(by=author, body=request.body)
            )
            settled = result.metadata_settled
            if request.attachments:
                attached = await self.ledger.append_event(
                    rfq_id,
                    AttachmentDraft(by=author, attachments=attachment_refs(request.attachments)),
                )
                settled = settled and attached.metadata_settled
            return EventCreatedResponse(
                id=result.event.id, ts=result.event.ts, metadata_settled=settled
            )

        return await self._once(
            f"rfqs/{rfq_id}/messages", idempotency_key, request, effect, EventCreatedResponse
        )

    async def post_status(
        self,
        rfq_id: str,
        request: PostStatusRequest,
        idempotency_key: Optional[str] = None,
    ) -> EventCreatedResponse:
        async def effect() -> EventCreatedResponse:
            result = await self.ledger.append_event(
                rfq_id,
                StatusDraft(by=EventAuthor(request.by), status=request.status, note=request.note),
            )
            return EventCreatedResponse(
                id=result.event.id, ts=result.event.ts, metadata_settled=result.metadata_settled
            )

        return await self._once(
            f"rfqs/{rfq_id}/status", idempotency_key, request, effect, EventCreatedResponse
        )

    async def get_rfq(self, rfq_id: str) -> RfqMeta:
        return await self.ledger.get_rfq(rfq_id)

    async def list_events(self, rfq_id: str, since=None, limit: Optional[int] = None) -> EventPage:
        return await self.ledger.list_events(rfq_id, since, limit)

    # --- manufacturers and catalog ---

    async def upsert_manufacturer(self, manufacturer: Manufacturer) -> CatalogRebuildResponse:
        record = await self.directory.put(manufacturer)
        slices = await self.publisher.rebuild([record.id])
        logging.info(f"Upserted manufacturer {record.id}, {len(slices)} slices rebuilt")
        return CatalogRebuildResponse(id=record.id, slices=slices)

    async def delete_manufacturer(self, manufacturer_id: str) -> CatalogRebuildResponse:
        await self.directory.delete(manufacturer_id)
        slices = await self.publisher.rebuild([manufacturer_id])
        logging.info(f"Deleted manufacturer {manufacturer_id}, {len(slices)} slices rebuilt")
        return CatalogRebuildResponse(id=manufacturer_id, slices=slices)

    async def get_manufacturer(self, manufacturer_id: str) -> Manufacturer:
        return await self.directory.get(manufacturer_id)

    async def read_slice(self, category: str, state: Optional[str] = None):
        return await self.publisher.read_slice(category, state)
