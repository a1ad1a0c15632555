"""
Post-commit notification dispatch.

The ledger calls `notify` after an event is durably committed. Delivery runs
as a background task and never blocks or fails the committing request.
Failures are logged and dropped.
"""
import asyncio
import logging
from typing import List, Set, Tuple

from .models import (
    AttachmentEvent,
    MessageEvent,
    ParticipantRole,
    RfqMeta,
    StatusEvent,
    StatusType,
)
from .protocols import EmailSender, Notifier


class LoggingEmailSender(EmailSender):
    """Default sender: records what would have been sent."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logging.info(f"Email to {to}: {subject}")


def compose_messages(meta: RfqMeta, event) -> List[Tuple[str, str, str]]:
    """Returns (to, subject, body) triples for one committed event."""
    manufacturer_emails = [
        p.email for p in meta.participants if p.role == ParticipantRole.MANUFACTURER and p.email
    ]
    buyer_name = meta.buyer.name or "Customer"

    if isinstance(event, StatusEvent):
        if event.status == StatusType.RFQ_CREATED:
            messages = [
                (
                    email,
                    f"New RFQ: {meta.subject}",
                    f"You have received a new Request for Quote.\n\n"
                    f"Subject: {meta.subject}\n"
                    f"From: {meta.buyer.name or 'Anonymous'} ({meta.buyer.email})\n",
                )
                for email in manufacturer_emails
            ]
            messages.append(
                (
                    meta.buyer.email,
                    "RFQ Submitted Successfully",
                    f"Hello {buyer_name},\n\nYour Request for Quote has been submitted.\n\n"
                    f"Subject: {meta.subject}\nRFQ ID: {meta.id}\n",
                )
            )
            return messages
        if event.status in (StatusType.CLOSED, StatusType.ARCHIVED):
            return [
                (
                    meta.buyer.email,
                    f"RFQ {event.status.value}: {meta.subject}",
                    f"Hello {buyer_name},\n\nRFQ {meta.id} is now {event.status.value}."
                    + (f"\n\nNote: {event.note}" if event.note else ""),
                )
            ]
        return []

    if isinstance(event, (MessageEvent, AttachmentEvent)):
        what = "message" if isinstance(event, MessageEvent) else "attachment"
        if event.by.value == ParticipantRole.BUYER.value:
            recipients = manufacturer_emails
        else:
            recipients = [meta.buyer.email]
        return [
            (email, f"New {what} on RFQ: {meta.subject}", f"There is a new {what} on RFQ {meta.id}.\n")
            for email in recipients
        ]
    return []


class BackgroundNotifier(Notifier):
    """
    Fire-and-forget dispatcher. Keeps references to its in-flight tasks so
    they are not garbage collected and can be drained on shutdown.
    """

    def __init__(self, sender: EmailSender):
        self.sender = sender
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    async def start(self):
        self._running = True
        logging.info("Notifier started")

    async def stop(self):
        await self.drain()
        self._running = False
        logging.info("Notifier stopped")

    def notify(self, meta: RfqMeta, event) -> None:
        if not self._running:
            logging.warning(f"Notifier not running, dropping notification for event {event.id}")
            return
        messages = compose_messages(meta, event)
        if not messages:
            return
        task = asyncio.create_task(self._deliver(event.id, messages))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event_id: str, messages: List[Tuple[str, str, str]]):
        for to, subject, body in messages:
            try:
                await self.sender.send(to, subject, body)
            except Exception as e:
                logging.error(f"Notification for event {event_id} to {to} failed: {e}")

    async def drain(self):
        """Waits for all in-flight deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
