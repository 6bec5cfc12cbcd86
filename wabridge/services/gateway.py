"""Relay boundary: turns session events and CRM webhooks into queue messages and back."""

import logging
import re
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

from pydantic import ValidationError

from wabridge.infra.errors import PermanentRejectError, RateLimitedError, WebhookValidationError
from wabridge.infra.logging import hash_identifier
from wabridge.infra.metrics import queue_enqueued_total
from wabridge.infra.queue import DurableQueue, queue_channel
from wabridge.models.crm import CrmWebhookPayload
from wabridge.models.queue import (
    PENDING_MEDIA,
    Direction,
    IncomingPayload,
    OutgoingPayload,
    QueueMessage,
)
from wabridge.models.session import (
    IncomingMessageEvent,
    OutboundContent,
    SessionEvent,
    SessionEventKind,
)
from wabridge.services.credential_store import CredentialStore
from wabridge.services.media_store import MediaStore, media_kind_for_mime, mime_for_name
from wabridge.services.negotiator import Negotiator, format_attachments
from wabridge.services.session_manager import SessionManager
from wabridge.services.throttle import Throttle

logger = logging.getLogger(__name__)

# Address suffix for one-to-one chats on the messaging network
USER_JID_SUFFIX = "@s.whatsapp.net"

# CRM attachment types -> network media kinds
ATTACHMENT_KINDS = {
    "picture": "image",
    "image": "image",
    "video": "video",
    "voice": "audio",
    "audio": "audio",
    "file": "document",
    "document": "document",
}


def normalize_counterpart(reference: str) -> str:
    """
    Reduce a counterpart reference to its digits.

    "WhatsApp 79990000000", "+7 999 000-00-00" and
    "79990000000@s.whatsapp.net" all become "79990000000".
    """
    return re.sub(r"\D", "", reference.split("@", 1)[0])


def to_jid(counterpart_id: str) -> str:
    return f"{counterpart_id}{USER_JID_SUFFIX}"


def is_remote_url(uri: Optional[str]) -> bool:
    return urlparse(uri or "").scheme in ("http", "https")


class Gateway:
    """Entry points into the relay and the two per-channel handlers."""

    def __init__(
        self,
        queue: DurableQueue,
        sessions: SessionManager,
        negotiator: Negotiator,
        throttle: Throttle,
        media: MediaStore,
        credentials: Optional[CredentialStore] = None,
    ):
        self.queue = queue
        self.sessions = sessions
        self.negotiator = negotiator
        self.throttle = throttle
        self.media = media
        self.credentials = credentials

    async def dispatch_event(self, event: SessionEvent) -> None:
        """Single consumer of session manager events."""
        if event.kind == SessionEventKind.MESSAGE and event.message is not None:
            await self.handle_incoming(event.message)
        elif event.kind == SessionEventKind.FAILED:
            logger.error(
                "Account failed, manual re-add required",
                extra={"account_id": event.account_id, "reason": event.reason},
            )
        else:
            logger.info(
                "Session event",
                extra={"account_id": event.account_id, "kind": event.kind.value, "reason": event.reason},
            )

    async def handle_incoming(self, event: IncomingMessageEvent) -> QueueMessage:
        """Enqueue a filtered network message for delivery to the CRM."""
        payload = IncomingPayload(
            from_=event.remote_jid,
            counterpart_id=event.counterpart_id,
            message_id=event.message_id,
            display_name=event.display_name,
            text=event.text,
            media_kind=event.media_kind,
            media_uri=PENDING_MEDIA if event.media_kind else None,
            media_mime=event.media_mime,
            event_time=event.event_time,
        )
        message = QueueMessage.create(Direction.INCOMING, event.account_id, payload, ref=event.message_id)
        await self.queue.enqueue(queue_channel(Direction.INCOMING), message)
        queue_enqueued_total.labels(channel=Direction.INCOMING.value).inc()
        logger.info(
            "Incoming message queued",
            extra={"account_id": event.account_id, "message_id": message.id},
        )
        return message

    async def resolve_account(self, payload: CrmWebhookPayload, scope_id: Optional[str] = None) -> Optional[str]:
        if scope_id and self.credentials is not None:
            account_id = await self.credentials.get_account_by_scope(scope_id)
            if account_id:
                return account_id
        return payload.account_id

    async def handle_outgoing(
        self,
        webhook_payload: Union[CrmWebhookPayload, Dict[str, Any]],
        scope_id: Optional[str] = None,
    ) -> QueueMessage:
        """
        Validate a CRM webhook and enqueue it for sending.

        Args:
            webhook_payload: Webhook body
            scope_id: Integration scope from the webhook URL, if any

        Returns:
            The enqueued message

        Raises:
            WebhookValidationError: account, counterpart or content missing
            QueueError: Broker unreachable
        """
        if isinstance(webhook_payload, dict):
            try:
                webhook_payload = CrmWebhookPayload.model_validate(webhook_payload)
            except ValidationError as e:
                raise WebhookValidationError(f"malformed webhook body: {e.error_count()} invalid field(s)") from e

        account_id = await self.resolve_account(webhook_payload, scope_id)
        if not account_id:
            raise WebhookValidationError("account_id is required")

        reference = webhook_payload.chat_id
        if not reference and webhook_payload.receiver:
            reference = webhook_payload.receiver.get("phone") or webhook_payload.receiver.get("id")
        counterpart_id = normalize_counterpart(str(reference or ""))
        if not counterpart_id:
            raise WebhookValidationError("counterpart reference (chat_id or receiver.phone) is required")

        message = webhook_payload.message
        text = (message.content or "") if message else ""
        attachments = message.attachments if message else []
        if not text and not attachments:
            raise WebhookValidationError("message text or attachment is required")
        for attachment in attachments:
            if not is_remote_url(attachment.url):
                raise WebhookValidationError("attachment url must be http or https")

        media_uri = None
        media_kind = None
        if attachments:
            first = attachments[0]
            media_uri = first.url
            media_kind = ATTACHMENT_KINDS.get((first.type or "").lower())
            text = format_attachments(text, [a.model_dump() for a in attachments[1:]])

        payload = OutgoingPayload(
            to=counterpart_id,
            text=text,
            media_uri=media_uri,
            media_kind=media_kind,
        )
        queued = QueueMessage.create(Direction.OUTGOING, account_id, payload, ref=account_id)
        await self.queue.enqueue(queue_channel(Direction.OUTGOING), queued)
        queue_enqueued_total.labels(channel=Direction.OUTGOING.value).inc()
        logger.info(
            "Outgoing message queued",
            extra={
                "account_id": account_id,
                "message_id": queued.id,
                "counterpart": hash_identifier(counterpart_id),
                "has_media": media_uri is not None,
            },
        )
        return queued

    async def _resolve_incoming_media(self, account_id: str, payload: IncomingPayload) -> Optional[str]:
        """Download pending media; returns the stored path or None if unavailable."""
        if not payload.media_uri:
            return None
        if not payload.media_pending:
            return payload.media_uri
        if not payload.message_id:
            return None
        try:
            data = await self.sessions.download_media(account_id, payload.message_id)
        except Exception as e:
            logger.warning(
                "Media download failed, sending text only",
                extra={"account_id": account_id, "error": str(e)},
            )
            return None
        path = self.media.save_download(data, payload.message_id, payload.media_mime, account_id)
        # Kept on the payload so a retry does not download again
        payload.media_uri = path
        return path

    async def process_incoming(self, account_id: str, payload: IncomingPayload) -> None:
        """Incoming channel handler: network message -> CRM."""
        media_path = await self._resolve_incoming_media(account_id, payload)
        await self.throttle.delay()

        attachments = []
        if media_path:
            url = self.media.public_url(media_path)
            if url:
                attachments.append({"url": url, "type": payload.media_kind})

        text = payload.text or ""
        if not text and payload.media_kind and not attachments:
            text = f"[{payload.media_kind}]"

        await self.negotiator.deliver(
            account_id,
            payload.counterpart_id,
            text,
            attachments=attachments,
            display_name=payload.display_name,
            uniq=f"wa_{payload.message_id}" if payload.message_id else None,
            event_time=payload.event_time,
        )

    async def process_outgoing(self, account_id: str, payload: OutgoingPayload) -> None:
        """
        Outgoing channel handler: CRM reply -> network.

        Raises:
            RateLimitedError: The account's send window is exhausted
            PermanentRejectError: The attachment is not an http(s) URL
        """
        # Local paths are never read on behalf of a webhook
        if payload.has_media and not is_remote_url(payload.media_uri):
            raise PermanentRejectError("Outgoing attachment is not an http(s) URL")

        target = to_jid(payload.to)
        permitted = await self.throttle.before_outgoing(
            self.sessions.send_presence, account_id, target, has_media=payload.has_media
        )
        if not permitted:
            raise RateLimitedError(f"Send limit reached for account {account_id}")

        content = OutboundContent(text=payload.text)
        if payload.has_media:
            path = await self.media.fetch_url(payload.media_uri, account_id)
            mime = mime_for_name(path)
            content.media_path = path
            content.media_mime = mime
            content.media_kind = payload.media_kind or media_kind_for_mime(mime)

        await self.sessions.send(account_id, target, content)
        logger.info(
            "Message sent to network",
            extra={"account_id": account_id, "counterpart": hash_identifier(payload.to)},
        )
