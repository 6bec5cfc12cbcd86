"""Messaging-network protocol client backed by an Evolution API gateway."""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from wabridge.infra.config import config
from wabridge.infra.errors import SessionError, TransientNetworkError, error_from_status
from wabridge.models.session import (
    InboundMessage,
    OutboundContent,
    ProtocolEvent,
    ProtocolEventKind,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[ProtocolEvent], Awaitable[None]]

# Close status sent by the network when the device was logged out
LOGGED_OUT_STATUS = 401

MEDIA_MESSAGE_TYPES = ("imageMessage", "videoMessage", "audioMessage", "documentMessage")

# Keys in a message body that describe context rather than content
_CONTEXT_KEYS = ("messageContextInfo", "contextInfo")

WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]


@dataclass
class ConnectionHandle:
    """Reference to one account's connection on the protocol gateway."""
    account_id: str
    instance: str


class ProtocolClient(ABC):
    """Connection, send and media operations of the messaging network."""

    @abstractmethod
    async def connect(
        self,
        account_id: str,
        stored_credential: Optional[Dict[str, Any]],
        on_event: EventCallback,
    ) -> ConnectionHandle:
        """Open (or attach to) the account's connection; events go to on_event."""

    @abstractmethod
    async def send(self, handle: ConnectionHandle, target: str, content: OutboundContent) -> Optional[str]:
        """Send text or media to target; returns the network message id if known."""

    @abstractmethod
    async def send_presence(self, handle: ConnectionHandle, target: str, state: str) -> None:
        """Publish a presence state such as "composing" or "paused"."""

    @abstractmethod
    async def download_media(self, handle: ConnectionHandle, message_ref: str) -> bytes:
        """Fetch the decrypted bytes of a received media message."""

    @abstractmethod
    async def disconnect(self, handle: ConnectionHandle) -> None:
        """Stop receiving events for the connection, keeping the pairing."""

    @abstractmethod
    async def logout(self, handle: ConnectionHandle) -> None:
        """Unpair the device; a new pairing code is needed afterwards."""


def _event_name(payload: Dict[str, Any]) -> str:
    # Gateways send either "messages.upsert" or "MESSAGES_UPSERT"
    return str(payload.get("event", "")).lower().replace("_", ".")


def _message_type(data: Dict[str, Any], message: Dict[str, Any]) -> Optional[str]:
    declared = data.get("messageType")
    if declared:
        return declared
    for key in message:
        if key not in _CONTEXT_KEYS:
            return key
    return None


def normalize_message(data: Dict[str, Any], history: bool = False) -> Optional[InboundMessage]:
    """
    Convert one upserted message into an InboundMessage.

    Returns:
        InboundMessage, or None when the entry has no key or id
    """
    key = data.get("key") or {}
    message_id = key.get("id")
    remote_jid = key.get("remoteJid")
    if not message_id or not remote_jid:
        return None

    message = data.get("message") or {}
    message_type = _message_type(data, message)

    text = message.get("conversation")
    if not text:
        text = (message.get("extendedTextMessage") or {}).get("text")

    caption = None
    media_mime = None
    if message_type in MEDIA_MESSAGE_TYPES:
        media = message.get(message_type) or {}
        caption = media.get("caption")
        media_mime = media.get("mimetype")

    timestamp = data.get("messageTimestamp")
    return InboundMessage(
        message_id=message_id,
        remote_jid=remote_jid,
        from_me=bool(key.get("fromMe", False)),
        push_name=data.get("pushName"),
        message_type=message_type if message else None,
        text=text,
        caption=caption,
        media_mime=media_mime,
        timestamp=int(timestamp) if timestamp else None,
        history=history,
    )


def normalize_webhook(payload: Dict[str, Any]) -> Optional[ProtocolEvent]:
    """
    Normalize a gateway webhook into a ProtocolEvent.

    Args:
        payload: Raw webhook body; "instance" names the account

    Returns:
        ProtocolEvent, or None for events this service does not consume
    """
    account_id = payload.get("instance")
    if isinstance(account_id, dict):
        account_id = account_id.get("instanceName")
    if not account_id:
        return None

    event = _event_name(payload)
    data = payload.get("data") or {}

    if event in ("messages.upsert", "messages.set"):
        history = event == "messages.set" or data.get("type") == "append"
        entry = data
        if isinstance(data.get("messages"), list) and data["messages"]:
            entry = data["messages"][0]
        message = normalize_message(entry, history=history)
        if message is None:
            return None
        return ProtocolEvent(
            kind=ProtocolEventKind.MESSAGE_RECEIVED,
            account_id=account_id,
            message=message,
        )

    if event == "connection.update":
        state = data.get("state") or data.get("connection")
        if state == "open":
            return ProtocolEvent(kind=ProtocolEventKind.CONNECTED, account_id=account_id)
        if state == "connecting":
            return ProtocolEvent(kind=ProtocolEventKind.CONNECTING, account_id=account_id)
        if state == "close":
            status = data.get("statusReason")
            return ProtocolEvent(
                kind=ProtocolEventKind.DISCONNECTED,
                account_id=account_id,
                reason=str(status) if status is not None else "unknown",
                logged_out=status == LOGGED_OUT_STATUS,
            )
        return None

    if event == "qrcode.updated":
        qrcode = data.get("qrcode") or {}
        qr = qrcode.get("code") or qrcode.get("base64")
        if not qr:
            return None
        return ProtocolEvent(kind=ProtocolEventKind.QR_ISSUED, account_id=account_id, qr=qr)

    return None


class EvolutionClient(ProtocolClient):
    """
    Evolution API driver. One gateway instance per account, named after it.

    Events arrive through the /webhooks/evolution route, which passes them
    to dispatch_webhook().
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        webhook_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.EVOLUTION_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.EVOLUTION_API_KEY
        self.webhook_url = webhook_url if webhook_url is not None else config.EVOLUTION_WEBHOOK_URL
        self._http_client = http_client or httpx.AsyncClient(timeout=config.PROTOCOL_HTTP_TIMEOUT)
        self._listeners: Dict[str, EventCallback] = {}

    async def close(self) -> None:
        await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        allow_status: tuple = (),
    ) -> httpx.Response:
        try:
            response = await self._http_client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers={"apikey": self.api_key},
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Protocol gateway unreachable: {e}") from e

        if response.status_code >= 400 and response.status_code not in allow_status:
            logger.error(
                "Protocol gateway request failed",
                extra={"path": path, "status_code": response.status_code},
            )
            raise error_from_status(response.status_code, f"Protocol gateway {method} {path}")
        return response

    async def connect(
        self,
        account_id: str,
        stored_credential: Optional[Dict[str, Any]],
        on_event: EventCallback,
    ) -> ConnectionHandle:
        instance = (stored_credential or {}).get("instance") or account_id
        self._listeners[instance] = on_event

        body: Dict[str, Any] = {
            "instanceName": instance,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
        }
        if self.webhook_url:
            body["webhook"] = {
                "url": self.webhook_url,
                "byEvents": False,
                "base64": False,
                "events": WEBHOOK_EVENTS,
            }
        # 403/409 mean the instance already exists; attach to it
        await self._request("POST", "/instance/create", json=body, allow_status=(403, 409))

        response = await self._request("GET", f"/instance/connect/{instance}")
        data = response.json() if response.content else {}
        qr = data.get("code") or data.get("base64")
        if qr:
            await on_event(ProtocolEvent(kind=ProtocolEventKind.QR_ISSUED, account_id=account_id, qr=qr))

        logger.info("Protocol connection requested", extra={"account_id": account_id})
        return ConnectionHandle(account_id=account_id, instance=instance)

    async def dispatch_webhook(self, payload: Dict[str, Any]) -> Optional[ProtocolEvent]:
        """
        Normalize a webhook and hand it to the owning connection's callback.

        Returns:
            The delivered event, or None if ignored or no listener is registered
        """
        event = normalize_webhook(payload)
        if event is None:
            return None
        listener = self._listeners.get(event.account_id)
        if listener is None:
            logger.debug("Webhook for unknown instance ignored", extra={"account_id": event.account_id})
            return None
        await listener(event)
        return event

    async def send(self, handle: ConnectionHandle, target: str, content: OutboundContent) -> Optional[str]:
        number = target.split("@", 1)[0]
        if content.media_path:
            with open(content.media_path, "rb") as f:
                media = base64.b64encode(f.read()).decode()
            body = {
                "number": number,
                "mediatype": content.media_kind or "document",
                "mimetype": content.media_mime or "application/octet-stream",
                "caption": content.text or "",
                "media": media,
                "fileName": content.file_name or content.media_path.rsplit("/", 1)[-1],
            }
            response = await self._request("POST", f"/message/sendMedia/{handle.instance}", json=body)
        else:
            response = await self._request(
                "POST",
                f"/message/sendText/{handle.instance}",
                json={"number": number, "text": content.text},
            )
        data = response.json() if response.content else {}
        return (data.get("key") or {}).get("id")

    async def send_presence(self, handle: ConnectionHandle, target: str, state: str) -> None:
        await self._request(
            "POST",
            f"/chat/sendPresence/{handle.instance}",
            json={"number": target.split("@", 1)[0], "presence": state, "delay": 0},
        )

    async def download_media(self, handle: ConnectionHandle, message_ref: str) -> bytes:
        response = await self._request(
            "POST",
            f"/chat/getBase64FromMediaMessage/{handle.instance}",
            json={"message": {"key": {"id": message_ref}}},
        )
        encoded = response.json().get("base64")
        if not encoded:
            raise SessionError(f"No media returned for message {message_ref}")
        return base64.b64decode(encoded)

    async def disconnect(self, handle: ConnectionHandle) -> None:
        self._listeners.pop(handle.instance, None)
        logger.info("Protocol connection detached", extra={"account_id": handle.account_id})

    async def logout(self, handle: ConnectionHandle) -> None:
        self._listeners.pop(handle.instance, None)
        await self._request("DELETE", f"/instance/logout/{handle.instance}", allow_status=(404,))
        logger.info("Protocol connection logged out", extra={"account_id": handle.account_id})
