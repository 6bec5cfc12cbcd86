"""Session and protocol event models for messaging-network connections."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class SessionStatus(str, Enum):
    """Connection state of one account."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"  # disconnected, possibly with a reconnect pending
    FAILED = "failed"  # reconnect budget exhausted or logged out; needs manual re-add


class ProtocolEventKind(str, Enum):
    """Raw events emitted by the protocol client."""
    QR_ISSUED = "qr_issued"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MESSAGE_RECEIVED = "message_received"


class SessionEventKind(str, Enum):
    """Events the session manager hands to its dispatcher."""
    QR = "qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    MESSAGE = "message"


@dataclass
class InboundMessage:
    """A message as normalized by the protocol client, before filtering."""
    message_id: str
    remote_jid: str
    from_me: bool = False
    push_name: Optional[str] = None
    message_type: Optional[str] = None  # e.g. "conversation", "imageMessage"
    text: Optional[str] = None
    caption: Optional[str] = None
    media_mime: Optional[str] = None
    timestamp: Optional[int] = None  # epoch seconds
    history: bool = False  # delivered by history sync rather than live


@dataclass
class ProtocolEvent:
    """Event emitted by the protocol client for one account."""
    kind: ProtocolEventKind
    account_id: str
    qr: Optional[str] = None
    reason: Optional[str] = None
    logged_out: bool = False
    message: Optional[InboundMessage] = None


@dataclass
class IncomingMessageEvent:
    """A filtered, relay-ready message received by an account."""
    account_id: str
    message_id: str
    remote_jid: str
    counterpart_id: str
    display_name: Optional[str]
    text: Optional[str]
    media_kind: Optional[str]
    media_mime: Optional[str]
    event_time: int  # epoch milliseconds


@dataclass
class SessionEvent:
    """Typed notification from the session manager to its dispatcher."""
    kind: SessionEventKind
    account_id: str
    qr: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[IncomingMessageEvent] = None


@dataclass
class OutboundContent:
    """Content handed to the protocol client for sending."""
    text: str = ""
    media_path: Optional[str] = None
    media_kind: Optional[str] = None
    media_mime: Optional[str] = None
    file_name: Optional[str] = None


@dataclass
class AccountSession:
    """In-memory connection state for one account. Never persisted."""
    account_id: str
    status: SessionStatus = SessionStatus.CONNECTING
    connection_handle: Any = None
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
    last_qr: Optional[str] = None
    reconnect_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_status(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "status": self.status.value,
            "connected": self.status == SessionStatus.OPEN,
            "reconnect_attempts": self.reconnect_attempts,
            "last_error": self.last_error,
            "has_qr": self.last_qr is not None,
        }
