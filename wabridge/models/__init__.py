from .queue import Direction, IncomingPayload, OutgoingPayload, QueueMessage, PENDING_MEDIA
from .session import (
    AccountSession,
    InboundMessage,
    IncomingMessageEvent,
    OutboundContent,
    ProtocolEvent,
    ProtocolEventKind,
    SessionEvent,
    SessionEventKind,
    SessionStatus,
)
from .crm import CrmTokens, CrmWebhookPayload

__all__ = [
    "Direction",
    "IncomingPayload",
    "OutgoingPayload",
    "QueueMessage",
    "PENDING_MEDIA",
    "AccountSession",
    "InboundMessage",
    "IncomingMessageEvent",
    "OutboundContent",
    "ProtocolEvent",
    "ProtocolEventKind",
    "SessionEvent",
    "SessionEventKind",
    "SessionStatus",
    "CrmTokens",
    "CrmWebhookPayload",
]
