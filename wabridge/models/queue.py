"""Queue message models shared by both relay directions."""

import json
import time
import uuid
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

PENDING_MEDIA = "pending"


class Direction(str, Enum):
    """Relay direction, also the queue channel type."""
    INCOMING = "incoming"  # messaging network -> CRM
    OUTGOING = "outgoing"  # CRM -> messaging network


class IncomingPayload(BaseModel):
    """Message received on the messaging network, bound for the CRM."""
    from_: str = Field(..., alias="from", description="Full sender address (jid)")
    counterpart_id: str = Field(..., description="Digits-only counterpart identifier")
    message_id: Optional[str] = Field(None, description="Network message id, used to fetch media")
    display_name: Optional[str] = None
    text: Optional[str] = None
    media_kind: Optional[str] = Field(None, description="'image' | 'video' | 'audio' | 'document'")
    media_uri: Optional[str] = Field(
        None, description="'pending' until downloaded, then a local storage path"
    )
    media_mime: Optional[str] = None
    event_time: int = Field(..., description="Event time, epoch milliseconds")

    model_config = {"populate_by_name": True}  # Allow both 'from' and 'from_'

    @property
    def media_pending(self) -> bool:
        return self.media_uri == PENDING_MEDIA


class OutgoingPayload(BaseModel):
    """Message from the CRM, bound for the messaging network."""
    to: str = Field(..., description="Digits-only counterpart identifier")
    text: str = ""
    media_uri: Optional[str] = None
    media_kind: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return bool(self.media_uri)


class QueueMessage(BaseModel):
    """Envelope stored in a queue channel."""
    id: str = Field(..., description="Globally unique message id")
    direction: Direction
    account_id: str
    created_at: int = Field(..., description="Enqueue time, epoch milliseconds")
    retry_count: int = 0
    payload: Union[IncomingPayload, OutgoingPayload]

    @classmethod
    def create(
        cls,
        direction: Direction,
        account_id: str,
        payload: Union[IncomingPayload, OutgoingPayload],
        ref: Optional[str] = None,
    ) -> "QueueMessage":
        """Factory method to build a fresh message with retry_count 0."""
        now_ms = int(time.time() * 1000)
        suffix = ref or uuid.uuid4().hex[:12]
        return cls(
            id=f"{direction.value}_{suffix}_{now_ms}_{uuid.uuid4().hex[:6]}",
            direction=direction,
            account_id=account_id,
            created_at=now_ms,
            payload=payload,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "QueueMessage":
        """Parse a stored message, picking the payload model by direction."""
        data = json.loads(raw)
        payload_model = (
            IncomingPayload
            if data.get("direction") == Direction.INCOMING.value
            else OutgoingPayload
        )
        data["payload"] = payload_model.model_validate(data.get("payload") or {})
        return cls.model_validate(data)
