"""CRM-side models: stored tokens and inbound webhook payloads."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class CrmTokens(BaseModel):
    """OAuth tokens of one account's CRM integration."""
    access_token: str
    refresh_token: str
    expires_at: int = Field(..., description="Expiry, epoch milliseconds")
    subdomain: str


class WebhookAttachment(BaseModel):
    url: str
    type: Optional[str] = None


class WebhookMessage(BaseModel):
    content: Optional[str] = None
    attachments: List[WebhookAttachment] = Field(default_factory=list)


class CrmWebhookPayload(BaseModel):
    """Outgoing-message webhook sent by the CRM chat channel."""
    account_id: Optional[str] = None
    chat_id: Optional[str] = None
    conversation_id: Optional[str] = Field(None, description="Existing CRM thread id")
    message: Optional[WebhookMessage] = None
    source: Optional[Dict[str, Any]] = None
    receiver: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}
