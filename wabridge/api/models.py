"""API request/response models."""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


# ============================================================================
# Webhook Models
# ============================================================================

class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook callers."""
    status: str = Field(..., examples=["ok"])
    message_id: Optional[str] = Field(None, description="Id of the queued message, if any")


# ============================================================================
# Account Models
# ============================================================================

class AccountStatusResponse(BaseModel):
    """Connection status of one account."""
    account_id: str
    status: str = Field(..., examples=["open"], description="connecting | open | closed | failed")
    connected: bool
    reconnect_attempts: int = 0
    last_error: Optional[str] = None
    has_qr: bool = False


class AccountListResponse(BaseModel):
    items: List[AccountStatusResponse]
    count: int


class QrResponse(BaseModel):
    account_id: str
    qr: str = Field(..., description="Pairing code to render as a QR image")


class RemoveAccountResponse(BaseModel):
    account_id: str
    removed: bool
    logged_out: bool


class ConnectChannelRequest(BaseModel):
    """Request to bind the CRM chat channel to an account."""
    amojo_account_id: str = Field(..., description="CRM account id in the chat API")
    title: Optional[str] = Field(None, description="Channel title shown in the CRM")


class ConnectChannelResponse(BaseModel):
    account_id: str
    scope_id: str


class CrmTokensRequest(BaseModel):
    """OAuth tokens obtained for an account's CRM integration."""
    access_token: str
    refresh_token: str
    expires_in: int = Field(..., description="Seconds until the access token expires", examples=[86400])
    subdomain: str = Field(..., examples=["mycompany"])


# ============================================================================
# Queue Models
# ============================================================================

class ChannelStats(BaseModel):
    pending: int
    dead_letter: int


class QueueStatsResponse(BaseModel):
    """Depth of each relay channel."""
    channels: Dict[str, ChannelStats]


class DeadLetterResponse(BaseModel):
    channel: str
    items: List[Dict[str, Any]]
    count: int


class ReplayResponse(BaseModel):
    channel: str = Field(..., examples=["outgoing:queue"])
    replayed: int
