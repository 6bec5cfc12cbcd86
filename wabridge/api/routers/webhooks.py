"""Webhooks API router."""

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException

from wabridge.adapters.evolution_client import EvolutionClient
from wabridge.api.dependencies import get_runtime
from wabridge.api.models import WebhookAck
from wabridge.infra.errors import QueueError, WebhookValidationError
from wabridge.services.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter()


async def _accept_crm_webhook(
    payload: Dict[str, Any],
    runtime: Runtime,
    scope_id: Optional[str] = None,
) -> WebhookAck:
    try:
        queued = await runtime.gateway.handle_outgoing(payload, scope_id=scope_id)
    except WebhookValidationError as e:
        logger.warning("Invalid CRM webhook", extra={"error": str(e)})
        raise HTTPException(status_code=400, detail=str(e))
    except QueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return WebhookAck(status="ok", message_id=queued.id)


@router.post("/webhooks/amocrm", tags=["Webhooks"], response_model=WebhookAck)
async def handle_amocrm_webhook(
    payload: Dict[str, Any],
    runtime: Runtime = Depends(get_runtime),
):
    """
    Accept an outgoing message from the CRM chat channel.

    Returns as soon as the message is queued; delivery happens later.
    """
    return await _accept_crm_webhook(payload, runtime)


@router.post("/webhooks/amocrm/{scope_id}", tags=["Webhooks"], response_model=WebhookAck)
async def handle_scoped_amocrm_webhook(
    scope_id: str,
    payload: Dict[str, Any],
    runtime: Runtime = Depends(get_runtime),
):
    """Same as /webhooks/amocrm, resolving the account from the channel scope."""
    return await _accept_crm_webhook(payload, runtime, scope_id=scope_id)


@router.post("/webhooks/evolution", tags=["Webhooks"], response_model=WebhookAck)
async def handle_evolution_webhook(
    payload: Dict[str, Any],
    runtime: Runtime = Depends(get_runtime),
):
    """Receive connection, pairing and message events from the protocol gateway."""
    client = runtime.protocol_client
    if not isinstance(client, EvolutionClient):
        raise HTTPException(status_code=404, detail="Protocol gateway webhooks not enabled")
    try:
        await client.dispatch_webhook(payload)
    except QueueError as e:
        # Gateway retries the webhook; the message must not be lost
        raise HTTPException(status_code=503, detail=str(e))
    return WebhookAck(status="ok")
