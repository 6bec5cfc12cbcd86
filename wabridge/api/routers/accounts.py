"""Account administration API router."""

import logging
import time
from fastapi import APIRouter, Depends, HTTPException, Query

from wabridge.api.dependencies import get_runtime
from wabridge.api.models import (
    AccountListResponse,
    AccountStatusResponse,
    ConnectChannelRequest,
    ConnectChannelResponse,
    CrmTokensRequest,
    QrResponse,
    RemoveAccountResponse,
)
from wabridge.infra.auth import verify_admin_key
from wabridge.infra.errors import ConfigurationError, GatewayError
from wabridge.models.crm import CrmTokens
from wabridge.services.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_admin_key)])


@router.get("/accounts", tags=["Accounts"], response_model=AccountListResponse)
async def list_accounts(runtime: Runtime = Depends(get_runtime)):
    """List every account with its connection status."""
    items = runtime.sessions.statuses()
    return AccountListResponse(items=items, count=len(items))


@router.post("/accounts/{account_id}", tags=["Accounts"], response_model=AccountStatusResponse)
async def add_account(account_id: str, runtime: Runtime = Depends(get_runtime)):
    """Start the account's connection. Pairing codes appear under /accounts/{id}/qr."""
    session = await runtime.sessions.add(account_id)
    return session.to_status()


@router.get("/accounts/{account_id}", tags=["Accounts"], response_model=AccountStatusResponse)
async def get_account(account_id: str, runtime: Runtime = Depends(get_runtime)):
    status = runtime.sessions.status(account_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return status


@router.delete("/accounts/{account_id}", tags=["Accounts"], response_model=RemoveAccountResponse)
async def remove_account(
    account_id: str,
    logout: bool = Query(False, description="Also unpair the device and drop stored session state"),
    runtime: Runtime = Depends(get_runtime),
):
    removed = await runtime.sessions.remove(account_id, logout=logout)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return RemoveAccountResponse(account_id=account_id, removed=True, logged_out=logout)


@router.get("/accounts/{account_id}/qr", tags=["Accounts"], response_model=QrResponse)
async def get_account_qr(account_id: str, runtime: Runtime = Depends(get_runtime)):
    """Latest pairing code issued for the account."""
    qr = runtime.sessions.last_qr(account_id)
    if not qr:
        raise HTTPException(status_code=404, detail=f"No pairing code for account {account_id}")
    return QrResponse(account_id=account_id, qr=qr)


@router.put("/accounts/{account_id}/crm/tokens", tags=["Accounts"])
async def save_crm_tokens(
    account_id: str,
    request: CrmTokensRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Store OAuth tokens obtained for the account's CRM integration."""
    tokens = CrmTokens(
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        expires_at=int(time.time() * 1000) + request.expires_in * 1000,
        subdomain=request.subdomain,
    )
    await runtime.credentials.save_tokens(account_id, tokens)
    return {"account_id": account_id, "expires_at": tokens.expires_at}


@router.post(
    "/accounts/{account_id}/crm/connect",
    tags=["Accounts"],
    response_model=ConnectChannelResponse,
)
async def connect_crm_channel(
    account_id: str,
    request: ConnectChannelRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Bind the CRM chat channel to the account and store the returned scope."""
    try:
        scope_id = await runtime.chat_client.connect_channel(request.amojo_account_id, request.title)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))

    await runtime.credentials.save_scope(account_id, scope_id)
    return ConnectChannelResponse(account_id=account_id, scope_id=scope_id)
