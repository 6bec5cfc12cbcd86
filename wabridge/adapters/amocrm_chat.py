"""Signed HTTP client for the amoCRM chat (amojo) API."""

import hashlib
import hmac
import json
import logging
from email.utils import formatdate
from typing import Any, Dict, Optional

import httpx

from wabridge.infra.config import config
from wabridge.infra.errors import (
    ConfigurationError,
    TransientNetworkError,
    error_from_status,
)

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"


def create_signature(
    method: str,
    content_md5: str,
    content_type: str,
    date: str,
    path: str,
    secret: str,
) -> str:
    """HMAC-SHA1 (hex) over METHOD, Content-MD5, Content-Type, Date and Path."""
    string_to_sign = "\n".join([method.upper(), content_md5, content_type, date, path])
    return hmac.new(secret.encode(), string_to_sign.encode(), hashlib.sha1).hexdigest()


def signed_headers(
    method: str,
    path: str,
    body: str,
    secret: str,
    date: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the signature headers for one request.

    Args:
        method: HTTP method
        path: Request path, without host
        body: Exact serialized request body
        secret: Channel secret
        date: RFC 1123 date (defaults to now)
    """
    date = date or formatdate(usegmt=True)
    content_md5 = hashlib.md5(body.encode()).hexdigest()
    return {
        "Date": date,
        "Content-Type": CONTENT_TYPE,
        "Content-MD5": content_md5,
        "X-Signature": create_signature(method, content_md5, CONTENT_TYPE, date, path, secret),
    }


class AmojoClient:
    """Chat API transport. Status interpretation is left to callers."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        channel_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or config.AMOJO_BASE_URL).rstrip("/")
        self.channel_secret = channel_secret if channel_secret is not None else config.AMOCRM_CHANNEL_SECRET
        self._http_client = http_client

    def _require_secret(self) -> str:
        if not self.channel_secret:
            raise ConfigurationError("AMOCRM_CHANNEL_SECRET is not configured")
        return self.channel_secret

    async def post_signed(
        self,
        path: str,
        body: Dict[str, Any],
        token: Optional[str] = None,
    ) -> httpx.Response:
        """
        POST a signed JSON body and return the response without raising on status.

        Raises:
            ConfigurationError: Channel secret not configured
            TransientNetworkError: Transport failure
        """
        secret = self._require_secret()
        payload = json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        headers = signed_headers("POST", path, payload, secret)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        client = self._http_client or httpx.AsyncClient(timeout=config.CRM_HTTP_TIMEOUT)
        try:
            return await client.post(
                f"{self.base_url}{path}",
                content=payload.encode(),
                headers=headers,
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"CRM chat API unreachable: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

    async def connect_channel(
        self,
        amojo_account_id: str,
        title: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> str:
        """
        Bind the chat channel to a CRM account.

        Args:
            amojo_account_id: CRM account's chat-API id
            title: Channel title shown in the CRM
            channel_id: Channel id (defaults to AMOCRM_CHANNEL_ID)

        Returns:
            scope_id to use for sending messages

        Raises:
            ConfigurationError: Channel id or secret missing
            GatewayError: The CRM rejected the request
        """
        channel = channel_id or config.AMOCRM_CHANNEL_ID or config.AMOCRM_CHANNEL_CODE
        if not channel:
            raise ConfigurationError("AMOCRM_CHANNEL_ID is not configured")
        if not amojo_account_id:
            raise ConfigurationError("amojo account id is required to connect the channel")

        path = f"/v2/origin/custom/{channel}/connect"
        body = {
            "account_id": amojo_account_id,
            "title": title or config.AMOCRM_CHANNEL_TITLE,
            "hook_api_version": "v2",
        }
        response = await self.post_signed(path, body)
        if response.status_code >= 400:
            logger.error(
                "CRM channel connect failed",
                extra={"status_code": response.status_code, "channel": channel},
            )
            raise error_from_status(response.status_code, "CRM channel connect failed")

        scope_id = response.json().get("scope_id")
        if not scope_id:
            raise error_from_status(502, "CRM channel connect returned no scope_id")
        logger.info("CRM channel connected", extra={"channel": channel})
        return scope_id
