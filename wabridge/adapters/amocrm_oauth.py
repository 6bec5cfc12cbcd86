"""amoCRM OAuth token refresh for one account."""

import logging
import time
from typing import Optional

import httpx

from wabridge.infra.config import config
from wabridge.infra.errors import (
    ConfigurationError,
    PermanentRejectError,
    TransientNetworkError,
)
from wabridge.infra.metrics import crm_token_refresh_total
from wabridge.models.crm import CrmTokens
from wabridge.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

# Refresh when the token expires within this many milliseconds
REFRESH_MARGIN_MS = 5 * 60 * 1000


class CrmAuth:
    """Access-token provider backed by the credential store."""

    def __init__(
        self,
        account_id: str,
        credentials: CredentialStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_id = account_id
        self.credentials = credentials
        self._http_client = http_client

    async def _load(self) -> CrmTokens:
        tokens = await self.credentials.get_tokens(self.account_id)
        if tokens is None:
            raise ConfigurationError(f"No CRM tokens for account {self.account_id}")
        return tokens

    async def get_valid_token(self) -> str:
        """Return the stored access token, refreshing it first if close to expiry."""
        tokens = await self._load()
        if tokens.expires_at - int(time.time() * 1000) < REFRESH_MARGIN_MS:
            logger.info("CRM token expiring, refreshing", extra={"account_id": self.account_id})
            tokens = await self.refresh()
        return tokens.access_token

    async def refresh(self) -> CrmTokens:
        """
        Exchange the refresh token for a new token pair and store it.

        Raises:
            ConfigurationError: No tokens or subdomain stored
            PermanentRejectError: The OAuth server rejected the refresh
            TransientNetworkError: OAuth server unreachable or 5xx
        """
        current = await self._load()
        subdomain = current.subdomain or config.AMOCRM_SUBDOMAIN
        if not subdomain:
            raise ConfigurationError(f"No CRM subdomain for account {self.account_id}")

        body = {
            "client_id": config.AMOCRM_CLIENT_ID,
            "client_secret": config.AMOCRM_CLIENT_SECRET,
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
            "redirect_uri": config.AMOCRM_REDIRECT_URI,
        }

        client = self._http_client or httpx.AsyncClient(timeout=config.CRM_HTTP_TIMEOUT)
        try:
            response = await client.post(config.oauth_url(subdomain), json=body)
        except httpx.TransportError as e:
            crm_token_refresh_total.labels(status="error").inc()
            raise TransientNetworkError(f"CRM token refresh failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if response.status_code == 429 or response.status_code >= 500:
            crm_token_refresh_total.labels(status="error").inc()
            raise TransientNetworkError(
                f"CRM token refresh failed ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            crm_token_refresh_total.labels(status="rejected").inc()
            logger.error(
                "CRM token refresh rejected",
                extra={"account_id": self.account_id, "status_code": response.status_code},
            )
            raise PermanentRejectError(
                f"CRM token refresh rejected ({response.status_code})",
                status_code=response.status_code,
            )

        data = response.json()
        tokens = CrmTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", current.refresh_token),
            expires_at=int(time.time() * 1000) + int(data.get("expires_in", 0)) * 1000,
            subdomain=subdomain,
        )
        await self.credentials.save_tokens(self.account_id, tokens)
        crm_token_refresh_total.labels(status="success").inc()
        logger.info("CRM tokens refreshed", extra={"account_id": self.account_id})
        return tokens
