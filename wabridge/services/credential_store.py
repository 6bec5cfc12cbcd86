"""Per-account CRM credentials, integration scope, and protocol session state."""

import json
import logging
import time
from typing import Any, Dict, List, Optional
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from wabridge.infra.database import get_db_session
from wabridge.models.crm import CrmTokens

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Key-value store of durable per-account state. Last write wins.

    CRM tokens and the bound integration scope share one row per account;
    protocol session state (used to rebuild sessions after a restart)
    lives in its own table.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    async def get_tokens(self, account_id: str) -> Optional[CrmTokens]:
        with get_db_session(self._session_factory) as session:
            row = session.execute(
                text("""
                    SELECT access_token, refresh_token, expires_at, subdomain
                    FROM crm_credentials
                    WHERE account_id = :account_id
                """),
                {"account_id": account_id},
            ).fetchone()
        if not row or not row.access_token:
            return None
        return CrmTokens(
            access_token=row.access_token,
            refresh_token=row.refresh_token or "",
            expires_at=int(row.expires_at or 0),
            subdomain=row.subdomain or "",
        )

    async def save_tokens(self, account_id: str, tokens: CrmTokens) -> None:
        """Store tokens for an account, keeping any bound scope."""
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("""
                    INSERT INTO crm_credentials (
                        account_id, access_token, refresh_token, expires_at,
                        subdomain, updated_at
                    ) VALUES (
                        :account_id, :access_token, :refresh_token, :expires_at,
                        :subdomain, :updated_at
                    )
                    ON CONFLICT (account_id) DO UPDATE
                    SET access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at = excluded.expires_at,
                        subdomain = excluded.subdomain,
                        updated_at = excluded.updated_at
                """),
                {
                    "account_id": account_id,
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token,
                    "expires_at": tokens.expires_at,
                    "subdomain": tokens.subdomain,
                    "updated_at": int(time.time()),
                },
            )
        logger.info("CRM tokens saved", extra={"account_id": account_id})

    async def delete_tokens(self, account_id: str) -> None:
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("DELETE FROM crm_credentials WHERE account_id = :account_id"),
                {"account_id": account_id},
            )

    async def get_scope(self, account_id: str) -> Optional[str]:
        with get_db_session(self._session_factory) as session:
            row = session.execute(
                text("SELECT scope_id FROM crm_credentials WHERE account_id = :account_id"),
                {"account_id": account_id},
            ).fetchone()
        return row.scope_id if row and row.scope_id else None

    async def save_scope(self, account_id: str, scope_id: str) -> None:
        """Bind an integration scope; creates a scope-only row if needed."""
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("""
                    INSERT INTO crm_credentials (account_id, scope_id, updated_at)
                    VALUES (:account_id, :scope_id, :updated_at)
                    ON CONFLICT (account_id) DO UPDATE
                    SET scope_id = excluded.scope_id,
                        updated_at = excluded.updated_at
                """),
                {
                    "account_id": account_id,
                    "scope_id": scope_id,
                    "updated_at": int(time.time()),
                },
            )
        logger.info("CRM scope bound", extra={"account_id": account_id})

    async def get_account_by_scope(self, scope_id: str) -> Optional[str]:
        with get_db_session(self._session_factory) as session:
            row = session.execute(
                text("""
                    SELECT account_id FROM crm_credentials
                    WHERE scope_id = :scope_id
                    ORDER BY updated_at DESC
                    LIMIT 1
                """),
                {"scope_id": scope_id},
            ).fetchone()
        return row.account_id if row else None

    async def get_session(self, account_id: str) -> Optional[Dict[str, Any]]:
        with get_db_session(self._session_factory) as session:
            row = session.execute(
                text("SELECT session_data FROM protocol_sessions WHERE account_id = :account_id"),
                {"account_id": account_id},
            ).fetchone()
        return json.loads(row.session_data) if row else None

    async def save_session(self, account_id: str, data: Dict[str, Any]) -> None:
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("""
                    INSERT INTO protocol_sessions (account_id, session_data, updated_at)
                    VALUES (:account_id, :session_data, :updated_at)
                    ON CONFLICT (account_id) DO UPDATE
                    SET session_data = excluded.session_data,
                        updated_at = excluded.updated_at
                """),
                {
                    "account_id": account_id,
                    "session_data": json.dumps(data),
                    "updated_at": int(time.time()),
                },
            )

    async def delete_session(self, account_id: str) -> None:
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("DELETE FROM protocol_sessions WHERE account_id = :account_id"),
                {"account_id": account_id},
            )

    async def list_session_accounts(self) -> List[str]:
        """Accounts with stored protocol session state, oldest first."""
        with get_db_session(self._session_factory) as session:
            rows = session.execute(
                text("SELECT account_id FROM protocol_sessions ORDER BY updated_at, account_id")
            ).fetchall()
        return [row.account_id for row in rows]
