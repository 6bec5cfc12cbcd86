"""Persistent (account, counterpart) -> CRM thread id mapping."""

import logging
import time
from typing import Optional
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from wabridge.infra.database import get_db_session
from wabridge.infra.logging import hash_identifier

logger = logging.getLogger(__name__)


class ConversationMappingStore:
    """
    Learned CRM thread ids, keyed by account and counterpart.

    Rows are never deleted automatically; lookups are always scoped to the
    account so the same counterpart under two accounts never collides.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    async def get(self, account_id: str, counterpart_id: str) -> Optional[str]:
        """
        Look up the thread id for a counterpart.

        Returns:
            Thread id, or None if no send has returned one yet
        """
        with get_db_session(self._session_factory) as session:
            row = session.execute(
                text("""
                    SELECT thread_id FROM conversation_mappings
                    WHERE account_id = :account_id AND counterpart_id = :counterpart_id
                """),
                {"account_id": account_id, "counterpart_id": counterpart_id},
            ).fetchone()
        return row.thread_id if row else None

    async def set(self, account_id: str, counterpart_id: str, thread_id: str) -> None:
        """Insert or update the mapping for (account_id, counterpart_id)."""
        with get_db_session(self._session_factory) as session:
            session.execute(
                text("""
                    INSERT INTO conversation_mappings (
                        account_id, counterpart_id, thread_id, updated_at
                    ) VALUES (
                        :account_id, :counterpart_id, :thread_id, :updated_at
                    )
                    ON CONFLICT (account_id, counterpart_id) DO UPDATE
                    SET thread_id = excluded.thread_id,
                        updated_at = excluded.updated_at
                """),
                {
                    "account_id": account_id,
                    "counterpart_id": counterpart_id,
                    "thread_id": thread_id,
                    "updated_at": int(time.time()),
                },
            )
        logger.info(
            "Conversation mapping saved",
            extra={
                "account_id": account_id,
                "counterpart": hash_identifier(counterpart_id),
            },
        )
