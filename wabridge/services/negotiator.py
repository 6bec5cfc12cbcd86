"""Outbound delivery to the CRM chat API with variant probing and thread-id learning."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from wabridge.adapters.amocrm_chat import AmojoClient
from wabridge.adapters.amocrm_oauth import CrmAuth
from wabridge.infra.config import config
from wabridge.infra.errors import (
    ConfigurationError,
    PermanentRejectError,
    ProtocolShapeError,
    TransientNetworkError,
)
from wabridge.infra.logging import hash_identifier
from wabridge.infra.metrics import crm_thread_ids_learned_total, crm_variant_attempts_total
from wabridge.services.conversation_store import ConversationMappingStore
from wabridge.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class CrmMessage:
    """Everything a variant needs to build its request body."""
    counterpart_id: str
    thread_id: str
    text: str
    msgid: str
    timestamp: int  # epoch seconds
    display_name: Optional[str] = None

    @property
    def sender(self) -> Dict[str, Any]:
        return {
            "id": self.counterpart_id,
            "name": self.display_name or f"WhatsApp {self.counterpart_id}",
            "profile": {"phone": self.counterpart_id},
        }


def _with_event_type(message: CrmMessage) -> Dict[str, Any]:
    return {
        "event_type": "new_message",
        "payload": _direct_fields(message),
    }


def _direct_fields(message: CrmMessage) -> Dict[str, Any]:
    return {
        "msgid": message.msgid,
        "conversation_id": message.thread_id,
        "timestamp": message.timestamp,
        "sender": message.sender,
        "message": {"type": "text", "text": message.text},
    }


def _message_top(message: CrmMessage) -> Dict[str, Any]:
    return {
        "message": {"type": "text", "text": message.text, "msgid": message.msgid},
        "conversation_id": message.thread_id,
        "sender": message.sender,
    }


# Tried in order; a 404 moves on to the next one
VARIANTS: List[Tuple[str, Callable[[CrmMessage], Dict[str, Any]]]] = [
    ("with_event_type", _with_event_type),
    ("direct_fields", _direct_fields),
    ("message_top", _message_top),
]


def extract_thread_id(data: Any) -> Optional[str]:
    """
    Find the thread id in a CRM response.

    Fields are checked in priority order: new_message.conversation_id,
    conversation_id, id.
    """
    if not isinstance(data, dict):
        return None
    new_message = data.get("new_message")
    if isinstance(new_message, dict) and new_message.get("conversation_id"):
        return str(new_message["conversation_id"])
    for field in ("conversation_id", "id"):
        if data.get(field):
            return str(data[field])
    return None


def format_attachments(text: str, attachments: Optional[Sequence[Dict[str, Any]]]) -> str:
    """Append attachment URLs to the message text as a numbered list."""
    urls = [a.get("url") for a in attachments or [] if a.get("url")]
    if not urls:
        return text
    lines = [f"{i}. {url}" for i, url in enumerate(urls, start=1)]
    return f"{text}\n\nAttachments:\n" + "\n".join(lines)


class _AuthorizationRejected(Exception):
    """Internal signal: the chain hit a 401."""


class Negotiator:
    """
    Delivers one message to the CRM, trying each request variant in turn.

    Isolates the chat API's shape instability: callers only see success or
    a GatewayError.
    """

    def __init__(
        self,
        mappings: ConversationMappingStore,
        credentials: CredentialStore,
        chat_client: Optional[AmojoClient] = None,
        auth_factory: Optional[Callable[[str], CrmAuth]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.mappings = mappings
        self.credentials = credentials
        self.chat_client = chat_client or AmojoClient(http_client=http_client)
        self._auth_factory = auth_factory or (
            lambda account_id: CrmAuth(account_id, credentials, http_client=http_client)
        )

    async def resolve_scope(self, account_id: str) -> str:
        scope_id = await self.credentials.get_scope(account_id) or config.AMOCRM_SCOPE_ID
        if not scope_id:
            raise ConfigurationError(f"No CRM integration scope bound for account {account_id}")
        return scope_id

    async def deliver(
        self,
        account_id: str,
        counterpart_id: str,
        text: str,
        attachments: Optional[Sequence[Dict[str, Any]]] = None,
        display_name: Optional[str] = None,
        uniq: Optional[str] = None,
        event_time: Optional[int] = None,
    ) -> Optional[str]:
        """
        Deliver a message to the counterpart's CRM thread.

        Args:
            account_id: Account the message belongs to
            counterpart_id: Digits-only counterpart id
            text: Message text
            attachments: Optional list of {url, type}
            display_name: Sender name shown in the CRM
            uniq: Idempotency token (defaults to wa_<event_time>)
            event_time: Event time in epoch milliseconds

        Returns:
            Thread id returned by the CRM, if any

        Raises:
            ConfigurationError: No scope or channel secret
            TransientNetworkError: 429, 5xx or transport failure
            PermanentRejectError: Other 4xx, or a second 401
            ProtocolShapeError: Every variant returned 404
        """
        scope_id = await self.resolve_scope(account_id)
        if not self.chat_client.channel_secret:
            raise ConfigurationError("AMOCRM_CHANNEL_SECRET is not configured")

        thread_id = await self.mappings.get(account_id, counterpart_id) or counterpart_id
        event_time = event_time or int(time.time() * 1000)
        message = CrmMessage(
            counterpart_id=counterpart_id,
            thread_id=thread_id,
            text=format_attachments(text or "", attachments),
            msgid=uniq or f"wa_{event_time}",
            timestamp=event_time // 1000,
            display_name=display_name,
        )

        auth = self._auth_factory(account_id)
        path = f"/v2/origin/custom/{scope_id}"
        token = await auth.get_valid_token()
        try:
            data = await self._run_chain(account_id, path, message, token)
        except _AuthorizationRejected:
            logger.info("CRM authorization expired, refreshing", extra={"account_id": account_id})
            tokens = await auth.refresh()
            try:
                data = await self._run_chain(account_id, path, message, tokens.access_token)
            except _AuthorizationRejected:
                raise PermanentRejectError(
                    f"CRM rejected credentials after refresh for account {account_id}",
                    status_code=401,
                )

        returned = extract_thread_id(data)
        if returned and returned != thread_id:
            await self.mappings.set(account_id, counterpart_id, returned)
            crm_thread_ids_learned_total.inc()
            logger.info(
                "Learned CRM thread id",
                extra={"account_id": account_id, "counterpart": hash_identifier(counterpart_id)},
            )
        return returned

    async def _run_chain(
        self,
        account_id: str,
        path: str,
        message: CrmMessage,
        token: str,
    ) -> Any:
        """Try each variant until one is accepted; returns the parsed response body."""
        for name, build in VARIANTS:
            response = await self.chat_client.post_signed(path, build(message), token)
            status_code = response.status_code
            crm_variant_attempts_total.labels(variant=name, status=str(status_code)).inc()
            logger.debug(
                "CRM variant attempted",
                extra={"account_id": account_id, "variant": name, "status_code": status_code},
            )

            if status_code < 400:
                logger.info(
                    "Message delivered to CRM",
                    extra={"account_id": account_id, "variant": name},
                )
                try:
                    return response.json()
                except ValueError:
                    return None
            if status_code == 404:
                continue
            if status_code == 401:
                raise _AuthorizationRejected()
            if status_code == 429 or status_code >= 500:
                raise TransientNetworkError(
                    f"CRM chat API unavailable ({status_code})", status_code=status_code
                )
            raise PermanentRejectError(
                f"CRM chat API rejected message ({status_code})", status_code=status_code
            )

        raise ProtocolShapeError(f"No CRM request variant accepted for account {account_id}")
