"""Per-account connection state machine for the messaging network."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

from wabridge.adapters.evolution_client import ConnectionHandle, ProtocolClient
from wabridge.infra.config import config
from wabridge.infra.errors import SessionError
from wabridge.infra.logging import hash_identifier
from wabridge.infra.metrics import (
    active_sessions,
    session_reconnects_scheduled_total,
    session_transitions_total,
)
from wabridge.models.session import (
    AccountSession,
    InboundMessage,
    IncomingMessageEvent,
    OutboundContent,
    ProtocolEvent,
    ProtocolEventKind,
    SessionEvent,
    SessionEventKind,
    SessionStatus,
)
from wabridge.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

Dispatcher = Callable[[SessionEvent], Awaitable[None]]

CONTROL_MESSAGE_TYPES = {"protocolMessage", "senderKeyDistributionMessage", "reactionMessage"}

MEDIA_KINDS = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
}


def counterpart_from_jid(jid: str) -> str:
    """Digits-only counterpart id from a network address, without a device suffix."""
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return "".join(ch for ch in user if ch.isdigit())


def skip_reason(message: InboundMessage, now: float, history_max_age: float) -> Optional[str]:
    """
    Decide whether a received message must stay out of the relay.

    Returns:
        Reason string if the message is filtered, None if it is relayed
    """
    jid = message.remote_jid or ""
    if message.from_me:
        return "from_me"
    if jid == "status@broadcast" or jid.endswith("@broadcast"):
        return "broadcast"
    if jid.endswith("@g.us"):
        return "group"
    if not message.message_type:
        return "no_content"
    if message.message_type in CONTROL_MESSAGE_TYPES:
        return "control"
    if message.history:
        if not message.timestamp or now - message.timestamp > history_max_age:
            return "stale_history"
    media_kind = MEDIA_KINDS.get(message.message_type)
    if not (message.text or message.caption or media_kind):
        return "no_content"
    return None


class SessionManager:
    """
    Owns one connection and status record per account.

    add/remove on the same account are serialized by a per-account lock.
    Reconnects are asyncio tasks stored on the session, so removing an
    account cancels any pending attempt.
    """

    def __init__(
        self,
        client: ProtocolClient,
        credentials: Optional[CredentialStore] = None,
        dispatcher: Optional[Dispatcher] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        history_max_age: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.credentials = credentials
        self._dispatcher = dispatcher
        self.base_delay = config.RECONNECT_BASE_SECONDS if base_delay is None else base_delay
        self.max_delay = config.RECONNECT_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.max_attempts = config.RECONNECT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.history_max_age = (
            config.HISTORY_SYNC_MAX_AGE_SECONDS if history_max_age is None else history_max_age
        )
        self._clock = clock
        self._sleep = sleep
        self._sessions: Dict[str, AccountSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def set_dispatcher(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher

    @asynccontextmanager
    async def _account_lock(self, account_id: str):
        """Serialize work on one account; the lock is dropped once the account is gone and unused."""
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[account_id] -= 1
            if not self._lock_users[account_id]:
                del self._lock_users[account_id]
                if account_id not in self._sessions:
                    self._locks.pop(account_id, None)

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff before reconnect number attempt + 1."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def _set_status(self, session: AccountSession, status: SessionStatus) -> None:
        if session.status != status:
            session.status = status
            session_transitions_total.labels(status=status.value).inc()
        active_sessions.set(
            sum(1 for s in self._sessions.values() if s.status == SessionStatus.OPEN)
        )

    async def _emit(self, event: SessionEvent) -> None:
        if self._dispatcher is None:
            return
        await self._dispatcher(event)

    async def add(self, account_id: str) -> AccountSession:
        """
        Start (or restart) the account's connection.

        Adding an account that is already connecting or open is a no-op;
        adding a failed account starts over with a fresh attempt budget.
        """
        async with self._account_lock(account_id):
            existing = self._sessions.get(account_id)
            if existing is not None and existing.status != SessionStatus.FAILED:
                logger.warning("Account already exists", extra={"account_id": account_id})
                return existing
            if existing is not None:
                self._cancel_reconnect(existing)

            session = AccountSession(account_id=account_id)
            self._sessions[account_id] = session
            logger.info("Adding account", extra={"account_id": account_id})
            await self._connect(session)
            return session

    async def _connect(self, session: AccountSession) -> None:
        self._set_status(session, SessionStatus.CONNECTING)
        stored = None
        if self.credentials is not None:
            stored = await self.credentials.get_session(session.account_id)

        try:
            handle = await self.client.connect(session.account_id, stored, self.handle_protocol_event)
        except Exception as e:
            session.last_error = str(e)
            logger.error(
                "Failed to connect account",
                extra={"account_id": session.account_id, "error": str(e)},
            )
            self._set_status(session, SessionStatus.CLOSED)
            await self._after_disconnect(session)
            return

        session.connection_handle = handle
        if self.credentials is not None and isinstance(handle, ConnectionHandle):
            await self.credentials.save_session(session.account_id, {"instance": handle.instance})

    async def remove(self, account_id: str, logout: bool = False) -> bool:
        """
        Tear down an account's connection and forget its state.

        Args:
            account_id: Account to remove
            logout: Also unpair the device and drop stored session state

        Returns:
            True if the account existed
        """
        async with self._account_lock(account_id):
            session = self._sessions.pop(account_id, None)
            if session is None:
                return False
            self._cancel_reconnect(session)

            handle = session.connection_handle
            if handle is not None:
                try:
                    if logout:
                        await self.client.logout(handle)
                    else:
                        await self.client.disconnect(handle)
                except Exception as e:
                    logger.warning(
                        "Error closing connection",
                        extra={"account_id": account_id, "error": str(e)},
                    )
            if logout and self.credentials is not None:
                await self.credentials.delete_session(account_id)

            active_sessions.set(
                sum(1 for s in self._sessions.values() if s.status == SessionStatus.OPEN)
            )
            logger.info("Account removed", extra={"account_id": account_id, "logout": logout})
            return True

    def _cancel_reconnect(self, session: AccountSession) -> None:
        task = session.reconnect_task
        session.reconnect_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _after_disconnect(self, session: AccountSession) -> None:
        """Schedule the next reconnect, or mark the account failed when out of attempts."""
        if session.reconnect_task is not None and not session.reconnect_task.done():
            return

        if session.reconnect_attempts >= self.max_attempts:
            self._set_status(session, SessionStatus.FAILED)
            logger.error(
                "Max reconnect attempts reached",
                extra={"account_id": session.account_id, "attempts": session.reconnect_attempts},
            )
            await self._emit(SessionEvent(
                kind=SessionEventKind.FAILED,
                account_id=session.account_id,
                reason=session.last_error,
            ))
            return

        delay = self.reconnect_delay(session.reconnect_attempts)
        session.reconnect_attempts += 1
        session_reconnects_scheduled_total.inc()
        logger.info(
            "Scheduling reconnect",
            extra={
                "account_id": session.account_id,
                "attempt": session.reconnect_attempts,
                "delay_seconds": delay,
            },
        )
        session.reconnect_task = asyncio.create_task(self._reconnect_after(session, delay))

    async def _reconnect_after(self, session: AccountSession, delay: float) -> None:
        await self._sleep(delay)
        async with self._account_lock(session.account_id):
            # Account removed or re-added while sleeping
            if self._sessions.get(session.account_id) is not session:
                return
            session.reconnect_task = None
            await self._connect(session)

    async def handle_protocol_event(self, event: ProtocolEvent) -> None:
        """Apply a protocol client event to the account's state and dispatch it."""
        session = self._sessions.get(event.account_id)
        if session is None:
            logger.debug("Event for unknown account ignored", extra={"account_id": event.account_id})
            return

        if event.kind == ProtocolEventKind.QR_ISSUED:
            session.last_qr = event.qr
            logger.info("QR code received", extra={"account_id": event.account_id})
            await self._emit(SessionEvent(kind=SessionEventKind.QR, account_id=event.account_id, qr=event.qr))

        elif event.kind == ProtocolEventKind.CONNECTING:
            self._set_status(session, SessionStatus.CONNECTING)

        elif event.kind == ProtocolEventKind.CONNECTED:
            self._cancel_reconnect(session)
            session.reconnect_attempts = 0
            session.last_qr = None
            session.last_error = None
            self._set_status(session, SessionStatus.OPEN)
            logger.info("Account connected", extra={"account_id": event.account_id})
            await self._emit(SessionEvent(kind=SessionEventKind.CONNECTED, account_id=event.account_id))

        elif event.kind == ProtocolEventKind.DISCONNECTED:
            await self._handle_disconnect(session, event)

        elif event.kind == ProtocolEventKind.MESSAGE_RECEIVED and event.message is not None:
            await self._handle_message(session, event.message)

    async def _handle_disconnect(self, session: AccountSession, event: ProtocolEvent) -> None:
        previous = session.status
        session.last_error = event.reason
        logger.warning(
            "Connection closed",
            extra={
                "account_id": session.account_id,
                "reason": event.reason,
                "logged_out": event.logged_out,
            },
        )

        if event.logged_out:
            self._cancel_reconnect(session)
            self._set_status(session, SessionStatus.FAILED)
            logger.error("Logged out, manual re-add required", extra={"account_id": session.account_id})
            await self._emit(SessionEvent(
                kind=SessionEventKind.DISCONNECTED,
                account_id=session.account_id,
                reason=event.reason,
            ))
            await self._emit(SessionEvent(
                kind=SessionEventKind.FAILED,
                account_id=session.account_id,
                reason="logged_out",
            ))
            return

        self._set_status(session, SessionStatus.CLOSED)
        await self._emit(SessionEvent(
            kind=SessionEventKind.DISCONNECTED,
            account_id=session.account_id,
            reason=event.reason,
        ))
        if previous in (SessionStatus.OPEN, SessionStatus.CONNECTING):
            await self._after_disconnect(session)

    async def _handle_message(self, session: AccountSession, message: InboundMessage) -> None:
        reason = skip_reason(message, self._clock(), self.history_max_age)
        if reason is not None:
            logger.debug(
                "Message filtered",
                extra={"account_id": session.account_id, "reason": reason},
            )
            return

        counterpart_id = counterpart_from_jid(message.remote_jid)
        event_time = (message.timestamp or int(self._clock())) * 1000
        incoming = IncomingMessageEvent(
            account_id=session.account_id,
            message_id=message.message_id,
            remote_jid=message.remote_jid,
            counterpart_id=counterpart_id,
            display_name=message.push_name,
            text=message.text or message.caption,
            media_kind=MEDIA_KINDS.get(message.message_type or ""),
            media_mime=message.media_mime,
            event_time=event_time,
        )
        logger.info(
            "Incoming message",
            extra={
                "account_id": session.account_id,
                "counterpart": hash_identifier(counterpart_id),
                "message_type": message.message_type,
                "has_media": incoming.media_kind is not None,
            },
        )
        await self._emit(SessionEvent(
            kind=SessionEventKind.MESSAGE,
            account_id=session.account_id,
            message=incoming,
        ))

    def _open_handle(self, account_id: str) -> ConnectionHandle:
        session = self._sessions.get(account_id)
        if session is None:
            raise SessionError(f"Account {account_id} not found")
        if session.status != SessionStatus.OPEN or session.connection_handle is None:
            raise SessionError(f"Account {account_id} is not connected")
        return session.connection_handle

    async def send(self, account_id: str, target: str, content: OutboundContent) -> Optional[str]:
        """
        Send content to target over the account's open connection.

        Raises:
            SessionError: Account unknown or not open
        """
        handle = self._open_handle(account_id)
        return await self.client.send(handle, target, content)

    async def send_presence(self, account_id: str, target: str, state: str) -> None:
        handle = self._open_handle(account_id)
        await self.client.send_presence(handle, target, state)

    async def download_media(self, account_id: str, message_ref: str) -> bytes:
        session = self._sessions.get(account_id)
        if session is None or session.connection_handle is None:
            raise SessionError(f"Account {account_id} has no connection")
        return await self.client.download_media(session.connection_handle, message_ref)

    def status(self, account_id: str) -> Optional[dict]:
        session = self._sessions.get(account_id)
        return session.to_status() if session else None

    def statuses(self) -> List[dict]:
        return [session.to_status() for session in self._sessions.values()]

    def last_qr(self, account_id: str) -> Optional[str]:
        session = self._sessions.get(account_id)
        return session.last_qr if session else None

    async def restore(self) -> List[str]:
        """
        Re-add every account with stored session state.

        Returns:
            Account ids that were restored
        """
        if self.credentials is None:
            return []
        restored = []
        for account_id in await self.credentials.list_session_accounts():
            await self.add(account_id)
            restored.append(account_id)
        logger.info("Sessions restored", extra={"count": len(restored)})
        return restored

    async def close_all(self) -> None:
        for account_id in list(self._sessions):
            await self.remove(account_id)
