"""In-memory doubles for the broker and the protocol client."""

import asyncio
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError

from wabridge.adapters.evolution_client import ConnectionHandle, ProtocolClient
from wabridge.models.session import OutboundContent, ProtocolEvent, ProtocolEventKind


class FakeRedis:
    """Subset of redis.asyncio list commands over per-key deques."""

    def __init__(self):
        self.lists: Dict[str, deque] = defaultdict(deque)
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def ping(self):
        self._check()
        return True

    async def close(self):
        self.closed = True

    async def lpush(self, key, *values):
        self._check()
        for value in values:
            self.lists[key].appendleft(value)
        return len(self.lists[key])

    async def rpush(self, key, *values):
        self._check()
        for value in values:
            self.lists[key].append(value)
        return len(self.lists[key])

    async def rpop(self, key):
        self._check()
        if not self.lists[key]:
            return None
        return self.lists[key].pop()

    async def brpop(self, keys, timeout=0):
        self._check()
        for key in keys:
            if self.lists[key]:
                return key, self.lists[key].pop()
        # Yield so worker loops polling an empty channel do not starve the test
        await asyncio.sleep(0.01)
        return None

    async def llen(self, key):
        self._check()
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        self._check()
        items = list(self.lists[key])
        size = len(items)
        if start < 0:
            start = max(size + start, 0)
        if end < 0:
            end = size + end
        return items[start:end + 1]


class FakeProtocolClient(ProtocolClient):
    """Records calls; tests drive connection events through emit()."""

    def __init__(self, connect_error: Optional[Exception] = None):
        self.connect_error = connect_error
        self.connect_calls: List[str] = []
        self.sent: List[Dict[str, Any]] = []
        self.presence: List[tuple] = []
        self.media: Dict[str, bytes] = {}
        self.disconnected: List[str] = []
        self.logged_out: List[str] = []
        self.callbacks: Dict[str, Any] = {}
        self.send_error: Optional[Exception] = None

    async def connect(self, account_id, stored_credential, on_event):
        self.connect_calls.append(account_id)
        if self.connect_error is not None:
            raise self.connect_error
        self.callbacks[account_id] = on_event
        instance = (stored_credential or {}).get("instance") or account_id
        return ConnectionHandle(account_id=account_id, instance=instance)

    async def emit(self, account_id: str, kind: ProtocolEventKind, **kwargs):
        await self.callbacks[account_id](ProtocolEvent(kind=kind, account_id=account_id, **kwargs))

    async def send(self, handle, target, content: OutboundContent):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append({"account_id": handle.account_id, "target": target, "content": content})
        return f"sent-{len(self.sent)}"

    async def send_presence(self, handle, target, state):
        self.presence.append((handle.account_id, target, state))

    async def download_media(self, handle, message_ref):
        if message_ref not in self.media:
            raise OSError(f"no media for {message_ref}")
        return self.media[message_ref]

    async def disconnect(self, handle):
        self.disconnected.append(handle.account_id)

    async def logout(self, handle):
        self.logged_out.append(handle.account_id)


async def no_sleep(seconds: float) -> None:
    """Drop-in for asyncio.sleep that only yields control."""
    await asyncio.sleep(0)
