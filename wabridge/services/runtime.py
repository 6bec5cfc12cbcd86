"""Assembly and lifecycle of the relay components."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from wabridge.adapters.amocrm_chat import AmojoClient
from wabridge.adapters.evolution_client import EvolutionClient, ProtocolClient
from wabridge.infra.config import config
from wabridge.infra.database import init_schema
from wabridge.infra.queue import DurableQueue
from wabridge.models.queue import Direction
from wabridge.services.conversation_store import ConversationMappingStore
from wabridge.services.credential_store import CredentialStore
from wabridge.services.gateway import Gateway
from wabridge.services.media_store import MediaStore
from wabridge.services.negotiator import Negotiator
from wabridge.services.session_manager import SessionManager
from wabridge.services.throttle import Throttle
from wabridge.workers.relay_processor import RelayProcessor

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived component of one gateway process."""
    queue: DurableQueue
    credentials: CredentialStore
    mappings: ConversationMappingStore
    media: MediaStore
    protocol_client: ProtocolClient
    chat_client: AmojoClient
    sessions: SessionManager
    negotiator: Negotiator
    throttle: Throttle
    gateway: Gateway
    processor: RelayProcessor
    _cleanup_task: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self, restore_sessions: bool = True) -> None:
        """Connect the broker, start the worker loops, and bring sessions back."""
        missing = config.validate()
        if missing:
            logger.warning("CRM settings missing", extra={"missing": missing})

        await self.queue.connect()
        self.processor.start()

        if restore_sessions:
            try:
                await self.sessions.restore()
            except Exception as e:
                logger.error("Failed to restore sessions", extra={"error": str(e)})

        self._cleanup_task = asyncio.create_task(self._media_cleanup_loop(), name="media-cleanup")
        logger.info("Relay runtime started")

    async def stop(self) -> None:
        """Drain the worker loops, then close connections."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.processor.stop()
        await self.sessions.close_all()
        await self.queue.disconnect()
        if isinstance(self.protocol_client, EvolutionClient):
            await self.protocol_client.close()
        logger.info("Relay runtime stopped")

    async def _media_cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(config.MEDIA_CLEANUP_INTERVAL_SECONDS)
            try:
                self.media.cleanup(config.MEDIA_MAX_AGE_SECONDS)
            except OSError as e:
                logger.error("Media cleanup error", extra={"error": str(e)})


def build_runtime(
    queue: Optional[DurableQueue] = None,
    credentials: Optional[CredentialStore] = None,
    mappings: Optional[ConversationMappingStore] = None,
    media: Optional[MediaStore] = None,
    protocol_client: Optional[ProtocolClient] = None,
    chat_client: Optional[AmojoClient] = None,
    throttle: Optional[Throttle] = None,
    processor_options: Optional[dict] = None,
) -> Runtime:
    """
    Wire the components together; any of them may be supplied.

    Registers the gateway's handlers with the relay processor and the
    gateway's dispatcher with the session manager.
    """
    queue = queue or DurableQueue()
    credentials = credentials or CredentialStore()
    mappings = mappings or ConversationMappingStore()
    media = media or MediaStore()
    protocol_client = protocol_client or EvolutionClient()
    chat_client = chat_client or AmojoClient()
    throttle = throttle or Throttle()

    sessions = SessionManager(protocol_client, credentials=credentials)
    negotiator = Negotiator(mappings, credentials, chat_client=chat_client)
    gateway = Gateway(queue, sessions, negotiator, throttle, media, credentials=credentials)
    sessions.set_dispatcher(gateway.dispatch_event)

    processor = RelayProcessor(queue, **(processor_options or {}))
    processor.register(Direction.INCOMING, gateway.process_incoming)
    processor.register(Direction.OUTGOING, gateway.process_outgoing)

    return Runtime(
        queue=queue,
        credentials=credentials,
        mappings=mappings,
        media=media,
        protocol_client=protocol_client,
        chat_client=chat_client,
        sessions=sessions,
        negotiator=negotiator,
        throttle=throttle,
        gateway=gateway,
        processor=processor,
    )


def init_storage() -> None:
    """Create database tables and the media directory."""
    init_schema()
    MediaStore().root.mkdir(parents=True, exist_ok=True)
