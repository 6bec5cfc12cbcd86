"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest
from sqlalchemy.orm import sessionmaker

# Set test environment before any wabridge module reads config
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MEDIA_STORAGE_PATH", tempfile.mkdtemp(prefix="wabridge-media-"))
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("MIN_DELAY_MS", "0")
os.environ.setdefault("MAX_DELAY_MS", "0")
os.environ.setdefault("TYPING_DURATION_MS", "0")

from wabridge.infra.database import build_engine, init_schema
from wabridge.infra.queue import DurableQueue
from wabridge.services.conversation_store import ConversationMappingStore
from wabridge.services.credential_store import CredentialStore

from tests.fakes import FakeRedis


@pytest.fixture
def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file with the relay schema."""
    engine = build_engine(f"sqlite:///{tmp_path / 'relay.db'}")
    init_schema(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def credentials(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def mappings(session_factory):
    return ConversationMappingStore(session_factory)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue(fake_redis):
    return DurableQueue(redis_client=fake_redis)
