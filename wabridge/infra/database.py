"""Database engine, session management, and schema bootstrap."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from wabridge.infra.config import config

SCHEMA_FILE = Path(__file__).parent.parent.parent / "migrations" / "001_relay_schema.sql"


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine with connection pooling suited to the backend.

    SQLite files are opened with check_same_thread disabled because the
    stores are shared by the worker loops and request handlers.
    """
    if database_url.startswith("sqlite"):
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
    return create_engine(
        database_url,
        pool_size=10,  # Number of connections to maintain
        max_overflow=20,  # Max connections beyond pool_size
        pool_timeout=30,  # Seconds to wait for connection from pool
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


engine = build_engine(config.DATABASE_URL, echo=config.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_session(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Get a database session that commits on success and rolls back on error.

    Args:
        factory: Session factory to use (defaults to the application one)
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _schema_statements() -> List[str]:
    """Split the schema file into individual statements."""
    sql = SCHEMA_FILE.read_text()
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def init_schema(target: Optional[Engine] = None) -> None:
    """Create the relay tables if they do not exist yet."""
    with (target or engine).begin() as conn:
        for statement in _schema_statements():
            conn.execute(text(statement))
