"""
Database configuration and session management
"""

from contextlib import contextmanager
from typing import Iterator

from sqlmodel import SQLModel, Session, create_engine
import structlog

from tenant_lifecycle.core.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()

# Central (tenant metadata) engine
engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)


def init_db():
    """Initialize database tables"""
    import tenant_lifecycle.models  # noqa: F401  registers table metadata

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables created")


def get_session():
    """Dependency to get database session"""
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs; rolls back on error"""
    session = Session(engine)
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
