"""Database configuration and session management."""
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from esg_store.config import get_settings
from esg_store.models.revisioned import RevisionAwareSession

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine configured for the target database type."""
    settings = get_settings()
    if database_url.startswith("sqlite"):
        # SQLite-specific config
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    # PostgreSQL config (production)
    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    """
    Session factory used everywhere in the package.

    Sessions filter versioned tables down to active revisions and keep loaded
    values after commit so aggregates can be handed back to callers.
    """
    return sessionmaker(
        bind=bind,
        class_=RevisionAwareSession,
        autoflush=False,
        expire_on_commit=False,
    )


_settings = get_settings()
engine = build_engine(_settings.database_url, echo=_settings.echo_sql)
SessionLocal = make_session_factory(engine)


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
