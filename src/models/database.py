"""
SQLAlchemy engine and session setup for the bridge store.
"""
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

# Database connection setup
_engine: Optional[Engine] = None  # Singleton engine instance


def get_database_url() -> str:
    """Get database URL from environment or use default"""
    return os.environ.get('DATABASE_URL', 'sqlite:///wechaty_bridge.db')


def create_bridge_engine(url: str) -> Engine:
    """Create an engine with SQLite or PostgreSQL settings"""
    if url.startswith('sqlite'):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False  # Set to True for SQL debugging
        )
    # Use pool_pre_ping to verify connections are alive
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,  # Recycle connections after 1 hour
        isolation_level="READ COMMITTED"  # Ensure we see committed changes
    )


def get_engine(url: Optional[str] = None) -> Engine:
    """Get SQLAlchemy engine (singleton)"""
    global _engine

    if _engine is None:
        _engine = create_bridge_engine(url or get_database_url())

    return _engine


def get_session_maker(engine: Optional[Engine] = None):
    """Get session maker for creating database sessions"""
    # expire_on_commit=False prevents stale data after commit
    return sessionmaker(
        bind=engine or get_engine(),
        expire_on_commit=False,
        autoflush=True,
    )


def init_database(engine: Optional[Engine] = None):
    """Initialize database tables"""
    # Register the record tables on Base.metadata
    from src.models import bridge_records  # noqa: F401
    Base.metadata.create_all(engine or get_engine())
