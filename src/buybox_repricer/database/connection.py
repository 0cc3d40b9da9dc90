"""
Database connection and session management.
"""

from contextlib import contextmanager
from typing import Generator, Optional
import os
from pathlib import Path

# Load .env before reading REPRICER_DATABASE_URL
from dotenv import load_dotenv
_env_file = Path(__file__).parent.parent.parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file, encoding='utf-8')

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from buybox_repricer.database.models import Base
from buybox_repricer.utils.logger import get_logger

logger = get_logger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///./repricer.db"


def _build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


class Database:
    """
    Engine plus session factory for one database URL.

    Usage:
        db = Database("sqlite:///./repricer.db")
        db.init_db()
        with db.get_db_context() as session:
            session.query(ListingRecord).count()
    """

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        self.database_url = database_url or os.getenv("REPRICER_DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = _build_engine(self.database_url, echo=echo)

        # Session factory
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    @contextmanager
    def get_db_context(self) -> Generator[Session, None, None]:
        """Session that commits on success and rolls back on error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def init_db(self) -> None:
        """Initialize database - create all tables."""
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    def drop_db(self) -> None:
        """Drop all database tables (use with caution!)."""
        logger.warning("Dropping all database tables...")
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("All database tables dropped")

    def dispose(self) -> None:
        self.engine.dispose()
