"""
PostgreSQL database connection and transaction scoping
One Database object is built per process and shared through app.state
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import DATABASE_URL, DB_ECHO, DB_MAX_OVERFLOW, DB_POOL_SIZE, logger
from core.errors import StorageFailure

# Base class for ORM models
Base = declarative_base()


class Database:
    """
    Owns the engine and session factory.

    Usage:
        db = Database(url)
        with db.transaction() as session:
            ...  # committed on exit, rolled back on any exception
    """

    def __init__(self, url: str, engine: Optional[Engine] = None):
        if not url and engine is None:
            raise ValueError("DATABASE_URL environment variable is required for PostgreSQL connection")
        self.url = url
        self.engine = engine or self._create_engine(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @staticmethod
    def _create_engine(url: str) -> Engine:
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}, "echo": DB_ECHO}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # Single shared connection so in-memory databases survive across sessions
                kwargs["poolclass"] = StaticPool
            return create_engine(url, **kwargs)
        return create_engine(
            url,
            pool_pre_ping=True,  # Verify connections before using
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            echo=DB_ECHO,
        )

    @classmethod
    def from_env(cls) -> "Database":
        return cls(DATABASE_URL)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session, always closed on exit. Driver errors surface as StorageFailure."""
        db = self.SessionLocal()
        try:
            yield db
        except SQLAlchemyError as ex:
            logger.exception("[database] read failed")
            raise StorageFailure("Failed to read from storage", cause=ex) from ex
        finally:
            db.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Unit of work: commit when the block finishes, rollback if it raises.
        The session is released on every path.
        """
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
        """
        Initialize database tables
        Call this on application startup
        """
        # Register models on Base.metadata before create_all
        from models import customer, order, product  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("[database] schema ready")

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as ex:
            logger.warning(f"[database] ping failed: {ex}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def get_database(request: Request) -> Database:
    """Dependency returning the process-wide Database from app.state"""
    return request.app.state.database
