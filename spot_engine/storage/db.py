"""
Database engine and session management.

PostgreSQL in deployments; SQLite for local runs and tests (in-memory URLs
share one connection through StaticPool). Includes connection-pool
observability via SQLAlchemy pool events.
"""
import os
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool, StaticPool

from spot_engine.exceptions import PersistenceError
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

DEFAULT_DATABASE_URL = "sqlite:///spot_engine.db"

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        self.database_url = database_url

        if database_url.startswith("sqlite"):
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        elif database_url.startswith("postgresql"):
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)
        else:
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a postgresql:// or sqlite:// connection string."
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self):
        """Create all tables."""
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            error_str = str(e).lower()
            if "already exists" in error_str or "duplicate" in error_str:
                logger.debug("DB_TABLES_ALREADY_EXIST", error=str(e))
                return
            raise PersistenceError(f"Table creation failed: {e}") from e

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions. Commits on success, rolls back on
        error; SQLAlchemy errors surface as PersistenceError.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Optional[Database] = None


def get_db() -> Database:
    """Get or create the global database instance from DATABASE_URL."""
    global _db_instance
    if _db_instance is None:
        # Register ORM models on Base.metadata before create_all
        import spot_engine.storage.repository  # noqa: F401

        database_url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
        logger.info("DATABASE_CONNECTION_INIT", backend=database_url.split(":", 1)[0])
        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: Optional[str] = None) -> Database:
    """Initialize the global database with a specific URL."""
    global _db_instance
    import spot_engine.storage.repository  # noqa: F401

    _db_instance = Database(database_url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)
    _db_instance.create_all()
    return _db_instance


def reset_db() -> None:
    """Forget the global instance (tests)."""
    global _db_instance
    if _db_instance is not None:
        _db_instance.engine.dispose()
    _db_instance = None


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach pool event listeners.

    Logs ``POOL_CHECKOUT`` / ``POOL_CHECKIN`` at debug and ``POOL_INVALIDATE``
    as a warning.
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT", checked_out=pool.checkedout())

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = round((time.monotonic() - checkout_time) * 1000, 1) if checkout_time is not None else None
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms, checked_out=pool.checkedout())

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)
