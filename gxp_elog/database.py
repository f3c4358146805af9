"""
Database engine, declarative base and unit of work.

All e-log tables share one declarative ``Base`` so that an entity mutation
and the audit record describing it are written in the same transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import ELogConfig, get_config
from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware time to the stored naive UTC form."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns the SQLAlchemy engine and session factory."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy URL. Defaults to the configured ``database_url``.
            echo: Echo SQL statements. Defaults to the configured ``echo_sql``.
        """
        config = get_config()
        self.url = url or config.database_url
        echo = config.echo_sql if echo is None else echo

        if self.url.startswith("sqlite"):
            kwargs: dict = {"connect_args": {"check_same_thread": False}}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each session sees an empty DB
                kwargs["poolclass"] = StaticPool
            self.engine: Engine = create_engine(self.url, echo=echo, **kwargs)
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        else:
            self.engine = create_engine(
                self.url,
                echo=echo,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    @classmethod
    def from_config(cls, config: ELogConfig) -> "Database":
        return cls(url=config.database_url, echo=config.echo_sql)

    def create_all(self) -> None:
        """Create all tables."""
        # Register every mapped class on Base before create_all
        from .audit_trail import storage  # noqa: F401
        from .logbook import entities  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        from .audit_trail import storage  # noqa: F401
        from .logbook import entities  # noqa: F401

        Base.metadata.drop_all(bind=self.engine)

    def unit_of_work(self) -> "UnitOfWork":
        return UnitOfWork(self.SessionLocal)

    def dispose(self) -> None:
        self.engine.dispose()


class UnitOfWork:
    """
    One transaction around one session.

    Commits when the block exits normally and rolls back on any exception.
    Store failures surface as ``PersistenceError``; nothing is partially
    applied.

    Usage:
        with database.unit_of_work() as uow:
            uow.session.add(entity)
    """

    def __init__(self, session_factory: sessionmaker):  # type: ignore[type-arg]
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    @property
    def session(self) -> Session:
        if self._session is None:
            raise PersistenceError("Unit of work is not active")
        return self._session

    def __enter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if exc_type is not None:
                self.rollback()
                if isinstance(exc_val, SQLAlchemyError):
                    logger.error(f"Transaction failed: {exc_val}")
                    raise PersistenceError(
                        f"Store operation failed: {exc_val.__class__.__name__}"
                    ) from exc_val
            else:
                self.commit()
        finally:
            if self._session is not None:
                self._session.close()
                self._session = None

    def commit(self) -> None:
        """
        Commit the current transaction.

        Raises:
            PersistenceError: If commit fails
        """
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.rollback()
            logger.error(f"Commit failed: {e}")
            raise PersistenceError(
                f"Failed to commit transaction: {e.__class__.__name__}"
            ) from e

    def rollback(self) -> None:
        if self._session is not None:
            self._session.rollback()
