"""Database base configuration and session management."""

from typing import Any

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from gateway_etl.exceptions import (
    PermanentStorageError,
    StorageError,
    TransientStorageError,
)

# Naming convention for constraints
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """Base class for all database models."""

    metadata = metadata

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


# Database engine and session (will be configured at runtime)
engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def build_engine(database_url: str, timeout_seconds: float = 10.0) -> Engine:
    """Create an engine whose every statement is bounded by ``timeout_seconds``.

    SQLite gets a busy timeout, PostgreSQL a connect timeout plus a
    per-session ``statement_timeout``. A timeout surfaces as an
    ``OperationalError``, which callers map to ``TransientStorageError``.
    """
    url = make_url(database_url)
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {}
    backend = url.get_backend_name()

    if backend == "sqlite":
        connect_args["timeout"] = timeout_seconds
    else:
        engine_kwargs["pool_timeout"] = timeout_seconds
        if backend == "postgresql":
            connect_args["connect_timeout"] = max(1, int(timeout_seconds))

    new_engine = create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
        **engine_kwargs,
    )

    if backend == "postgresql":
        timeout_ms = int(timeout_seconds * 1000)

        @event.listens_for(new_engine, "connect")
        def _set_statement_timeout(dbapi_connection, connection_record):  # noqa: ARG001
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET statement_timeout = {timeout_ms}")
            cursor.close()

    return new_engine


def init_db(database_url: str = "sqlite:///./gateway_etl.db", timeout_seconds: float = 10.0) -> Engine:
    """Initialize database engine and session factory, creating missing tables."""
    global engine, SessionLocal

    # Register every mapped table before create_all
    from gateway_etl.storage.database import models  # noqa: F401

    engine = build_engine(database_url, timeout_seconds)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)
    return engine


def get_session() -> Session:
    """Create a new session from the configured factory."""
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal()


def storage_error_from(error: SQLAlchemyError, operation: str, **context: Any) -> StorageError:
    """Map a SQLAlchemy exception onto the storage error taxonomy.

    Connection problems, pool exhaustion and timeouts (including SQLite's
    "database is locked") are transient; integrity and data errors are
    permanent.
    """
    if isinstance(error, (OperationalError, DisconnectionError, InterfaceError, PoolTimeoutError)):
        exception_class: type[StorageError] = TransientStorageError
    elif isinstance(error, (IntegrityError, DataError, ProgrammingError)):
        exception_class = PermanentStorageError
    else:
        exception_class = StorageError

    return exception_class(
        f"Storage {operation} failed: {type(error).__name__}",
        operation=operation,
        context=dict(context),
        original_error=error,
    )
