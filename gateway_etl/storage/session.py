"""Database session management with the context manager pattern.

Usage:
    with db_session() as db:
        epoch = EpochManager(db).current_epoch()

The session is rolled back on any exception and always closed on exit.
Callers commit explicitly.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from gateway_etl.utils.logging import get_logger

logger = get_logger(__name__)


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """Yield a session bound to the configured engine.

    Raises:
        RuntimeError: If ``init_db()`` has not been called
        Exception: Any exception from within the context (after rollback)
    """
    from gateway_etl.storage.database.base import SessionLocal, get_session

    if SessionLocal is None:
        raise RuntimeError(
            "Database not initialized. Call init_db() first or set GATEWAY_ETL_DATABASE_URL."
        )

    db = get_session()
    try:
        logger.debug("db_session_created", session_id=id(db))
        yield db
    except Exception as e:
        logger.error(
            "db_session_error_rollback",
            error=str(e),
            error_type=type(e).__name__,
            session_id=id(db),
        )
        db.rollback()
        raise
    finally:
        logger.debug("db_session_closed", session_id=id(db))
        db.close()
