"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests.
"""

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from gateway_etl.storage.database import models  # noqa: F401  (registers tables)
from gateway_etl.storage.database.base import Base
from gateway_etl.utils.config import Settings

TEST_GATEWAY_PASSWORD = "test_gateway_password_secure_123"


@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create a database session for testing.

    Each test gets a fresh session on a fresh database.
    """
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def test_settings() -> Settings:
    """Settings pointing at an in-memory database and a fake gateway."""
    return Settings(
        database_url="sqlite:///:memory:",
        gateway_address="http://gateway.test:8175",
        gateway_password=TEST_GATEWAY_PASSWORD,
        migration_batch_size=2,
        write_retry_attempts=1,
        write_retry_base_delay=0.01,
    )
