"""Database models and engine configuration."""

from .base import Base, SessionLocal, build_engine, get_session, init_db
from .models import (
    RECORD_TABLES,
    GatewayEpoch,
    MigrationCursor,
    PaymentRecordRow,
    table_for,
)

__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "get_session",
    "init_db",
    "RECORD_TABLES",
    "GatewayEpoch",
    "MigrationCursor",
    "PaymentRecordRow",
    "table_for",
]
