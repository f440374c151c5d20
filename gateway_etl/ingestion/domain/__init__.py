"""Domain layer: raw events, record shapes and enums."""

from .enums import (
    Direction,
    EventKind,
    MigrationState,
    ProtocolVersion,
    RecordShape,
    WriteOutcome,
)
from .events import PaymentEvent
from .records import RECORD_TYPES, PaymentRecord, correlation_keys, dedup_key

__all__ = [
    "Direction",
    "EventKind",
    "MigrationState",
    "ProtocolVersion",
    "RecordShape",
    "WriteOutcome",
    "PaymentEvent",
    "PaymentRecord",
    "RECORD_TYPES",
    "correlation_keys",
    "dedup_key",
]
