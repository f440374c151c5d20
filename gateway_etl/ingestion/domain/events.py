"""Raw payment events as delivered by the gateway event log.

A ``PaymentEvent`` is transient: it is normalized into a record and never
persisted verbatim.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from gateway_etl.exceptions import InvalidFieldError, MissingFieldError

from .enums import EVENT_TAGS, Direction, EventKind, ProtocolVersion


@dataclass(frozen=True)
class PaymentEvent:
    """One entry of a federation's payment log."""

    log_id: int
    timestamp: int  # Microseconds since the Unix epoch
    federation_id: str
    federation_name: str
    protocol_version: ProtocolVersion | str  # Raw module name when unrecognized
    event_kind: str  # Wire tag, e.g. "outgoing-payment-started"
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def direction(self) -> Direction | None:
        tag = EVENT_TAGS.get(self.event_kind)
        return tag[0] if tag else None

    @property
    def kind(self) -> EventKind | None:
        tag = EVENT_TAGS.get(self.event_kind)
        return tag[1] if tag else None

    @property
    def occurred_at(self) -> datetime:
        """Event timestamp as naive UTC, the representation stored in records."""
        return micros_to_datetime(self.timestamp)

    @classmethod
    def from_log_entry(
        cls, entry: dict[str, Any], federation_id: str, federation_name: str
    ) -> "PaymentEvent":
        """Build an event from a gateway ``payment_log`` entry.

        The gateway reports the module as ``[kind, instance_id]`` (or null)
        and the log id either as a bare integer or wrapped in an object.

        Raises:
            MissingFieldError: The entry has no log id
            InvalidFieldError: The entry, its log id or its timestamp is malformed
        """
        if not isinstance(entry, dict):
            raise InvalidFieldError("entry", f"expected an object, got {type(entry).__name__}")

        module = entry.get("module")
        module_name = module[0] if isinstance(module, list | tuple) and module else module
        version = ProtocolVersion.from_module(str(module_name)) if module_name else None

        event_id = entry.get("event_id")
        if isinstance(event_id, dict):
            event_id = next(iter(event_id.values()), None)
        if event_id is None:
            raise MissingFieldError("event_id")

        try:
            log_id = int(event_id)
        except (TypeError, ValueError) as e:
            raise InvalidFieldError("event_id", "not an integer", original_error=e) from e
        try:
            timestamp = int(entry.get("timestamp", 0))
        except (TypeError, ValueError) as e:
            raise InvalidFieldError(
                "timestamp", "not an integer", log_id=log_id, original_error=e
            ) from e

        return cls(
            log_id=log_id,
            timestamp=timestamp,
            federation_id=federation_id,
            federation_name=federation_name,
            protocol_version=version or str(module_name),
            event_kind=str(entry.get("event_kind", "")),
            payload=entry.get("value") or {},
        )


_UNIX_EPOCH = datetime(1970, 1, 1)


def micros_to_datetime(micros: int) -> datetime:
    """Convert microseconds since epoch to a naive UTC datetime."""
    return _UNIX_EPOCH + timedelta(microseconds=micros)
