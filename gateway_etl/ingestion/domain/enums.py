"""Domain enums for gateway payment events."""

from enum import Enum


class ProtocolVersion(str, Enum):
    """Lightning module generation that produced an event."""

    V1 = "v1"  # module "ln"
    V2 = "v2"  # module "lnv2"

    def __str__(self) -> str:
        return self.value

    @property
    def module_name(self) -> str:
        """Module kind as reported by the gateway event log."""
        return {ProtocolVersion.V1: "ln", ProtocolVersion.V2: "lnv2"}[self]

    @classmethod
    def from_module(cls, module: str) -> "ProtocolVersion | None":
        """Map a gateway module name to a protocol version, None if unknown."""
        for version in cls:
            if version.module_name == module:
                return version
        return None


class Direction(str, Enum):
    """Payment direction as seen from the gateway."""

    OUTGOING = "outgoing"
    INCOMING = "incoming"

    def __str__(self) -> str:
        return self.value


class EventKind(str, Enum):
    """Lifecycle transition reported by the gateway."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED = "complete_lightning_payment_succeeded"

    def __str__(self) -> str:
        return self.value


# Gateway wire tags. Completing a lightning payment finishes an incoming
# payment, so it is classified as incoming.
EVENT_TAGS: dict[str, tuple[Direction, EventKind]] = {
    "outgoing-payment-started": (Direction.OUTGOING, EventKind.STARTED),
    "outgoing-payment-succeeded": (Direction.OUTGOING, EventKind.SUCCEEDED),
    "outgoing-payment-failed": (Direction.OUTGOING, EventKind.FAILED),
    "incoming-payment-started": (Direction.INCOMING, EventKind.STARTED),
    "incoming-payment-succeeded": (Direction.INCOMING, EventKind.SUCCEEDED),
    "incoming-payment-failed": (Direction.INCOMING, EventKind.FAILED),
    "complete-lightning-payment-succeeded": (
        Direction.INCOMING,
        EventKind.COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED,
    ),
}


class RecordShape(str, Enum):
    """The 14 durable record shapes. Values are the table names."""

    LNV1_OUTGOING_PAYMENT_STARTED = "lnv1_outgoing_payment_started"
    LNV1_OUTGOING_PAYMENT_SUCCEEDED = "lnv1_outgoing_payment_succeeded"
    LNV1_OUTGOING_PAYMENT_FAILED = "lnv1_outgoing_payment_failed"
    LNV1_INCOMING_PAYMENT_STARTED = "lnv1_incoming_payment_started"
    LNV1_INCOMING_PAYMENT_SUCCEEDED = "lnv1_incoming_payment_succeeded"
    LNV1_INCOMING_PAYMENT_FAILED = "lnv1_incoming_payment_failed"
    LNV1_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED = "lnv1_complete_lightning_payment_succeeded"
    LNV2_OUTGOING_PAYMENT_STARTED = "lnv2_outgoing_payment_started"
    LNV2_OUTGOING_PAYMENT_SUCCEEDED = "lnv2_outgoing_payment_succeeded"
    LNV2_OUTGOING_PAYMENT_FAILED = "lnv2_outgoing_payment_failed"
    LNV2_INCOMING_PAYMENT_STARTED = "lnv2_incoming_payment_started"
    LNV2_INCOMING_PAYMENT_SUCCEEDED = "lnv2_incoming_payment_succeeded"
    LNV2_INCOMING_PAYMENT_FAILED = "lnv2_incoming_payment_failed"
    LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED = "lnv2_complete_lightning_payment_succeeded"

    def __str__(self) -> str:
        return self.value

    @property
    def protocol_version(self) -> ProtocolVersion:
        return ProtocolVersion.V1 if self.value.startswith("lnv1_") else ProtocolVersion.V2

    @property
    def direction(self) -> Direction:
        return _SHAPE_KEYS[self][1]

    @property
    def kind(self) -> EventKind:
        return _SHAPE_KEYS[self][2]

    @classmethod
    def for_event(
        cls, version: ProtocolVersion, direction: Direction, kind: EventKind
    ) -> "RecordShape":
        """Resolve the shape of a classified event."""
        return _SHAPES_BY_KEY[(version, direction, kind)]

    @classmethod
    def for_version(cls, version: ProtocolVersion) -> list["RecordShape"]:
        """All shapes of one protocol generation, in lifecycle order."""
        return [shape for shape in cls if shape.protocol_version == version]

    def counterpart(self) -> "RecordShape":
        """The same direction/kind in the other protocol generation."""
        other = (
            ProtocolVersion.V2
            if self.protocol_version == ProtocolVersion.V1
            else ProtocolVersion.V1
        )
        return RecordShape.for_event(other, self.direction, self.kind)


_SHAPE_KEYS: dict[RecordShape, tuple[ProtocolVersion, Direction, EventKind]] = {}
for _shape in RecordShape:
    _version = ProtocolVersion.V1 if _shape.value.startswith("lnv1_") else ProtocolVersion.V2
    _tag = _shape.value[len("lnv1_") :].replace("_", "-")
    _direction, _kind = EVENT_TAGS[_tag]
    _SHAPE_KEYS[_shape] = (_version, _direction, _kind)

_SHAPES_BY_KEY = {key: shape for shape, key in _SHAPE_KEYS.items()}


class WriteOutcome(str, Enum):
    """Result of an insert-or-ignore write."""

    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"  # Redelivery of an ingested event

    def __str__(self) -> str:
        return self.value


class MigrationState(str, Enum):
    """v1 to v2 migration state of one federation.

    Lifecycle:
        NOT_STARTED → IN_PROGRESS (first batch checkpointed)
        IN_PROGRESS → COMPLETED (no v1 rows beyond the cursor)
        COMPLETED → SOURCE_DROPPED (operator deleted the v1 rows)
    """

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SOURCE_DROPPED = "source_dropped"

    def __str__(self) -> str:
        return self.value
