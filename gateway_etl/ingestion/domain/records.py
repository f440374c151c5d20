"""Canonical payment records, one immutable shape per table.

``PaymentRecord`` is the union of the 14 shapes; code dispatching on it uses
``match`` over the concrete classes. Amounts are millisatoshis, keys and
hashes lower-case hex, ``ts`` naive UTC.

v2 fields that have no v1 analogue are optional because rows synthesized by
the schema migration may lack them. Records normalized from live v2 events
always carry every required field.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar

from .enums import RecordShape


@dataclass(frozen=True, kw_only=True)
class _RecordHeader:
    """Columns shared by every record shape."""

    shape: ClassVar[RecordShape]

    log_id: int
    ts: datetime
    federation_id: str
    federation_name: str

    def to_dict(self) -> dict[str, Any]:
        """Column values of this record, without the gateway epoch."""
        return asdict(self)


# =============================================================================
# LNv1
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class Lnv1OutgoingPaymentStarted(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV1_OUTGOING_PAYMENT_STARTED

    contract_id: str
    invoice_amount: int
    operation_id: str


@dataclass(frozen=True, kw_only=True)
class Lnv1OutgoingPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV1_OUTGOING_PAYMENT_SUCCEEDED

    contract_id: str
    contract_amount: int
    gateway_key: str
    payment_hash: str
    timelock: int
    user_key: str
    preimage: str


@dataclass(frozen=True, kw_only=True)
class Lnv1OutgoingPaymentFailed(_RecordHeader):
    """Outgoing failure. The gateway may not report a reason."""

    shape: ClassVar[RecordShape] = RecordShape.LNV1_OUTGOING_PAYMENT_FAILED

    contract_id: str
    contract_amount: int
    gateway_key: str
    payment_hash: str
    timelock: int
    user_key: str
    error_reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class Lnv1IncomingPaymentStarted(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV1_INCOMING_PAYMENT_STARTED

    contract_id: str
    contract_amount: int
    invoice_amount: int
    operation_id: str
    payment_hash: str


@dataclass(frozen=True, kw_only=True)
class Lnv1IncomingPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV1_INCOMING_PAYMENT_SUCCEEDED

    payment_hash: str
    preimage: str


@dataclass(frozen=True, kw_only=True)
class Lnv1IncomingPaymentFailed(_RecordHeader):
    """Incoming failure. Unlike the outgoing case the reason is required."""

    shape: ClassVar[RecordShape] = RecordShape.LNV1_INCOMING_PAYMENT_FAILED

    payment_hash: str
    error_reason: str


@dataclass(frozen=True, kw_only=True)
class Lnv1CompleteLightningPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV1_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED

    payment_hash: str


# =============================================================================
# LNv2
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class Lnv2OutgoingPaymentStarted(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_OUTGOING_PAYMENT_STARTED

    invoice_amount: int
    max_delay: int | None
    min_contract_amount: int | None
    operation_start: datetime
    amount: int | None
    claim_pk: str | None
    ephemeral_pk: str | None
    expiration: int | None
    payment_image: str | None
    refund_pk: str | None


@dataclass(frozen=True, kw_only=True)
class Lnv2OutgoingPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_OUTGOING_PAYMENT_SUCCEEDED

    payment_image: str | None
    target_federation: str | None = None


@dataclass(frozen=True, kw_only=True)
class Lnv2OutgoingPaymentFailed(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_OUTGOING_PAYMENT_FAILED

    payment_image: str | None
    error: str | None


@dataclass(frozen=True, kw_only=True)
class Lnv2IncomingPaymentStarted(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_INCOMING_PAYMENT_STARTED

    amount: int
    claim_pk: str | None
    ephemeral_pk: str | None
    expiration: int | None
    payment_image: str | None
    refund_pk: str | None
    invoice_amount: int
    operation_start: datetime


@dataclass(frozen=True, kw_only=True)
class Lnv2IncomingPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_INCOMING_PAYMENT_SUCCEEDED

    payment_image: str | None


@dataclass(frozen=True, kw_only=True)
class Lnv2IncomingPaymentFailed(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_INCOMING_PAYMENT_FAILED

    payment_image: str | None
    error: str


@dataclass(frozen=True, kw_only=True)
class Lnv2CompleteLightningPaymentSucceeded(_RecordHeader):
    shape: ClassVar[RecordShape] = RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED

    payment_image: str | None


PaymentRecord = (
    Lnv1OutgoingPaymentStarted
    | Lnv1OutgoingPaymentSucceeded
    | Lnv1OutgoingPaymentFailed
    | Lnv1IncomingPaymentStarted
    | Lnv1IncomingPaymentSucceeded
    | Lnv1IncomingPaymentFailed
    | Lnv1CompleteLightningPaymentSucceeded
    | Lnv2OutgoingPaymentStarted
    | Lnv2OutgoingPaymentSucceeded
    | Lnv2OutgoingPaymentFailed
    | Lnv2IncomingPaymentStarted
    | Lnv2IncomingPaymentSucceeded
    | Lnv2IncomingPaymentFailed
    | Lnv2CompleteLightningPaymentSucceeded
)

RECORD_TYPES: dict[RecordShape, type[PaymentRecord]] = {
    cls.shape: cls
    for cls in (
        Lnv1OutgoingPaymentStarted,
        Lnv1OutgoingPaymentSucceeded,
        Lnv1OutgoingPaymentFailed,
        Lnv1IncomingPaymentStarted,
        Lnv1IncomingPaymentSucceeded,
        Lnv1IncomingPaymentFailed,
        Lnv1CompleteLightningPaymentSucceeded,
        Lnv2OutgoingPaymentStarted,
        Lnv2OutgoingPaymentSucceeded,
        Lnv2OutgoingPaymentFailed,
        Lnv2IncomingPaymentStarted,
        Lnv2IncomingPaymentSucceeded,
        Lnv2IncomingPaymentFailed,
        Lnv2CompleteLightningPaymentSucceeded,
    )
}


def correlation_keys(record: PaymentRecord) -> set[str]:
    """Keys joining this record to the rest of its payment lifecycle.

    v1 rows join on ``contract_id`` and, where present, ``payment_hash``
    (incoming success/failure rows only carry the hash). v2 rows join on
    ``payment_image``.
    """
    keys: set[str | None]
    match record:
        case Lnv1OutgoingPaymentStarted(contract_id=contract_id):
            keys = {contract_id}
        case (
            Lnv1OutgoingPaymentSucceeded(contract_id=contract_id, payment_hash=payment_hash)
            | Lnv1OutgoingPaymentFailed(contract_id=contract_id, payment_hash=payment_hash)
            | Lnv1IncomingPaymentStarted(contract_id=contract_id, payment_hash=payment_hash)
        ):
            keys = {contract_id, payment_hash}
        case (
            Lnv1IncomingPaymentSucceeded(payment_hash=payment_hash)
            | Lnv1IncomingPaymentFailed(payment_hash=payment_hash)
            | Lnv1CompleteLightningPaymentSucceeded(payment_hash=payment_hash)
        ):
            keys = {payment_hash}
        case (
            Lnv2OutgoingPaymentStarted(payment_image=image)
            | Lnv2OutgoingPaymentSucceeded(payment_image=image)
            | Lnv2OutgoingPaymentFailed(payment_image=image)
            | Lnv2IncomingPaymentStarted(payment_image=image)
            | Lnv2IncomingPaymentSucceeded(payment_image=image)
            | Lnv2IncomingPaymentFailed(payment_image=image)
            | Lnv2CompleteLightningPaymentSucceeded(payment_image=image)
        ):
            keys = {image}
        case _:
            raise TypeError(f"Not a payment record: {record!r}")
    return {key for key in keys if key}


def dedup_key(log_id: int, gateway_epoch: int) -> str:
    """Synthetic key equivalent to the ``(log_id, gateway_epoch)`` primary key."""
    return f"{gateway_epoch}:{log_id}"
