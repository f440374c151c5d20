"""Event normalizer: raw gateway events to canonical payment records.

Dispatches on ``(protocol_version, direction, kind)`` to one of the 14 record
shapes and validates every field the target shape requires. Normalization
errors are per event: the caller skips or drops the event and carries on.
"""

import json
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from gateway_etl.exceptions import InvalidFieldError, MissingFieldError, UnknownKindError
from gateway_etl.ingestion.domain.enums import EVENT_TAGS, ProtocolVersion, RecordShape
from gateway_etl.ingestion.domain.events import PaymentEvent, micros_to_datetime
from gateway_etl.ingestion.domain.records import (
    Lnv1CompleteLightningPaymentSucceeded,
    Lnv1IncomingPaymentFailed,
    Lnv1IncomingPaymentStarted,
    Lnv1IncomingPaymentSucceeded,
    Lnv1OutgoingPaymentFailed,
    Lnv1OutgoingPaymentStarted,
    Lnv1OutgoingPaymentSucceeded,
    Lnv2CompleteLightningPaymentSucceeded,
    Lnv2IncomingPaymentFailed,
    Lnv2IncomingPaymentStarted,
    Lnv2IncomingPaymentSucceeded,
    Lnv2OutgoingPaymentFailed,
    Lnv2OutgoingPaymentStarted,
    Lnv2OutgoingPaymentSucceeded,
    PaymentRecord,
)
from gateway_etl.utils.logging import get_logger
from gateway_etl.utils.metrics import timestamp_anomalies_total

logger = get_logger(__name__)

HASH_HEX_LEN = 64  # sha256 hashes, contract and operation ids
KEY_HEX_LEN = 66  # compressed secp256k1 public keys

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_NAIVE_EPOCH = datetime(1970, 1, 1)
_MISSING = object()


class _Payload:
    """Typed, validating accessors over one event payload.

    ``path`` is a dotted path into the payload; ``field`` is the record
    field reported in errors.
    """

    def __init__(self, event: PaymentEvent):
        self._data = event.payload
        self._error_context = {"log_id": event.log_id, "event_kind": event.event_kind}

    def _lookup(self, path: str) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or node.get(part) is None:
                return _MISSING
            node = node[part]
        return node

    def _missing(self, field: str) -> MissingFieldError:
        return MissingFieldError(field, **self._error_context)

    def _invalid(self, field: str, reason: str) -> InvalidFieldError:
        return InvalidFieldError(field, reason, **self._error_context)

    def hex(self, path: str, field: str, lengths: tuple[int, ...], required: bool = True) -> str | None:
        value = self._lookup(path)
        if value is _MISSING:
            if required:
                raise self._missing(field)
            return None
        if not isinstance(value, str) or not _HEX_RE.match(value):
            raise self._invalid(field, "not a hex string")
        if len(value) not in lengths:
            expected = " or ".join(str(n) for n in lengths)
            raise self._invalid(field, f"expected {expected} hex characters, got {len(value)}")
        return value.lower()

    def integer(self, path: str, field: str, required: bool = True) -> int | None:
        value = self._lookup(path)
        if value is _MISSING:
            if required:
                raise self._missing(field)
            return None
        # bool is an int subclass but never a valid quantity
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._invalid(field, "not an integer")
        if value < 0:
            raise self._invalid(field, "negative value")
        return value

    def amount(self, path: str, field: str, required: bool = True) -> int | None:
        """Millisatoshi amount, either a bare integer or ``{"msats": n}``."""
        value = self._lookup(path)
        if isinstance(value, dict) and "msats" in value:
            path = f"{path}.msats"
        return self.integer(path, field, required)

    def text(self, path: str, field: str, required: bool = True) -> str | None:
        value = self._lookup(path)
        if value is _MISSING:
            if required:
                raise self._missing(field)
            return None
        if isinstance(value, str):
            return value
        # Structured errors are kept verbatim as compact JSON
        return json.dumps(value, separators=(",", ":"), sort_keys=True)

    def payment_image(self, path: str, field: str = "payment_image") -> str:
        value = self._lookup(path)
        if isinstance(value, dict):
            if "Hash" in value:
                return self.hex(f"{path}.Hash", field, (HASH_HEX_LEN,))  # type: ignore[return-value]
            if "Point" in value:
                return self.hex(f"{path}.Point", field, (KEY_HEX_LEN,))  # type: ignore[return-value]
            raise self._invalid(field, "unknown payment image variant")
        return self.hex(path, field, (HASH_HEX_LEN, KEY_HEX_LEN))  # type: ignore[return-value]

    def timestamp(self, path: str, field: str) -> datetime:
        """Point in time as microseconds, serde ``SystemTime`` or ISO-8601."""
        value = self._lookup(path)
        if value is _MISSING:
            raise self._missing(field)
        if isinstance(value, bool):
            raise self._invalid(field, "not a timestamp")
        if isinstance(value, int):
            return micros_to_datetime(value)
        if isinstance(value, dict) and "secs_since_epoch" in value:
            secs = value["secs_since_epoch"]
            nanos = value.get("nanos_since_epoch", 0)
            if not isinstance(secs, int) or not isinstance(nanos, int):
                raise self._invalid(field, "malformed SystemTime")
            return _NAIVE_EPOCH + timedelta(seconds=secs, microseconds=nanos // 1000)
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value)
            except ValueError as e:
                raise self._invalid(field, "not an ISO-8601 timestamp") from e
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(UTC).replace(tzinfo=None)
            return parsed
        raise self._invalid(field, "not a timestamp")


def extract_error_reason(payload: dict[str, Any]) -> str | None:
    """Failure reason of a v1 outgoing payment, None when the gateway gave none.

    Only two error types carry a reason: a failed lightning payment and an
    outgoing contract whose invoice expired.
    """
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    error_type = error.get("error_type")
    if not isinstance(error_type, dict):
        return None

    pay_error = error_type.get("LightningPayError")
    if isinstance(pay_error, dict):
        lightning_error = pay_error.get("lightning_error")
        if isinstance(lightning_error, dict):
            failed = lightning_error.get("FailedPayment")
            if isinstance(failed, dict) and "failure_reason" in failed:
                reason = failed["failure_reason"]
                return reason if isinstance(reason, str) else ""
        return None

    invalid_contract = error_type.get("InvalidOutgoingContract")
    if isinstance(invalid_contract, dict):
        inner = invalid_contract.get("error")
        if isinstance(inner, dict) and "InvoiceExpired" in inner:
            expired = inner["InvoiceExpired"]
            if isinstance(expired, bool) or not isinstance(expired, int):
                expired = 0
            return f"Invoice expired: {expired}"
    return None


class EventNormalizer:
    """Turn ``PaymentEvent``s into ``PaymentRecord``s.

    One normalizer serves one ingestion run. It remembers the previous
    timestamp of each federation stream to flag events that go back in
    time; such events are logged and counted in ``anomalies`` but still
    normalized, since historical replay may be out of order.
    """

    def __init__(self) -> None:
        self._last_timestamp: dict[str, int] = {}
        self.anomalies = 0

    def classify(self, event: PaymentEvent) -> RecordShape:
        """Resolve the record shape of ``event``.

        Raises:
            UnknownKindError: Unrecognized module or event tag
        """
        version = event.protocol_version
        if not isinstance(version, ProtocolVersion):
            raise UnknownKindError(
                f"Unknown module '{version}'",
                module=str(version),
                log_id=event.log_id,
                event_kind=event.event_kind,
            )
        tag = EVENT_TAGS.get(event.event_kind)
        if tag is None:
            raise UnknownKindError(
                f"Unknown event kind '{event.event_kind}'",
                module=version.module_name,
                log_id=event.log_id,
                event_kind=event.event_kind,
            )
        direction, kind = tag
        return RecordShape.for_event(version, direction, kind)

    def normalize(self, event: PaymentEvent) -> PaymentRecord:
        """Validate ``event`` and build its record.

        Raises:
            UnknownKindError: Unrecognized module or event tag
            MissingFieldError: A required field is absent
            InvalidFieldError: A field is present but malformed
        """
        shape = self.classify(event)
        record = self._build(shape, event, _Payload(event))
        self._check_timestamp(event)
        return record

    def _check_timestamp(self, event: PaymentEvent) -> None:
        previous = self._last_timestamp.get(event.federation_id)
        self._last_timestamp[event.federation_id] = event.timestamp
        if previous is not None and event.timestamp < previous:
            self.anomalies += 1
            timestamp_anomalies_total.labels(federation_id=event.federation_id).inc()
            logger.warning(
                "timestamp_regression",
                federation_id=event.federation_id,
                log_id=event.log_id,
                timestamp=event.timestamp,
                previous_timestamp=previous,
            )

    def _build(self, shape: RecordShape, event: PaymentEvent, p: _Payload) -> PaymentRecord:
        header: dict[str, Any] = {
            "log_id": event.log_id,
            "ts": event.occurred_at,
            "federation_id": event.federation_id,
            "federation_name": event.federation_name,
        }
        h, k = (HASH_HEX_LEN,), (KEY_HEX_LEN,)

        match shape:
            case RecordShape.LNV1_OUTGOING_PAYMENT_STARTED:
                return Lnv1OutgoingPaymentStarted(
                    **header,
                    contract_id=p.hex("contract_id", "contract_id", h),
                    invoice_amount=p.amount("invoice_amount", "invoice_amount"),
                    operation_id=p.hex("operation_id", "operation_id", h),
                )
            case RecordShape.LNV1_OUTGOING_PAYMENT_SUCCEEDED:
                return Lnv1OutgoingPaymentSucceeded(
                    **header,
                    **self._v1_outgoing_contract(p),
                    preimage=p.hex("preimage", "preimage", h),
                )
            case RecordShape.LNV1_OUTGOING_PAYMENT_FAILED:
                return Lnv1OutgoingPaymentFailed(
                    **header,
                    **self._v1_outgoing_contract(p),
                    error_reason=extract_error_reason(event.payload),
                )
            case RecordShape.LNV1_INCOMING_PAYMENT_STARTED:
                return Lnv1IncomingPaymentStarted(
                    **header,
                    contract_id=p.hex("contract_id", "contract_id", h),
                    contract_amount=p.amount("contract_amount", "contract_amount"),
                    invoice_amount=p.amount("invoice_amount", "invoice_amount"),
                    operation_id=p.hex("operation_id", "operation_id", h),
                    payment_hash=p.hex("payment_hash", "payment_hash", h),
                )
            case RecordShape.LNV1_INCOMING_PAYMENT_SUCCEEDED:
                return Lnv1IncomingPaymentSucceeded(
                    **header,
                    payment_hash=p.hex("payment_hash", "payment_hash", h),
                    preimage=p.hex("preimage", "preimage", h),
                )
            case RecordShape.LNV1_INCOMING_PAYMENT_FAILED:
                return Lnv1IncomingPaymentFailed(
                    **header,
                    payment_hash=p.hex("payment_hash", "payment_hash", h),
                    error_reason=p.text("error", "error_reason"),
                )
            case RecordShape.LNV1_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED:
                return Lnv1CompleteLightningPaymentSucceeded(
                    **header,
                    payment_hash=p.hex("payment_hash", "payment_hash", h),
                )
            case RecordShape.LNV2_OUTGOING_PAYMENT_STARTED:
                return Lnv2OutgoingPaymentStarted(
                    **header,
                    **self._v2_contract(p, "outgoing_contract", k),
                    invoice_amount=p.amount("invoice_amount", "invoice_amount"),
                    max_delay=p.integer("max_delay", "max_delay"),
                    min_contract_amount=p.amount("min_contract_amount", "min_contract_amount"),
                    operation_start=p.timestamp("operation_start", "operation_start"),
                )
            case RecordShape.LNV2_OUTGOING_PAYMENT_SUCCEEDED:
                return Lnv2OutgoingPaymentSucceeded(
                    **header,
                    payment_image=p.payment_image("payment_image"),
                    target_federation=p.text("target_federation", "target_federation", required=False),
                )
            case RecordShape.LNV2_OUTGOING_PAYMENT_FAILED:
                return Lnv2OutgoingPaymentFailed(
                    **header,
                    payment_image=p.payment_image("payment_image"),
                    error=p.text("error", "error"),
                )
            case RecordShape.LNV2_INCOMING_PAYMENT_STARTED:
                return Lnv2IncomingPaymentStarted(
                    **header,
                    **self._v2_contract(p, "incoming_contract_commitment", k),
                    invoice_amount=p.amount("invoice_amount", "invoice_amount"),
                    operation_start=p.timestamp("operation_start", "operation_start"),
                )
            case RecordShape.LNV2_INCOMING_PAYMENT_SUCCEEDED:
                return Lnv2IncomingPaymentSucceeded(
                    **header,
                    payment_image=p.payment_image("payment_image"),
                )
            case RecordShape.LNV2_INCOMING_PAYMENT_FAILED:
                return Lnv2IncomingPaymentFailed(
                    **header,
                    payment_image=p.payment_image("payment_image"),
                    error=p.text("error", "error"),
                )
            case RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED:
                return Lnv2CompleteLightningPaymentSucceeded(
                    **header,
                    payment_image=p.payment_image("payment_image"),
                )
        raise UnknownKindError(f"No record shape for {shape}", log_id=event.log_id)

    @staticmethod
    def _v1_outgoing_contract(p: _Payload) -> dict[str, Any]:
        return {
            "contract_id": p.hex("contract_id", "contract_id", (HASH_HEX_LEN,)),
            "contract_amount": p.amount("outgoing_contract.amount", "contract_amount"),
            "gateway_key": p.hex("outgoing_contract.contract.gateway_key", "gateway_key", (KEY_HEX_LEN,)),
            "payment_hash": p.hex("outgoing_contract.contract.hash", "payment_hash", (HASH_HEX_LEN,)),
            "timelock": p.integer("outgoing_contract.contract.timelock", "timelock"),
            "user_key": p.hex("outgoing_contract.contract.user_key", "user_key", (KEY_HEX_LEN,)),
        }

    @staticmethod
    def _v2_contract(p: _Payload, prefix: str, key_len: tuple[int, ...]) -> dict[str, Any]:
        return {
            "payment_image": p.payment_image(f"{prefix}.payment_image"),
            "amount": p.amount(f"{prefix}.amount", "amount"),
            "expiration": p.integer(f"{prefix}.expiration", "expiration"),
            "claim_pk": p.hex(f"{prefix}.claim_pk", "claim_pk", key_len),
            "refund_pk": p.hex(f"{prefix}.refund_pk", "refund_pk", key_len),
            "ephemeral_pk": p.hex(f"{prefix}.ephemeral_pk", "ephemeral_pk", key_len),
        }
