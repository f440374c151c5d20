"""Tests for payment events, record shapes and correlation keys."""

from datetime import datetime

import pytest

from gateway_etl.exceptions import InvalidFieldError, MissingFieldError
from gateway_etl.ingestion.domain import (
    RECORD_TYPES,
    Direction,
    EventKind,
    PaymentEvent,
    ProtocolVersion,
    RecordShape,
    correlation_keys,
    dedup_key,
)
from gateway_etl.ingestion.domain.events import micros_to_datetime
from gateway_etl.ingestion.domain.records import (
    Lnv1IncomingPaymentSucceeded,
    Lnv1OutgoingPaymentFailed,
    Lnv2OutgoingPaymentSucceeded,
)
from gateway_etl.storage.database.models import RECORD_TABLES

HEADER = {
    "log_id": 3,
    "ts": datetime(2024, 1, 1),
    "federation_id": "fed",
    "federation_name": "Fed",
}


class TestRecordShape:
    def test_fourteen_shapes_each_with_a_type_and_table(self):
        assert len(RecordShape) == 14
        assert set(RECORD_TYPES) == set(RecordShape)
        assert set(RECORD_TABLES) == set(RecordShape)
        for shape, table in RECORD_TABLES.items():
            assert table.__tablename__ == shape.value

    def test_for_event(self):
        shape = RecordShape.for_event(ProtocolVersion.V2, Direction.OUTGOING, EventKind.FAILED)

        assert shape is RecordShape.LNV2_OUTGOING_PAYMENT_FAILED
        assert shape.protocol_version is ProtocolVersion.V2
        assert shape.direction is Direction.OUTGOING
        assert shape.kind is EventKind.FAILED

    def test_counterpart(self):
        assert (
            RecordShape.LNV1_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED.counterpart()
            is RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED
        )
        assert (
            RecordShape.LNV2_INCOMING_PAYMENT_STARTED.counterpart()
            is RecordShape.LNV1_INCOMING_PAYMENT_STARTED
        )

    def test_for_version_lists_seven_shapes(self):
        v1 = RecordShape.for_version(ProtocolVersion.V1)

        assert len(v1) == 7
        assert v1[0] is RecordShape.LNV1_OUTGOING_PAYMENT_STARTED


class TestPaymentEvent:
    def test_from_log_entry(self):
        entry = {
            "event_id": 12,
            "timestamp": 1_700_000_000_000_000,
            "module": ["lnv2", 2],
            "event_kind": "outgoing-payment-succeeded",
            "value": {"payment_image": {"Hash": "ab" * 32}},
        }

        event = PaymentEvent.from_log_entry(entry, "fed", "Fed")

        assert event.log_id == 12
        assert event.protocol_version is ProtocolVersion.V2
        assert event.direction is Direction.OUTGOING
        assert event.kind is EventKind.SUCCEEDED
        assert event.occurred_at == datetime(2023, 11, 14, 22, 13, 20)

    def test_wrapped_event_id(self):
        entry = {"event_id": {"0": 44}, "timestamp": 0, "module": ["ln", 1], "event_kind": "x"}

        event = PaymentEvent.from_log_entry(entry, "fed", "Fed")

        assert event.log_id == 44
        assert event.payload == {}
        assert event.direction is None

    def test_unknown_module_kept_verbatim(self):
        entry = {"event_id": 1, "timestamp": 0, "module": ["mint", 0], "event_kind": "x"}

        event = PaymentEvent.from_log_entry(entry, "fed", "Fed")

        assert event.protocol_version == "mint"

    def test_entry_without_event_id(self):
        entry = {"timestamp": 0, "module": ["ln", 1], "event_kind": "x"}

        with pytest.raises(MissingFieldError) as exc_info:
            PaymentEvent.from_log_entry(entry, "fed", "Fed")

        assert exc_info.value.field == "event_id"

    @pytest.mark.parametrize(
        ("entry", "field"),
        [
            ({"event_id": "twelve", "timestamp": 0}, "event_id"),
            ({"event_id": 12, "timestamp": "noon"}, "timestamp"),
            (["not", "an", "object"], "entry"),
        ],
    )
    def test_malformed_entry(self, entry, field):
        with pytest.raises(InvalidFieldError) as exc_info:
            PaymentEvent.from_log_entry(entry, "fed", "Fed")

        assert exc_info.value.field == field

    def test_micros_to_datetime_keeps_precision(self):
        assert micros_to_datetime(1_700_000_000_000_001) == datetime(
            2023, 11, 14, 22, 13, 20, 1
        )


class TestCorrelationKeys:
    def test_v1_outgoing_terms_carry_contract_and_hash(self):
        record = Lnv1OutgoingPaymentFailed(
            **HEADER,
            contract_id="c" * 64,
            contract_amount=1,
            gateway_key="02" + "a" * 64,
            payment_hash="h" * 64,
            timelock=1,
            user_key="02" + "b" * 64,
        )

        assert correlation_keys(record) == {"c" * 64, "h" * 64}

    def test_v1_incoming_success_only_has_hash(self):
        record = Lnv1IncomingPaymentSucceeded(**HEADER, payment_hash="h" * 64, preimage="p" * 64)

        assert correlation_keys(record) == {"h" * 64}

    def test_v2_without_image_has_no_keys(self):
        record = Lnv2OutgoingPaymentSucceeded(**HEADER, payment_image=None)

        assert correlation_keys(record) == set()

    def test_rejects_non_records(self):
        with pytest.raises(TypeError):
            correlation_keys(object())


def test_dedup_key():
    assert dedup_key(log_id=7, gateway_epoch=2) == "2:7"


def test_records_are_immutable():
    record = Lnv1IncomingPaymentSucceeded(**HEADER, payment_hash="h" * 64, preimage="p" * 64)

    with pytest.raises(AttributeError):
        record.log_id = 4
