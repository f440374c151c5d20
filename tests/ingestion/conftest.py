"""Shared fixtures for ingestion tests: gateway events and payloads."""

import hashlib
from typing import Any

import pytest

from gateway_etl.ingestion.application.normalizer import EventNormalizer
from gateway_etl.ingestion.domain.enums import ProtocolVersion
from gateway_etl.ingestion.domain.events import PaymentEvent
from gateway_etl.ingestion.infrastructure.record_writer import RecordWriter

FEDERATION_ID = "15db8cb4f1ec8e484d73b889372bec94812580f929e8148b7437d359af422cd3"
FEDERATION_NAME = "Alpha Federation"
BASE_TIMESTAMP = 1_700_000_000_000_000  # 2023-11-14T22:13:20Z in microseconds


def hex64(seed: str) -> str:
    """Deterministic 64-char hex string (hashes, ids)."""
    return hashlib.sha256(seed.encode()).hexdigest()


def pubkey(seed: str) -> str:
    """Deterministic 66-char compressed public key."""
    return "02" + hex64(seed)


class EventFactory:
    """Build gateway events with realistic payloads."""

    federation_id = FEDERATION_ID
    federation_name = FEDERATION_NAME

    hex64 = staticmethod(hex64)
    pubkey = staticmethod(pubkey)

    def event(
        self,
        log_id: int,
        event_kind: str,
        payload: dict[str, Any],
        *,
        version: ProtocolVersion | str = ProtocolVersion.V1,
        timestamp: int | None = None,
        federation_id: str = FEDERATION_ID,
    ) -> PaymentEvent:
        return PaymentEvent(
            log_id=log_id,
            timestamp=BASE_TIMESTAMP + log_id * 1_000_000 if timestamp is None else timestamp,
            federation_id=federation_id,
            federation_name=FEDERATION_NAME,
            protocol_version=version,
            event_kind=event_kind,
            payload=payload,
        )

    # ------------------------------------------------------------------ v1

    def v1_outgoing_started(self, contract_id: str, invoice_amount: int = 1000) -> dict[str, Any]:
        return {
            "contract_id": contract_id,
            "invoice_amount": invoice_amount,
            "operation_id": hex64(f"operation-{contract_id}"),
        }

    def v1_outgoing_terms(
        self, contract_id: str, payment_hash: str, amount: int = 1100, **extra: Any
    ) -> dict[str, Any]:
        """Payload shared by v1 outgoing succeeded and failed events."""
        return {
            "contract_id": contract_id,
            "outgoing_contract": {
                "amount": amount,
                "contract": {
                    "gateway_key": pubkey("gateway"),
                    "hash": payment_hash,
                    "timelock": 812_345,
                    "user_key": pubkey("user"),
                },
            },
            **extra,
        }

    def v1_incoming_started(
        self, contract_id: str, payment_hash: str, contract_amount: int = 990
    ) -> dict[str, Any]:
        return {
            "contract_id": contract_id,
            "contract_amount": contract_amount,
            "invoice_amount": 1000,
            "operation_id": hex64(f"operation-{contract_id}"),
            "payment_hash": payment_hash,
        }

    # ------------------------------------------------------------------ v2

    def v2_contract(self, payment_image: str, amount: int = 2000) -> dict[str, Any]:
        return {
            "payment_image": {"Hash": payment_image},
            "amount": amount,
            "expiration": 1_700_086_400,
            "claim_pk": pubkey("claim"),
            "refund_pk": pubkey("refund"),
            "ephemeral_pk": pubkey("ephemeral"),
        }

    def v2_outgoing_started(self, payment_image: str) -> dict[str, Any]:
        return {
            "operation_start": {"secs_since_epoch": 1_700_000_000, "nanos_since_epoch": 500_000},
            "outgoing_contract": self.v2_contract(payment_image),
            "min_contract_amount": 1900,
            "invoice_amount": 1800,
            "max_delay": 144,
        }

    def v2_incoming_started(self, payment_image: str) -> dict[str, Any]:
        return {
            "operation_start": BASE_TIMESTAMP,
            "incoming_contract_commitment": self.v2_contract(payment_image, amount=2500),
            "invoice_amount": 2600,
        }


@pytest.fixture
def events() -> EventFactory:
    """Factory for gateway payment events."""
    return EventFactory()


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer()


@pytest.fixture
def writer(db_session) -> RecordWriter:
    return RecordWriter(db_session)


@pytest.fixture
def verifying_writer(db_session) -> RecordWriter:
    return RecordWriter(db_session, verify_duplicates=True)
