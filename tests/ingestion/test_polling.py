"""Tests for repeated polling of the gateway payment log."""

import hashlib
import json

import httpx
import pytest
from sqlalchemy import select

from gateway_etl.exceptions import TransientStorageError
from gateway_etl.ingestion.application.history_service import PaymentHistoryService
from gateway_etl.ingestion.application.ingestion_service import IngestionService
from gateway_etl.ingestion.infrastructure.gateway_client import FederationInfo, GatewayClient
from gateway_etl.ingestion.infrastructure.repository import IngestionPositionRepository
from gateway_etl.storage.database.models import Lnv1CompleteLightningPaymentSucceededRow
from gateway_etl.utils.retry import RetryConfig

FEDERATION = FederationInfo("fed-poll", "Polling Federation")
NO_RETRY = RetryConfig(
    max_retries=0,
    base_delay=0.001,
    max_delay=0.001,
    jitter=False,
    retryable_exceptions=(TransientStorageError,),
)


def hex64(seed: str) -> str:
    return hashlib.sha256(seed.encode()).hexdigest()


def log_entry(log_id: int, event_kind: str = "complete-lightning-payment-succeeded") -> dict:
    return {
        "event_id": log_id,
        "timestamp": 1_700_000_000_000_000 + log_id,
        "module": ["ln", 1],
        "event_kind": event_kind,
        "value": {"payment_hash": hex64(str(log_id))},
    }


def serve(entries: list[dict]):
    """Payment log handler serving ``entries`` newest first."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        end = body["end_position"]
        page = [
            entry
            for entry in sorted(entries, key=lambda e: e["event_id"], reverse=True)
            if end is None or entry["event_id"] < end
        ]
        return httpx.Response(200, json=page[: body["pagination_size"]])

    return handler


class LockedWriter:
    """Writer double whose writes of ``locked`` log ids fail transiently."""

    def __init__(self, writer, locked):
        self.writer = writer
        self.locked = set(locked)

    @property
    def duplicate_mismatches(self):
        return self.writer.duplicate_mismatches

    def write(self, record, epoch, **kwargs):
        if record.log_id in self.locked:
            raise TransientStorageError("database is locked", operation="write")
        return self.writer.write(record, epoch, **kwargs)


@pytest.fixture
def poll(db_session, normalizer):
    """One poll pass: fetch from the resume point, then ingest."""
    history = PaymentHistoryService(db_session)
    positions = IngestionPositionRepository(db_session)

    async def _poll(entries, writer):
        service = IngestionService(
            writer, 0, normalizer, retry_config=NO_RETRY, positions=positions
        )
        after = history.resume_position(FEDERATION.federation_id, 0)
        transport = httpx.MockTransport(serve(entries))
        async with GatewayClient("http://gateway.test:8175", transport=transport) as client:
            events = [
                event async for event in client.iter_events(FEDERATION, after, pagination_size=2)
            ]
        return service.ingest(events, FEDERATION.federation_id)

    return _poll


def stored_log_ids(session) -> list[int]:
    stmt = select(Lnv1CompleteLightningPaymentSucceededRow.log_id).order_by(
        Lnv1CompleteLightningPaymentSucceededRow.log_id
    )
    return list(session.execute(stmt).scalars())


async def test_failed_write_is_fetched_again_next_poll(poll, writer, db_session):
    entries = [log_entry(log_id) for log_id in (1, 2, 3)]

    first = await poll(entries, LockedWriter(writer, locked={2}))

    assert first.inserted == 1
    assert first.storage_failed == 1
    assert first.halted_at == 2
    assert stored_log_ids(db_session) == [1]

    second = await poll(entries, writer)

    assert second.received == 2
    assert second.inserted == 2
    assert stored_log_ids(db_session) == [1, 2, 3]


async def test_position_stays_below_a_write_that_keeps_failing(poll, writer, db_session):
    entries = [log_entry(log_id) for log_id in (1, 2, 3)]
    locked = LockedWriter(writer, locked={2})

    passes = [await poll(entries, locked) for _ in range(3)]

    assert [p.received for p in passes] == [2, 1, 1]
    assert [p.storage_failed for p in passes] == [1, 1, 1]
    assert stored_log_ids(db_session) == [1]


async def test_skipped_event_is_counted_once(poll, writer):
    entries = [log_entry(1), log_entry(2, "channel-closed")]

    passes = [await poll(entries, writer) for _ in range(3)]

    assert [p.unknown_kind for p in passes] == [1, 0, 0]
    assert [p.received for p in passes] == [2, 0, 0]


async def test_new_events_are_picked_up(poll, writer, db_session):
    await poll([log_entry(1)], writer)

    later = await poll([log_entry(1), log_entry(2), log_entry(3)], writer)

    assert later.received == 2
    assert later.already_present == 0
    assert stored_log_ids(db_session) == [1, 2, 3]
