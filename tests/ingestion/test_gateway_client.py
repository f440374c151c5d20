"""Tests for the gateway HTTP client."""

import hashlib
import json

import httpx
import pytest

from gateway_etl.exceptions import GatewayTransportError
from gateway_etl.ingestion.domain.enums import ProtocolVersion
from gateway_etl.ingestion.infrastructure.gateway_client import FederationInfo, GatewayClient
from gateway_etl.utils.retry import RetryConfig

FAST_RETRY = RetryConfig(
    max_retries=1,
    base_delay=0.001,
    max_delay=0.001,
    jitter=False,
    retryable_exceptions=(httpx.TransportError,),
)

FEDERATION_ID = "fed-alpha"
FEDERATION_NAME = "Alpha Federation"
FEDERATION = FederationInfo(FEDERATION_ID, FEDERATION_NAME)


def hex64(seed: str) -> str:
    return hashlib.sha256(seed.encode()).hexdigest()


def log_entry(log_id: int, module: str = "ln") -> dict:
    return {
        "event_id": log_id,
        "timestamp": 1_700_000_000_000_000 + log_id,
        "module": [module, 1],
        "event_kind": "complete-lightning-payment-succeeded",
        "value": {"payment_hash": hex64(str(log_id))},
    }


class FakeGateway:
    """In-memory payment log served newest first."""

    def __init__(self, log_ids, status_code=200):
        self.entries = [log_entry(log_id) for log_id in log_ids]
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "denied"})
        if request.url.path == "/v1/info":
            return httpx.Response(
                200,
                json={
                    "federations": [
                        {
                            "federation_id": FEDERATION_ID,
                            "federation_name": FEDERATION_NAME,
                            "balance_msat": 5000,
                        },
                        {"federation_id": "fed-unnamed"},
                    ]
                },
            )

        body = json.loads(request.content)
        end = body["end_position"]
        page = [
            entry
            for entry in sorted(self.entries, key=lambda e: e["event_id"], reverse=True)
            if end is None or entry["event_id"] < end
        ]
        return httpx.Response(200, json=page[: body["pagination_size"]])


def make_client(handler) -> GatewayClient:
    return GatewayClient(
        "http://gateway.test:8175/",
        "secret",
        retry_config=FAST_RETRY,
        transport=httpx.MockTransport(handler),
    )


async def collect(client, after_log_id=None, pagination_size=2):
    return [
        event
        async for event in client.iter_events(FEDERATION, after_log_id, pagination_size=pagination_size)
    ]


async def test_info_lists_federations():
    gateway = FakeGateway([])

    async with make_client(gateway) as client:
        federations = await client.info()

    assert federations[0] == FederationInfo(FEDERATION_ID, FEDERATION_NAME, 5000)
    assert federations[1].federation_name == "fed-unnamed"
    assert gateway.requests[0].headers["Authorization"] == "Bearer secret"


async def test_iter_events_pages_back_to_the_start():
    gateway = FakeGateway(range(5))

    async with make_client(gateway) as client:
        events = await collect(client)

    assert [event.log_id for event in events] == [0, 1, 2, 3, 4]
    assert len(gateway.requests) == 3
    assert events[0].protocol_version is ProtocolVersion.V1
    assert events[0].federation_name == FEDERATION_NAME
    assert events[0].payload == {"payment_hash": hex64("0")}


async def test_iter_events_stops_at_resume_point():
    gateway = FakeGateway(range(5))

    async with make_client(gateway) as client:
        events = await collect(client, after_log_id=2)

    assert [event.log_id for event in events] == [3, 4]
    assert len(gateway.requests) == 2


async def test_iter_events_nothing_new():
    gateway = FakeGateway(range(3))

    async with make_client(gateway) as client:
        events = await collect(client, after_log_id=2)

    assert events == []
    assert len(gateway.requests) == 1


async def test_payment_log_request_body():
    gateway = FakeGateway([7])

    async with make_client(gateway) as client:
        await client.payment_log(FEDERATION_ID, 10, 50)

    body = json.loads(gateway.requests[0].content)
    assert gateway.requests[0].url.path == "/v1/payment_log"
    assert body == {
        "federation_id": FEDERATION_ID,
        "end_position": 10,
        "pagination_size": 50,
        "event_kinds": [],
    }


async def test_error_status_is_a_transport_error():
    async with make_client(FakeGateway([], status_code=401)) as client:
        with pytest.raises(GatewayTransportError) as exc_info:
            await client.info()

    assert exc_info.value.status_code == 401


async def test_connection_errors_are_retried_then_raised():
    attempts = []

    def refuse(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(refuse) as client:
        with pytest.raises(GatewayTransportError):
            await client.info()

    assert len(attempts) == 2


async def test_unexpected_payment_log_shape():
    async with make_client(lambda request: httpx.Response(200, json={"entries": []})) as client:
        with pytest.raises(GatewayTransportError):
            await client.payment_log(FEDERATION_ID, None, 10)


async def test_invalid_json():
    async with make_client(lambda request: httpx.Response(200, content=b"<html>")) as client:
        with pytest.raises(GatewayTransportError):
            await client.info()


async def test_malformed_entry_is_a_transport_error():
    broken = {"timestamp": 0, "module": ["ln", 1], "event_kind": "complete-lightning-payment-succeeded"}

    async with make_client(lambda request: httpx.Response(200, json=[broken])) as client:
        with pytest.raises(GatewayTransportError) as exc_info:
            await collect(client)

    assert exc_info.value.context["federation_id"] == FEDERATION_ID
    assert exc_info.value.context["field"] == "event_id"
