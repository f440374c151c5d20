"""HTTP client for the gateway's payment log API.

The gateway serves each federation's payment log newest-first in pages
bounded by ``end_position``. ``iter_events`` pages backwards until it
reaches the last log id already stored, then yields the new events
oldest-first, the order the ingestion pipeline expects.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from gateway_etl.exceptions import GatewayTransportError, NormalizationError
from gateway_etl.ingestion.domain.events import PaymentEvent
from gateway_etl.utils.config import Settings
from gateway_etl.utils.logging import get_logger
from gateway_etl.utils.retry import RetryConfig, retry_async

logger = get_logger(__name__)


@dataclass(frozen=True)
class FederationInfo:
    """A federation the gateway is connected to."""

    federation_id: str
    federation_name: str
    balance_msat: int | None = None


class GatewayClient:
    """Async client for the gateway HTTP API.

    Args:
        base_url: Gateway address, e.g. ``http://127.0.0.1:8175``
        password: Gateway password, sent as a bearer token
        timeout: Per-request timeout in seconds
        retry_config: Retry policy for connection errors
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        password: str | None = None,
        *,
        timeout: float = 30.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"User-Agent": "gateway-etl/0.3"}
        if password:
            headers["Authorization"] = f"Bearer {password}"
        self.client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/v1",
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers=headers,
            transport=transport,
        )
        self.retry_config = retry_config or RetryConfig(
            max_retries=5,
            base_delay=0.5,
            max_delay=5.0,
            retryable_exceptions=(httpx.TransportError,),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayClient":
        password = settings.gateway_password.get_secret_value() if settings.gateway_password else None
        return cls(settings.gateway_address, password, timeout=settings.gateway_timeout_seconds)

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async def send() -> httpx.Response:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response

        try:
            response = await retry_async(send, config=self.retry_config)
        except httpx.HTTPStatusError as e:
            raise GatewayTransportError(
                f"Gateway answered {e.response.status_code} to {method} {path}",
                status_code=e.response.status_code,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise GatewayTransportError(
                f"Gateway unreachable: {type(e).__name__}",
                context={"path": path},
                original_error=e,
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise GatewayTransportError(
                f"Gateway sent invalid JSON for {path}", original_error=e
            ) from e

    async def info(self) -> list[FederationInfo]:
        """Federations the gateway is connected to."""
        data = await self._request("GET", "/info")
        federations = []
        for entry in data.get("federations", []):
            federations.append(
                FederationInfo(
                    federation_id=entry["federation_id"],
                    federation_name=entry.get("federation_name") or entry["federation_id"],
                    balance_msat=entry.get("balance_msat"),
                )
            )
        return federations

    async def payment_log(
        self, federation_id: str, end_position: int | None, pagination_size: int
    ) -> list[dict[str, Any]]:
        """One page of the payment log, newest first, strictly before ``end_position``."""
        payload = {
            "federation_id": federation_id,
            "end_position": end_position,
            "pagination_size": pagination_size,
            "event_kinds": [],
        }
        entries = await self._request("POST", "/payment_log", json=payload)
        if not isinstance(entries, list):
            raise GatewayTransportError(
                "Unexpected payment_log response", context={"federation_id": federation_id}
            )
        return entries

    async def iter_events(
        self,
        federation: FederationInfo,
        after_log_id: int | None = None,
        pagination_size: int = 1000,
    ) -> AsyncIterator[PaymentEvent]:
        """Yield events newer than ``after_log_id``, oldest first."""
        collected: list[PaymentEvent] = []
        end_position: int | None = None

        while True:
            page = await self.payment_log(federation.federation_id, end_position, pagination_size)
            reached_resume_point = False
            for entry in page:
                try:
                    event = PaymentEvent.from_log_entry(
                        entry, federation.federation_id, federation.federation_name
                    )
                except NormalizationError as e:
                    raise GatewayTransportError(
                        f"Malformed payment log entry: {e.message}",
                        context={"federation_id": federation.federation_id, **e.context},
                        original_error=e,
                    ) from e
                if end_position is not None and event.log_id >= end_position:
                    continue
                if after_log_id is not None and event.log_id <= after_log_id:
                    reached_resume_point = True
                    break
                collected.append(event)

            logger.debug(
                "payment_log_page_fetched",
                federation_id=federation.federation_id,
                entries=len(page),
                end_position=end_position,
            )
            if reached_resume_point or len(page) < pagination_size or not collected:
                break
            next_position = collected[-1].log_id
            if next_position == end_position:
                break
            end_position = next_position

        logger.info(
            "payment_log_fetched",
            federation_id=federation.federation_id,
            new_events=len(collected),
            after_log_id=after_log_id,
        )
        for event in reversed(collected):
            yield event
