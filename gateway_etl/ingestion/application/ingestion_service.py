"""Ingestion pipeline: normalize and persist one stream of gateway events.

Unknown kinds are skipped and incomplete or malformed events dropped; both
are logged and counted once and the stream goes on. A write that keeps
failing transiently ends the pass at that event: the federation's ingestion
position only covers handled events, so the next poll fetches the failed
event again. Permanent storage errors stop the run.
"""

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field

from gateway_etl.exceptions import (
    InvalidFieldError,
    MissingFieldError,
    TransientStorageError,
    UnknownKindError,
)
from gateway_etl.ingestion.application.normalizer import EventNormalizer
from gateway_etl.ingestion.domain.enums import Direction, EventKind, RecordShape, WriteOutcome
from gateway_etl.ingestion.domain.events import PaymentEvent
from gateway_etl.ingestion.domain.records import dedup_key
from gateway_etl.ingestion.infrastructure.record_writer import RecordWriter
from gateway_etl.ingestion.infrastructure.repository import IngestionPositionRepository
from gateway_etl.utils.logging import clear_correlation_id, get_logger, set_correlation_id
from gateway_etl.utils.metrics import events_skipped_total
from gateway_etl.utils.retry import RetryConfig, retry_sync

logger = get_logger(__name__)


@dataclass
class IngestionStats:
    """Counters of one ingestion run."""

    received: int = 0
    inserted: int = 0
    already_present: int = 0
    unknown_kind: int = 0
    missing_field: int = 0
    invalid_field: int = 0
    storage_failed: int = 0
    timestamp_anomalies: int = 0
    duplicate_mismatches: int = 0
    per_shape: dict[str, int] = field(default_factory=dict)
    last_handled_log_id: int | None = None
    halted_at: int | None = None  # log id of the write that kept failing

    @property
    def skipped(self) -> int:
        return self.unknown_kind + self.missing_field + self.invalid_field + self.storage_failed

    def payments(self, direction: Direction, kind: EventKind) -> int:
        """Stored records of one direction and lifecycle kind."""
        total = 0
        for value, count in self.per_shape.items():
            shape = RecordShape(value)
            if shape.direction is direction and shape.kind is kind:
                total += count
        return total

    def to_dict(self) -> dict:
        return asdict(self)


class IngestionService:
    """Feed events through the normalizer and the writer under one epoch.

    Args:
        writer: Record writer; its session is used for every write
        epoch: Gateway epoch of this process
        normalizer: Normalizer, a fresh one by default
        retry_config: Retry policy for transient storage errors
        positions: Where the handled position of each federation is kept
    """

    def __init__(
        self,
        writer: RecordWriter,
        epoch: int,
        normalizer: EventNormalizer | None = None,
        retry_config: RetryConfig | None = None,
        positions: IngestionPositionRepository | None = None,
    ):
        self.writer = writer
        self.positions = positions
        self.epoch = epoch
        self.normalizer = normalizer or EventNormalizer()
        self.retry_config = retry_config or RetryConfig(
            max_retries=3,
            base_delay=0.5,
            max_delay=10.0,
            retryable_exceptions=(TransientStorageError,),
        )

    def ingest(self, events: Iterable[PaymentEvent], federation_id: str | None = None) -> IngestionStats:
        """Ingest ``events`` oldest first and advance the federation's position.

        Stops at the first event whose write keeps failing transiently; the
        position then ends just below it.

        Raises:
            PermanentStorageError: A write or the position commit failed for a
                reason retrying cannot fix
        """
        stats = IngestionStats()
        correlation_id = set_correlation_id()
        anomalies_before = self.normalizer.anomalies
        mismatches_before = self.writer.duplicate_mismatches
        logger.info(
            "ingestion_started",
            federation_id=federation_id,
            gateway_epoch=self.epoch,
            correlation_id=correlation_id,
        )

        try:
            for event in events:
                stats.received += 1
                if not self._ingest_one(event, stats):
                    stats.halted_at = event.log_id
                    logger.warning(
                        "ingestion_halted",
                        federation_id=federation_id,
                        gateway_epoch=self.epoch,
                        log_id=event.log_id,
                    )
                    break
                if stats.last_handled_log_id is None or event.log_id > stats.last_handled_log_id:
                    stats.last_handled_log_id = event.log_id

            if (
                self.positions is not None
                and federation_id is not None
                and stats.last_handled_log_id is not None
            ):
                self._save_position(self.positions, federation_id, stats.last_handled_log_id)
        finally:
            stats.timestamp_anomalies = self.normalizer.anomalies - anomalies_before
            stats.duplicate_mismatches = self.writer.duplicate_mismatches - mismatches_before
            logger.info("ingestion_finished", federation_id=federation_id, **stats.to_dict())
            clear_correlation_id()

        return stats

    def _save_position(
        self, positions: IngestionPositionRepository, federation_id: str, log_id: int
    ) -> None:
        try:
            retry_sync(
                lambda: positions.advance(federation_id, self.epoch, log_id),
                config=self.retry_config,
            )
        except TransientStorageError as e:
            # Handled events above the stored position are handled again next poll
            logger.error(
                "ingestion_position_not_saved",
                federation_id=federation_id,
                gateway_epoch=self.epoch,
                log_id=log_id,
                error=str(e),
            )

    def _ingest_one(self, event: PaymentEvent, stats: IngestionStats) -> bool:
        """Handle one event. False when its write kept failing."""
        try:
            record = self.normalizer.normalize(event)
        except UnknownKindError as e:
            stats.unknown_kind += 1
            events_skipped_total.labels(reason="unknown_kind").inc()
            logger.warning("event_skipped_unknown_kind", **e.context)
            return True
        except MissingFieldError as e:
            stats.missing_field += 1
            events_skipped_total.labels(reason="missing_field").inc()
            logger.error("event_dropped_missing_field", **e.context)
            return True
        except InvalidFieldError as e:
            stats.invalid_field += 1
            events_skipped_total.labels(reason="invalid_field").inc()
            logger.error("event_dropped_invalid_field", **e.context)
            return True

        try:
            outcome = retry_sync(lambda: self.writer.write(record, self.epoch), config=self.retry_config)
        except TransientStorageError as e:
            stats.storage_failed += 1
            events_skipped_total.labels(reason="storage_failed").inc()
            logger.error(
                "event_write_failed",
                dedup_key=dedup_key(record.log_id, self.epoch),
                shape=record.shape.value,
                error=str(e),
            )
            return False

        if outcome is WriteOutcome.INSERTED:
            stats.inserted += 1
        else:
            stats.already_present += 1
        stats.per_shape[record.shape.value] = stats.per_shape.get(record.shape.value, 0) + 1
        return True
