"""Read-only payment history across both protocol generations.

During a migration window a payment can be stored twice: as its v1 row and
as the v2 row migrated from it. The federation's migration cursor decides
which copy is visible:

* v1 rows at or below the cursor are hidden (their v2 copy is durable)
* migrated v2 rows above the cursor are hidden (not yet checkpointed)
* v2 rows ingested live are always visible

so each logical record is returned exactly once.
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass

from sqlalchemy.orm import Session

from gateway_etl.ingestion.application.migration_service import validate_cursor
from gateway_etl.ingestion.domain.enums import MigrationState, ProtocolVersion, RecordShape
from gateway_etl.ingestion.domain.records import PaymentRecord
from gateway_etl.ingestion.infrastructure.repository import (
    IngestionPositionRepository,
    MigrationCursorRepository,
    PaymentRecordRepository,
    Position,
)
from gateway_etl.storage.database.models import PaymentRecordRow


@dataclass(frozen=True)
class HistoryEntry:
    """One stored record with the epoch it was written under."""

    gateway_epoch: int
    record: PaymentRecord
    source_shape: RecordShape | None = None  # v1 shape of a migrated v2 row

    @property
    def shape(self) -> RecordShape:
        return self.record.shape

    @property
    def migrated(self) -> bool:
        return self.source_shape is not None

    @property
    def sort_key(self) -> tuple:
        return (self.record.ts, self.gateway_epoch, self.record.log_id)


class PaymentHistory:
    """Lazy, finite and restartable sequence of history entries.

    Nothing is read until iteration starts; every iteration reads storage
    again and yields entries ordered by ``(ts, gateway_epoch, log_id)``.
    """

    def __init__(self, loader: Callable[[], list[HistoryEntry]]):
        self._loader = loader

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(sorted(self._loader(), key=lambda entry: entry.sort_key))

    def records(self) -> list[PaymentRecord]:
        return [entry.record for entry in self]


@dataclass(frozen=True)
class MigrationStatus:
    federation_id: str
    state: MigrationState
    position: Position | None
    migrated_count: int
    gap_count: int


class PaymentHistoryService:
    """Query surface used by operational tooling."""

    def __init__(self, session: Session):
        self.session = session
        self.records = PaymentRecordRepository(session)
        self.cursors = MigrationCursorRepository(session)
        self.positions = IngestionPositionRepository(session)

    def history_for(self, key: str) -> PaymentHistory:
        """Lifecycle of the payment identified by ``key``.

        ``key`` may be a v1 contract id or payment hash, or a v2 payment
        image. Keys are expanded through the rows they match, so a contract
        id also finds the incoming rows that only carry the payment hash,
        and the v2 rows migrated from any of them.
        """
        return PaymentHistory(lambda: self._load_history(key.lower()))

    def records_for_federation(self, federation_id: str) -> PaymentHistory:
        """Every visible record of a federation, for export."""
        return PaymentHistory(
            lambda: self._visible(self.records.find_by_federation(federation_id))
        )

    def migration_status(self, federation_id: str) -> MigrationStatus:
        cursor = self.cursors.find(federation_id)
        if cursor is None:
            return MigrationStatus(federation_id, MigrationState.NOT_STARTED, None, 0, 0)
        return MigrationStatus(
            federation_id=federation_id,
            state=validate_cursor(cursor),
            position=cursor.position,
            migrated_count=cursor.migrated_count,
            gap_count=cursor.gap_count,
        )

    def resume_position(self, federation_id: str, gateway_epoch: int) -> int | None:
        """Last log id handled for the federation in this epoch, None before the first.

        Polling fetches the events above it. Events that were skipped or dropped
        lie below it too, so they are not fetched and counted again.
        """
        return self.positions.find(federation_id, gateway_epoch)

    def shape_counts(self, federation_id: str) -> dict[RecordShape, int]:
        return self.records.count_by_shape(federation_id)

    def _load_history(self, key: str) -> list[HistoryEntry]:
        keys = {key}
        pending = {key}
        found: dict[tuple[str, int, int], PaymentRecordRow] = {}

        while pending:
            next_keys: set[str] = set()
            for candidate in pending:
                rows = self.records.find_v1_by_correlation_key(candidate)
                rows += self.records.find_v2_by_correlation_key(candidate)
                for row in rows:
                    found[(row.shape.value, row.gateway_epoch, row.log_id)] = row
                    next_keys |= _row_keys(row)
            pending = next_keys - keys
            keys |= pending

        return self._visible(list(found.values()))

    def _visible(self, rows: list[PaymentRecordRow]) -> list[HistoryEntry]:
        positions: dict[str, Position | None] = {}
        entries = []
        for row in rows:
            if row.federation_id not in positions:
                positions[row.federation_id] = self._checkpoint(row.federation_id)
            checkpoint = positions[row.federation_id]
            position = (row.gateway_epoch, row.log_id)
            source_shape = getattr(row, "source_shape", None)

            if row.shape.protocol_version is ProtocolVersion.V1:
                if checkpoint is not None and position <= checkpoint:
                    continue
            elif source_shape is not None:
                if checkpoint is None or position > checkpoint:
                    continue

            entries.append(
                HistoryEntry(
                    gateway_epoch=row.gateway_epoch,
                    record=row.to_record(),
                    source_shape=RecordShape(source_shape) if source_shape else None,
                )
            )
        return entries

    def _checkpoint(self, federation_id: str) -> Position | None:
        cursor = self.cursors.find(federation_id)
        if cursor is None:
            return None
        validate_cursor(cursor)
        return cursor.position


def _row_keys(row: PaymentRecordRow) -> set[str]:
    keys = set()
    for column in ("contract_id", "payment_hash", "payment_image", "legacy_contract_id"):
        value = getattr(row, column, None)
        if value:
            keys.add(value)
    return keys
