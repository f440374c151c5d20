"""Schema migrator: copy a federation's v1 records into the v2 tables.

State machine per federation, persisted in ``migration_cursors``::

    NOT_STARTED → IN_PROGRESS(cursor) → COMPLETED → SOURCE_DROPPED

Each batch re-reads the cursor, synthesizes v2 rows for the next v1 rows in
``(gateway_epoch, log_id)`` order, writes them through the record writer
under the source row's key, and only then commits the cursor. A crash
resumes from the last checkpoint; rows of an interrupted batch are written
again and come back as ``ALREADY_PRESENT``.

v2 fields with no recoverable v1 value stay empty and are reported as
``PartialFieldLoss``, never fabricated. Source rows are deleted only by
the explicit ``drop_source`` step.
"""

import re
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateway_etl.exceptions import (
    CursorCorruptionError,
    MigrationError,
    MigrationNotCompleteError,
)
from gateway_etl.ingestion.domain.enums import MigrationState, RecordShape, WriteOutcome
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
from gateway_etl.ingestion.infrastructure.record_writer import RecordOrigin, RecordWriter
from gateway_etl.ingestion.infrastructure.repository import (
    MigrationCursorRepository,
    PaymentRecordRepository,
)
from gateway_etl.storage.database.base import storage_error_from
from gateway_etl.storage.database.models import MigrationCursor
from gateway_etl.utils.logging import get_logger
from gateway_etl.utils.metrics import migrated_records_total, migration_field_gaps_total

logger = get_logger(__name__)

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")

V1ContractTerms = Lnv1OutgoingPaymentSucceeded | Lnv1OutgoingPaymentFailed


@dataclass(frozen=True)
class PartialFieldLoss:
    """A v2 field left empty on a migrated row."""

    log_id: int
    gateway_epoch: int
    source_shape: RecordShape
    target_shape: RecordShape
    field: str


@dataclass
class MigrationReport:
    """Outcome of one ``migrate`` call."""

    federation_id: str
    state: MigrationState = MigrationState.NOT_STARTED
    migrated: int = 0
    already_present: int = 0
    batches: int = 0
    gaps: list[PartialFieldLoss] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.state in (MigrationState.COMPLETED, MigrationState.SOURCE_DROPPED)

    def gaps_by_field(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for gap in self.gaps:
            counts[gap.field] = counts.get(gap.field, 0) + 1
        return counts


def _image_from_hash(payment_hash: str | None) -> str | None:
    """A v1 payment hash doubles as a v2 hash payment image when well formed."""
    if payment_hash is None:
        return None
    candidate = payment_hash.lower()
    return candidate if _HASH_RE.match(candidate) else None


def synthesize_v2(
    record: PaymentRecord, contract: V1ContractTerms | None = None
) -> tuple[PaymentRecord, list[str]]:
    """Build the v2 counterpart of a v1 record.

    ``contract`` is the sibling outgoing succeeded/failed row of an outgoing
    started record; it carries the contract terms the started event lacks.

    Returns:
        The v2 record and the names of the v2 fields left empty
    """
    header = {
        "log_id": record.log_id,
        "ts": record.ts,
        "federation_id": record.federation_id,
        "federation_name": record.federation_name,
    }
    v2: PaymentRecord

    match record:
        case Lnv1OutgoingPaymentStarted():
            v2 = Lnv2OutgoingPaymentStarted(
                **header,
                invoice_amount=record.invoice_amount,
                operation_start=record.ts,
                max_delay=None,
                min_contract_amount=None,
                ephemeral_pk=None,
                payment_image=_image_from_hash(contract.payment_hash) if contract else None,
                amount=contract.contract_amount if contract else None,
                claim_pk=contract.gateway_key if contract else None,
                refund_pk=contract.user_key if contract else None,
                expiration=contract.timelock if contract else None,
            )
        case Lnv1OutgoingPaymentSucceeded():
            v2 = Lnv2OutgoingPaymentSucceeded(
                **header,
                payment_image=_image_from_hash(record.payment_hash),
                target_federation=None,
            )
        case Lnv1OutgoingPaymentFailed():
            v2 = Lnv2OutgoingPaymentFailed(
                **header,
                payment_image=_image_from_hash(record.payment_hash),
                error=record.error_reason,
            )
        case Lnv1IncomingPaymentStarted():
            v2 = Lnv2IncomingPaymentStarted(
                **header,
                amount=record.contract_amount,
                invoice_amount=record.invoice_amount,
                operation_start=record.ts,
                payment_image=_image_from_hash(record.payment_hash),
                claim_pk=None,
                refund_pk=None,
                ephemeral_pk=None,
                expiration=None,
            )
        case Lnv1IncomingPaymentSucceeded():
            v2 = Lnv2IncomingPaymentSucceeded(
                **header, payment_image=_image_from_hash(record.payment_hash)
            )
        case Lnv1IncomingPaymentFailed():
            v2 = Lnv2IncomingPaymentFailed(
                **header,
                payment_image=_image_from_hash(record.payment_hash),
                error=record.error_reason,
            )
        case Lnv1CompleteLightningPaymentSucceeded():
            v2 = Lnv2CompleteLightningPaymentSucceeded(
                **header, payment_image=_image_from_hash(record.payment_hash)
            )
        case _:
            raise TypeError(f"Not a v1 record: {type(record).__name__}")

    missing = [name for name, value in v2.to_dict().items() if value is None]
    return v2, missing


def _legacy_contract_id(record: PaymentRecord) -> str | None:
    return getattr(record, "contract_id", None)


def validate_cursor(cursor: MigrationCursor) -> MigrationState:
    """Check the cursor's state against its position.

    Raises:
        CursorCorruptionError: Unknown state, half-set position, negative
            position, or a state that contradicts the position
    """
    try:
        state = MigrationState(cursor.state)
    except ValueError as e:
        raise CursorCorruptionError(
            f"Unknown migration state '{cursor.state}'",
            federation_id=cursor.federation_id,
            original_error=e,
        ) from e

    if (cursor.cursor_epoch is None) != (cursor.cursor_log_id is None):
        raise CursorCorruptionError(
            "Cursor position is only partially set",
            federation_id=cursor.federation_id,
        )
    position = cursor.position
    if position is not None and min(position) < 0:
        raise CursorCorruptionError(
            f"Negative cursor position {position}",
            federation_id=cursor.federation_id,
        )
    if state is MigrationState.NOT_STARTED and position is not None:
        raise CursorCorruptionError(
            "Cursor has a position but the migration never started",
            federation_id=cursor.federation_id,
        )
    if state is MigrationState.IN_PROGRESS and position is None:
        raise CursorCorruptionError(
            "Migration in progress without a cursor position",
            federation_id=cursor.federation_id,
        )
    return state


class SchemaMigrator:
    """Resumable v1 to v2 migration of one federation at a time.

    Args:
        session: Database session shared with ``writer``
        writer: Record writer used for the synthesized v2 rows
        batch_size: v1 rows migrated between two cursor checkpoints
    """

    def __init__(self, session: Session, writer: RecordWriter, batch_size: int = 500):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.session = session
        self.writer = writer
        self.batch_size = batch_size
        self.records = PaymentRecordRepository(session)
        self.cursors = MigrationCursorRepository(session)

    def status(self, federation_id: str) -> MigrationState:
        cursor = self.cursors.find(federation_id)
        if cursor is None:
            return MigrationState.NOT_STARTED
        return validate_cursor(cursor)

    def migrate(self, federation_id: str) -> MigrationReport:
        """Migrate every v1 row of ``federation_id`` not yet checkpointed.

        Raises:
            CursorCorruptionError: The stored cursor is inconsistent
            StorageError: A read or write failed; rerun to resume
        """
        report = MigrationReport(federation_id=federation_id)
        logger.info("migration_started", federation_id=federation_id, batch_size=self.batch_size)

        while True:
            # Re-read before every batch: v1 rows may still be arriving
            cursor = self._load_cursor(federation_id)
            state = validate_cursor(cursor)
            report.state = state

            if state is MigrationState.SOURCE_DROPPED:
                logger.info("migration_source_already_dropped", federation_id=federation_id)
                break

            position = cursor.position
            try:
                rows = self.records.next_v1_batch(federation_id, position, self.batch_size)
                batch = [(row.gateway_epoch, row.to_record()) for row in rows]
            except SQLAlchemyError as e:
                self.session.rollback()
                raise storage_error_from(e, "migration_read", federation_id=federation_id) from e

            if not batch:
                cursor.state = MigrationState.COMPLETED.value
                self._save(cursor)
                report.state = MigrationState.COMPLETED
                break

            inserted, gaps = self._migrate_batch(batch, report)

            last_epoch, last_record = batch[-1]
            cursor.cursor_epoch = last_epoch
            cursor.cursor_log_id = last_record.log_id
            if state is MigrationState.NOT_STARTED:
                cursor.state = MigrationState.IN_PROGRESS.value
            cursor.migrated_count += inserted
            cursor.gap_count += gaps
            self._save(cursor)

            report.state = MigrationState(cursor.state)
            report.batches += 1
            logger.info(
                "migration_batch_checkpointed",
                federation_id=federation_id,
                rows=len(batch),
                inserted=inserted,
                cursor_epoch=last_epoch,
                cursor_log_id=last_record.log_id,
            )

        logger.info(
            "migration_finished",
            federation_id=federation_id,
            state=report.state.value,
            migrated=report.migrated,
            already_present=report.already_present,
            gaps=len(report.gaps),
        )
        return report

    def _migrate_batch(
        self, batch: list[tuple[int, PaymentRecord]], report: MigrationReport
    ) -> tuple[int, int]:
        inserted = 0
        gap_count = 0
        for epoch, record in batch:
            contract = None
            if isinstance(record, Lnv1OutgoingPaymentStarted):
                contract = self._contract_terms(record)

            v2, missing = synthesize_v2(record, contract)
            outcome = self.writer.write(
                v2,
                epoch,
                origin=RecordOrigin(record.shape, _legacy_contract_id(record)),
            )

            for name in missing:
                report.gaps.append(
                    PartialFieldLoss(
                        log_id=record.log_id,
                        gateway_epoch=epoch,
                        source_shape=record.shape,
                        target_shape=v2.shape,
                        field=name,
                    )
                )

            if outcome is WriteOutcome.INSERTED:
                inserted += 1
                gap_count += len(missing)
                report.migrated += 1
                migrated_records_total.labels(source_shape=record.shape.value).inc()
                for name in missing:
                    migration_field_gaps_total.labels(target_shape=v2.shape.value, field=name).inc()
            else:
                report.already_present += 1
        return inserted, gap_count

    def _contract_terms(self, record: Lnv1OutgoingPaymentStarted) -> V1ContractTerms | None:
        try:
            row = self.records.find_outgoing_contract(record.federation_id, record.contract_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(e, "migration_read", contract_id=record.contract_id) from e
        return row.to_record() if row is not None else None  # type: ignore[return-value]

    def drop_source(self, federation_id: str) -> int:
        """Delete the federation's v1 rows once the migration has completed.

        Returns:
            Number of deleted v1 rows

        Raises:
            MigrationNotCompleteError: Migration not completed, or v1 rows
                arrived after the cursor since completion
            MigrationError: The source rows were already dropped
            CursorCorruptionError: The stored cursor is inconsistent
        """
        cursor = self.cursors.find(federation_id)
        if cursor is None:
            raise MigrationNotCompleteError(
                "Migration has not started", federation_id=federation_id
            )
        state = validate_cursor(cursor)

        if state is MigrationState.SOURCE_DROPPED:
            raise MigrationError("v1 rows already dropped", federation_id=federation_id)
        if state is not MigrationState.COMPLETED:
            raise MigrationNotCompleteError(
                f"Migration is {state.value}, v1 rows cannot be dropped",
                federation_id=federation_id,
            )

        try:
            if self.records.has_v1_rows_after(federation_id, cursor.position):
                raise MigrationNotCompleteError(
                    "v1 rows were written after the migration completed; migrate again",
                    federation_id=federation_id,
                )
            deleted = self.records.delete_v1_rows(federation_id)
            cursor.state = MigrationState.SOURCE_DROPPED.value
            self.session.add(cursor)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(e, "drop_source", federation_id=federation_id) from e

        logger.warning("migration_source_dropped", federation_id=federation_id, deleted=deleted)
        return deleted

    def _load_cursor(self, federation_id: str) -> MigrationCursor:
        try:
            cursor = self.cursors.find(federation_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(e, "cursor_read", federation_id=federation_id) from e
        if cursor is None:
            cursor = MigrationCursor(
                federation_id=federation_id,
                state=MigrationState.NOT_STARTED.value,
                migrated_count=0,
                gap_count=0,
            )
        return cursor

    def _save(self, cursor: MigrationCursor) -> None:
        try:
            self.cursors.save(cursor)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(e, "cursor_write", federation_id=cursor.federation_id) from e
