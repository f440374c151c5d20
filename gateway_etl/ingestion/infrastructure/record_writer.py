"""Dedup/upsert writer: idempotent single-row persistence of payment records.

A write is one insert-or-ignore keyed by ``(log_id, gateway_epoch)``,
committed on its own. A key conflict is a redelivery and reported as
``WriteOutcome.ALREADY_PRESENT``; an existing row is never updated. The
writer performs exactly one attempt: retry policy belongs to the caller.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateway_etl.ingestion.domain.enums import RecordShape, WriteOutcome
from gateway_etl.ingestion.domain.records import PaymentRecord, dedup_key
from gateway_etl.storage.database.base import storage_error_from
from gateway_etl.storage.database.models import table_for
from gateway_etl.utils.logging import get_logger
from gateway_etl.utils.metrics import duplicate_mismatches_total, records_written_total

logger = get_logger(__name__)

_KEY_COLUMNS = ["log_id", "gateway_epoch"]
_NATIVE_UPSERT = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


@dataclass(frozen=True)
class RecordOrigin:
    """Provenance of a v2 row synthesized from a v1 row."""

    source_shape: RecordShape
    legacy_contract_id: str | None = None


class RecordWriter:
    """Persist normalized records under a gateway epoch.

    Args:
        session: Database session; each write commits it
        verify_duplicates: Compare redelivered records with the stored row
    """

    def __init__(self, session: Session, *, verify_duplicates: bool = False):
        self.session = session
        self.verify_duplicates = verify_duplicates
        self.duplicate_mismatches = 0

    def write(
        self, record: PaymentRecord, epoch: int, *, origin: RecordOrigin | None = None
    ) -> WriteOutcome:
        """Insert ``record`` unless ``(log_id, epoch)`` is already stored.

        Raises:
            TransientStorageError: Connection loss, timeout or locked database
            PermanentStorageError: Any other constraint or data error
        """
        table = table_for(record.shape)
        values: dict[str, Any] = record.to_dict()
        values["gateway_epoch"] = epoch
        if origin is not None:
            values["source_shape"] = origin.source_shape.value
            values["legacy_contract_id"] = origin.legacy_contract_id

        try:
            inserted = self._insert_or_ignore(table, values)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(
                e,
                "write",
                shape=record.shape.value,
                dedup_key=dedup_key(record.log_id, epoch),
            ) from e

        outcome = WriteOutcome.INSERTED if inserted else WriteOutcome.ALREADY_PRESENT
        records_written_total.labels(shape=record.shape.value, outcome=outcome.value).inc()
        logger.debug(
            "record_written",
            shape=record.shape.value,
            dedup_key=dedup_key(record.log_id, epoch),
            outcome=outcome.value,
        )

        if outcome is WriteOutcome.ALREADY_PRESENT and self.verify_duplicates:
            self._verify(table, record, epoch)
        return outcome

    def _insert_or_ignore(self, table: type, values: dict[str, Any]) -> bool:
        dialect = self.session.get_bind().dialect.name
        upsert = _NATIVE_UPSERT.get(dialect)

        if upsert is not None:
            stmt = upsert(table.__table__).values(**values).on_conflict_do_nothing(
                index_elements=_KEY_COLUMNS
            )
            return self.session.execute(stmt).rowcount > 0

        # Other backends: look the key up, then plain insert
        key = {column: values[column] for column in _KEY_COLUMNS}
        if self.session.get(table, key) is not None:
            return False
        self.session.execute(insert(table.__table__).values(**values))
        return True

    def _verify(self, table: type, record: PaymentRecord, epoch: int) -> None:
        try:
            stored = self.session.get(
                table, {"log_id": record.log_id, "gateway_epoch": epoch}, populate_existing=True
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(e, "verify_duplicate", shape=record.shape.value) from e

        if stored is None or stored.to_record() == record:
            return

        self.duplicate_mismatches += 1
        duplicate_mismatches_total.labels(shape=record.shape.value).inc()
        logger.warning(
            "duplicate_content_mismatch",
            shape=record.shape.value,
            dedup_key=dedup_key(record.log_id, epoch),
            stored=stored.to_record().to_dict(),
            delivered=record.to_dict(),
        )
