"""SQLAlchemy models for payment records, gateway epochs, ingestion positions
and migration cursors.

Every record table is keyed by ``(log_id, gateway_epoch)``: the gateway
resets ``log_id`` on restart, the epoch tells restarts apart. Rows are
append-only.
"""

from dataclasses import fields
from datetime import UTC, datetime
from typing import Any, ClassVar

from sqlalchemy import BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gateway_etl.ingestion.domain.enums import MigrationState, RecordShape
from gateway_etl.ingestion.domain.records import RECORD_TYPES, PaymentRecord

from .base import Base

HEX_HASH = String(64)
HEX_KEY = String(66)


class PaymentRecordRow:
    """Columns shared by all 14 record tables."""

    shape: ClassVar[RecordShape]

    log_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    gateway_epoch: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    federation_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    federation_name: Mapped[str] = mapped_column(Text, nullable=False)

    def to_record(self) -> PaymentRecord:
        """Rebuild the domain record stored in this row."""
        record_type = RECORD_TYPES[self.shape]
        values = {f.name: getattr(self, f.name) for f in fields(record_type)}
        return record_type(**values)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(log_id={self.log_id}, gateway_epoch={self.gateway_epoch}, "
            f"federation_id={self.federation_id!r})>"
        )


class MigratedRowMixin:
    """Provenance columns of v2 tables, set only on rows copied from v1."""

    source_shape: Mapped[str | None] = mapped_column(String(64))
    legacy_contract_id: Mapped[str | None] = mapped_column(HEX_HASH, index=True)


# =============================================================================
# LNv1 tables
# =============================================================================


class Lnv1OutgoingPaymentStartedRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_outgoing_payment_started"
    shape = RecordShape.LNV1_OUTGOING_PAYMENT_STARTED

    contract_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    invoice_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False)


class Lnv1OutgoingPaymentSucceededRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_outgoing_payment_succeeded"
    shape = RecordShape.LNV1_OUTGOING_PAYMENT_SUCCEEDED

    contract_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    contract_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gateway_key: Mapped[str] = mapped_column(HEX_KEY, nullable=False)
    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    timelock: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_key: Mapped[str] = mapped_column(HEX_KEY, nullable=False)
    preimage: Mapped[str] = mapped_column(HEX_HASH, nullable=False)


class Lnv1OutgoingPaymentFailedRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_outgoing_payment_failed"
    shape = RecordShape.LNV1_OUTGOING_PAYMENT_FAILED

    contract_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    contract_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gateway_key: Mapped[str] = mapped_column(HEX_KEY, nullable=False)
    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    timelock: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_key: Mapped[str] = mapped_column(HEX_KEY, nullable=False)
    error_reason: Mapped[str | None] = mapped_column(Text)


class Lnv1IncomingPaymentStartedRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_incoming_payment_started"
    shape = RecordShape.LNV1_INCOMING_PAYMENT_STARTED

    contract_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    contract_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    invoice_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation_id: Mapped[str] = mapped_column(HEX_HASH, nullable=False)
    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)


class Lnv1IncomingPaymentSucceededRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_incoming_payment_succeeded"
    shape = RecordShape.LNV1_INCOMING_PAYMENT_SUCCEEDED

    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    preimage: Mapped[str] = mapped_column(HEX_HASH, nullable=False)


class Lnv1IncomingPaymentFailedRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_incoming_payment_failed"
    shape = RecordShape.LNV1_INCOMING_PAYMENT_FAILED

    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)
    error_reason: Mapped[str] = mapped_column(Text, nullable=False)


class Lnv1CompleteLightningPaymentSucceededRow(PaymentRecordRow, Base):
    __tablename__ = "lnv1_complete_lightning_payment_succeeded"
    shape = RecordShape.LNV1_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED

    payment_hash: Mapped[str] = mapped_column(HEX_HASH, nullable=False, index=True)


# =============================================================================
# LNv2 tables
# =============================================================================


class Lnv2OutgoingPaymentStartedRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_outgoing_payment_started"
    shape = RecordShape.LNV2_OUTGOING_PAYMENT_STARTED

    invoice_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_delay: Mapped[int | None] = mapped_column(BigInteger)
    min_contract_amount: Mapped[int | None] = mapped_column(BigInteger)
    operation_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int | None] = mapped_column(BigInteger)
    claim_pk: Mapped[str | None] = mapped_column(HEX_KEY)
    ephemeral_pk: Mapped[str | None] = mapped_column(HEX_KEY)
    expiration: Mapped[int | None] = mapped_column(BigInteger)
    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)
    refund_pk: Mapped[str | None] = mapped_column(HEX_KEY)


class Lnv2OutgoingPaymentSucceededRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_outgoing_payment_succeeded"
    shape = RecordShape.LNV2_OUTGOING_PAYMENT_SUCCEEDED

    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)
    target_federation: Mapped[str | None] = mapped_column(String(128))


class Lnv2OutgoingPaymentFailedRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_outgoing_payment_failed"
    shape = RecordShape.LNV2_OUTGOING_PAYMENT_FAILED

    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)
    error: Mapped[str | None] = mapped_column(Text)


class Lnv2IncomingPaymentStartedRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_incoming_payment_started"
    shape = RecordShape.LNV2_INCOMING_PAYMENT_STARTED

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    claim_pk: Mapped[str | None] = mapped_column(HEX_KEY)
    ephemeral_pk: Mapped[str | None] = mapped_column(HEX_KEY)
    expiration: Mapped[int | None] = mapped_column(BigInteger)
    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)
    refund_pk: Mapped[str | None] = mapped_column(HEX_KEY)
    invoice_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    operation_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class Lnv2IncomingPaymentSucceededRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_incoming_payment_succeeded"
    shape = RecordShape.LNV2_INCOMING_PAYMENT_SUCCEEDED

    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)


class Lnv2IncomingPaymentFailedRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_incoming_payment_failed"
    shape = RecordShape.LNV2_INCOMING_PAYMENT_FAILED

    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)
    error: Mapped[str] = mapped_column(Text, nullable=False)


class Lnv2CompleteLightningPaymentSucceededRow(MigratedRowMixin, PaymentRecordRow, Base):
    __tablename__ = "lnv2_complete_lightning_payment_succeeded"
    shape = RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED

    payment_image: Mapped[str | None] = mapped_column(HEX_KEY, index=True)


RECORD_TABLES: dict[RecordShape, type[Any]] = {
    row_type.shape: row_type
    for row_type in (
        Lnv1OutgoingPaymentStartedRow,
        Lnv1OutgoingPaymentSucceededRow,
        Lnv1OutgoingPaymentFailedRow,
        Lnv1IncomingPaymentStartedRow,
        Lnv1IncomingPaymentSucceededRow,
        Lnv1IncomingPaymentFailedRow,
        Lnv1CompleteLightningPaymentSucceededRow,
        Lnv2OutgoingPaymentStartedRow,
        Lnv2OutgoingPaymentSucceededRow,
        Lnv2OutgoingPaymentFailedRow,
        Lnv2IncomingPaymentStartedRow,
        Lnv2IncomingPaymentSucceededRow,
        Lnv2IncomingPaymentFailedRow,
        Lnv2CompleteLightningPaymentSucceededRow,
    )
}


def table_for(shape: RecordShape) -> type[Any]:
    """Mapped class storing records of ``shape``."""
    return RECORD_TABLES[shape]


# =============================================================================
# Epochs, ingestion positions and migration cursors
# =============================================================================


class GatewayEpoch(Base):
    """Registry of every epoch handed out, so none is ever reused."""

    __tablename__ = "gateway_epochs"

    epoch: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    def __repr__(self) -> str:
        return f"<GatewayEpoch(epoch={self.epoch})>"


class IngestionPosition(Base):
    """Highest log id of a federation handled under one gateway epoch.

    Handled means inserted, already present, skipped or dropped. A write that
    keeps failing ends the pass below it, so polling resumes at that event.
    """

    __tablename__ = "ingestion_positions"

    federation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    gateway_epoch: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_log_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<IngestionPosition(federation_id={self.federation_id!r}, "
            f"gateway_epoch={self.gateway_epoch}, last_log_id={self.last_log_id})>"
        )


class MigrationCursor(Base):
    """Progress of the v1 to v2 migration of one federation.

    ``(cursor_epoch, cursor_log_id)`` is the key of the last v1 row whose v2
    copy has been durably committed. Both are NULL until the first batch.
    """

    __tablename__ = "migration_cursors"

    federation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MigrationState.NOT_STARTED.value
    )
    cursor_epoch: Mapped[int | None] = mapped_column(Integer)
    cursor_log_id: Mapped[int | None] = mapped_column(BigInteger)
    migrated_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    gap_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def position(self) -> tuple[int, int] | None:
        """Checkpointed ``(gateway_epoch, log_id)``, None before the first batch."""
        if self.cursor_epoch is None or self.cursor_log_id is None:
            return None
        return (self.cursor_epoch, self.cursor_log_id)

    def __repr__(self) -> str:
        return (
            f"<MigrationCursor(federation_id={self.federation_id!r}, state='{self.state}', "
            f"position={self.position})>"
        )
