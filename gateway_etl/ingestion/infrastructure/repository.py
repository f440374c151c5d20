"""Read access to payment records and migration cursors.

Provides data access abstraction following the Repository pattern. Writes of
payment records go through ``RecordWriter``; this module only reads, except
for cursor bookkeeping and the operator-gated deletion of v1 rows.
"""

import heapq
from collections.abc import Iterable, Iterator
from itertools import islice

from sqlalchemy import and_, delete, func, or_, select, union_all
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateway_etl.ingestion.domain.enums import ProtocolVersion, RecordShape
from gateway_etl.storage.database.base import get_session, storage_error_from
from gateway_etl.storage.database.models import (
    RECORD_TABLES,
    GatewayEpoch,
    IngestionPosition,
    MigrationCursor,
    PaymentRecordRow,
)

V1_SHAPES = RecordShape.for_version(ProtocolVersion.V1)
V2_SHAPES = RecordShape.for_version(ProtocolVersion.V2)

# Position of a row within a federation stream: (gateway_epoch, log_id)
Position = tuple[int, int]


def _position(row: PaymentRecordRow) -> Position:
    return (row.gateway_epoch, row.log_id)


class PaymentRecordRepository:
    """Queries spanning the 14 record tables."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def max_gateway_epoch(self) -> int | None:
        """Highest epoch stored in any record table or in the epoch registry."""
        columns = [select(table.gateway_epoch.label("epoch")) for table in RECORD_TABLES.values()]
        columns.append(select(GatewayEpoch.epoch.label("epoch")))
        combined = union_all(*columns).subquery()
        return self.session.execute(select(func.max(combined.c.epoch))).scalar_one_or_none()

    def find_v1_by_correlation_key(self, key: str) -> list[PaymentRecordRow]:
        """v1 rows whose ``contract_id`` or ``payment_hash`` equals ``key``."""
        rows: list[PaymentRecordRow] = []
        for shape in V1_SHAPES:
            table = RECORD_TABLES[shape]
            conditions = [
                getattr(table, column) == key
                for column in ("contract_id", "payment_hash")
                if hasattr(table, column)
            ]
            rows.extend(self.session.execute(select(table).where(or_(*conditions))).scalars())
        return rows

    def find_v2_by_correlation_key(self, key: str) -> list[PaymentRecordRow]:
        """v2 rows whose ``payment_image`` or ``legacy_contract_id`` equals ``key``."""
        rows: list[PaymentRecordRow] = []
        for shape in V2_SHAPES:
            table = RECORD_TABLES[shape]
            stmt = select(table).where(
                or_(table.payment_image == key, table.legacy_contract_id == key)
            )
            rows.extend(self.session.execute(stmt).scalars())
        return rows

    def find_by_federation(
        self, federation_id: str, shapes: Iterable[RecordShape] | None = None
    ) -> list[PaymentRecordRow]:
        rows: list[PaymentRecordRow] = []
        for shape in shapes or RecordShape:
            table = RECORD_TABLES[shape]
            stmt = select(table).where(table.federation_id == federation_id)
            rows.extend(self.session.execute(stmt).scalars())
        return rows

    def count_by_shape(self, federation_id: str) -> dict[RecordShape, int]:
        counts = {}
        for shape, table in RECORD_TABLES.items():
            stmt = select(func.count()).select_from(table).where(table.federation_id == federation_id)
            counts[shape] = self.session.execute(stmt).scalar_one()
        return counts

    def find_outgoing_contract(self, federation_id: str, contract_id: str) -> PaymentRecordRow | None:
        """First v1 outgoing succeeded/failed row carrying the contract terms of ``contract_id``."""
        for shape in (
            RecordShape.LNV1_OUTGOING_PAYMENT_SUCCEEDED,
            RecordShape.LNV1_OUTGOING_PAYMENT_FAILED,
        ):
            table = RECORD_TABLES[shape]
            stmt = (
                select(table)
                .where(table.federation_id == federation_id, table.contract_id == contract_id)
                .order_by(table.gateway_epoch, table.log_id)
                .limit(1)
            )
            row = self.session.execute(stmt).scalar_one_or_none()
            if row is not None:
                return row
        return None

    def next_v1_batch(
        self, federation_id: str, after: Position | None, limit: int
    ) -> list[PaymentRecordRow]:
        """Next ``limit`` v1 rows of a federation strictly after ``after``.

        Rows of all seven v1 tables are merged in ``(gateway_epoch, log_id)``
        order, the order the cursor advances in.
        """
        per_table: list[Iterator[PaymentRecordRow]] = []
        for shape in V1_SHAPES:
            table = RECORD_TABLES[shape]
            stmt = select(table).where(table.federation_id == federation_id)
            if after is not None:
                epoch, log_id = after
                stmt = stmt.where(
                    or_(
                        table.gateway_epoch > epoch,
                        and_(table.gateway_epoch == epoch, table.log_id > log_id),
                    )
                )
            stmt = stmt.order_by(table.gateway_epoch, table.log_id).limit(limit)
            per_table.append(iter(self.session.execute(stmt).scalars().all()))

        merged = heapq.merge(*per_table, key=_position)
        return list(islice(merged, limit))

    def has_v1_rows_after(self, federation_id: str, after: Position | None) -> bool:
        return bool(self.next_v1_batch(federation_id, after, 1))

    def delete_v1_rows(self, federation_id: str) -> int:
        """Delete every v1 row of a federation. The caller commits."""
        deleted = 0
        for shape in V1_SHAPES:
            table = RECORD_TABLES[shape]
            result = self.session.execute(delete(table).where(table.federation_id == federation_id))
            deleted += result.rowcount or 0
        return deleted


class MigrationCursorRepository:
    """Repository for MigrationCursor entities."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def find(self, federation_id: str) -> MigrationCursor | None:
        """Freshly read cursor of a federation, bypassing the identity map."""
        stmt = (
            select(MigrationCursor)
            .where(MigrationCursor.federation_id == federation_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def save(self, cursor: MigrationCursor) -> MigrationCursor:
        """Persist and commit the cursor."""
        self.session.add(cursor)
        self.session.commit()
        return cursor


class IngestionPositionRepository:
    """Repository for IngestionPosition entities."""

    def __init__(self, session: Session | None = None):
        self.session = session or get_session()

    def find(self, federation_id: str, gateway_epoch: int) -> int | None:
        """Last handled log id, None if nothing was handled yet."""
        position = self.session.get(IngestionPosition, (federation_id, gateway_epoch))
        return position.last_log_id if position is not None else None

    def advance(self, federation_id: str, gateway_epoch: int, log_id: int) -> int:
        """Move the position forward to ``log_id`` and commit. Never moves back.

        Raises:
            StorageError: The position could not be committed
        """
        try:
            position = self.session.get(IngestionPosition, (federation_id, gateway_epoch))
            if position is None:
                position = IngestionPosition(
                    federation_id=federation_id, gateway_epoch=gateway_epoch, last_log_id=log_id
                )
                self.session.add(position)
            elif log_id > position.last_log_id:
                position.last_log_id = log_id
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise storage_error_from(
                e, "advance_position", federation_id=federation_id, gateway_epoch=gateway_epoch
            ) from e
        return position.last_log_id
