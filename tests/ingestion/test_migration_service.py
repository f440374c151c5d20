"""Tests for the resumable v1 to v2 schema migration."""

import pytest
from sqlalchemy import func, select

from gateway_etl.exceptions import (
    CursorCorruptionError,
    MigrationError,
    MigrationNotCompleteError,
    TransientStorageError,
)
from gateway_etl.ingestion.application.migration_service import SchemaMigrator, synthesize_v2
from gateway_etl.ingestion.domain.enums import (
    MigrationState,
    ProtocolVersion,
    RecordShape,
    WriteOutcome,
)
from gateway_etl.ingestion.domain.records import (
    Lnv2OutgoingPaymentStarted,
    Lnv2OutgoingPaymentSucceeded,
)
from gateway_etl.ingestion.infrastructure.repository import PaymentRecordRepository
from gateway_etl.storage.database.models import (
    Lnv2OutgoingPaymentSucceededRow,
    MigrationCursor,
    table_for,
)


@pytest.fixture
def ingest(events, normalizer, writer):
    """Normalize and store one event under the given epoch."""

    def _ingest(log_id, event_kind, payload, epoch=0, **kwargs):
        record = normalizer.normalize(events.event(log_id, event_kind, payload, **kwargs))
        assert writer.write(record, epoch) is WriteOutcome.INSERTED
        return record

    return _ingest


@pytest.fixture
def migrator(db_session, writer):
    return SchemaMigrator(db_session, writer, batch_size=2)


def _count(session, shape: RecordShape) -> int:
    table = table_for(shape)
    return session.execute(select(func.count()).select_from(table)).scalar_one()


def _seed_outgoing_payment(ingest, events, contract="c1", payment_hash="h1"):
    contract_id, hash_hex = events.hex64(contract), events.hex64(payment_hash)
    ingest(1, "outgoing-payment-started", events.v1_outgoing_started(contract_id))
    ingest(
        2,
        "outgoing-payment-succeeded",
        events.v1_outgoing_terms(contract_id, hash_hex, preimage=events.hex64("preimage")),
    )
    return contract_id, hash_hex


class TestSynthesis:
    def test_outgoing_succeeded_with_non_hex_hash_reports_gaps(self, events, normalizer):
        payload = events.v1_outgoing_terms(
            events.hex64("c1"), events.hex64("h1"), preimage=events.hex64("p")
        )
        record = normalizer.normalize(events.event(5, "outgoing-payment-succeeded", payload))
        record = type(record)(**{**record.to_dict(), "payment_hash": "not-a-hash"})

        v2, missing = synthesize_v2(record)

        assert isinstance(v2, Lnv2OutgoingPaymentSucceeded)
        assert v2.log_id == 5
        assert v2.payment_image is None
        assert set(missing) == {"payment_image", "target_federation"}

    def test_outgoing_started_without_sibling_contract(self, events, normalizer):
        record = normalizer.normalize(
            events.event(1, "outgoing-payment-started", events.v1_outgoing_started(events.hex64("c1")))
        )

        v2, missing = synthesize_v2(record)

        assert isinstance(v2, Lnv2OutgoingPaymentStarted)
        assert v2.invoice_amount == 1000
        assert v2.operation_start == record.ts
        assert "payment_image" in missing
        assert "amount" in missing

    def test_incoming_failed_keeps_error(self, events, normalizer):
        payload = {"payment_hash": events.hex64("h"), "error": "rejected"}
        record = normalizer.normalize(events.event(3, "incoming-payment-failed", payload))

        v2, missing = synthesize_v2(record)

        assert v2.shape is RecordShape.LNV2_INCOMING_PAYMENT_FAILED
        assert v2.error == "rejected"
        assert v2.payment_image == events.hex64("h")
        assert missing == []

    def test_rejects_v2_input(self, events, normalizer):
        record = normalizer.normalize(
            events.event(
                1,
                "incoming-payment-succeeded",
                {"payment_image": {"Hash": events.hex64("x")}},
                version=ProtocolVersion.V2,
            )
        )

        with pytest.raises(TypeError):
            synthesize_v2(record)


class TestMigrate:
    def test_migrates_every_v1_row(self, db_session, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        ingest(3, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("h9")})

        report = migrator.migrate(events.federation_id)

        assert report.state is MigrationState.COMPLETED
        assert report.migrated == 3
        assert report.batches == 2
        assert _count(db_session, RecordShape.LNV2_OUTGOING_PAYMENT_STARTED) == 1
        assert _count(db_session, RecordShape.LNV2_OUTGOING_PAYMENT_SUCCEEDED) == 1
        assert _count(db_session, RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED) == 1
        # Source rows stay until drop_source
        assert _count(db_session, RecordShape.LNV1_OUTGOING_PAYMENT_STARTED) == 1

    def test_started_row_takes_terms_from_sibling_contract(self, db_session, migrator, ingest, events):
        contract_id, payment_hash = _seed_outgoing_payment(ingest, events)

        migrator.migrate(events.federation_id)

        row = db_session.get(
            table_for(RecordShape.LNV2_OUTGOING_PAYMENT_STARTED), {"log_id": 1, "gateway_epoch": 0}
        )
        assert row.payment_image == payment_hash
        assert row.amount == 1100
        assert row.expiration == 812_345
        assert row.claim_pk == events.pubkey("gateway")
        assert row.refund_pk == events.pubkey("user")
        assert row.source_shape == RecordShape.LNV1_OUTGOING_PAYMENT_STARTED.value
        assert row.legacy_contract_id == contract_id

    def test_migrated_rows_keep_source_key(self, db_session, migrator, ingest, events):
        ingest(7, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("h")}, epoch=3)

        migrator.migrate(events.federation_id)

        row = db_session.get(
            table_for(RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED),
            {"log_id": 7, "gateway_epoch": 3},
        )
        assert row is not None
        assert row.payment_image == events.hex64("h")

    def test_gap_report_lists_empty_fields(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)

        report = migrator.migrate(events.federation_id)

        gaps = report.gaps_by_field()
        assert gaps["target_federation"] == 1
        assert gaps["max_delay"] == 1
        assert gaps["min_contract_amount"] == 1
        assert gaps["ephemeral_pk"] == 1
        assert "payment_image" not in gaps

    def test_cursor_checkpoints_last_row(self, db_session, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        ingest(1, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("h9")}, epoch=1)

        migrator.migrate(events.federation_id)

        cursor = db_session.get(MigrationCursor, events.federation_id)
        assert cursor.position == (1, 1)
        assert cursor.migrated_count == 3
        assert cursor.state == MigrationState.COMPLETED.value

    def test_empty_federation_completes(self, migrator):
        report = migrator.migrate("fed-without-rows")

        assert report.state is MigrationState.COMPLETED
        assert report.migrated == 0
        assert migrator.status("fed-without-rows") is MigrationState.COMPLETED

    def test_rerun_after_completion_is_a_no_op(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)

        report = migrator.migrate(events.federation_id)

        assert report.migrated == 0
        assert report.batches == 0
        assert report.state is MigrationState.COMPLETED

    def test_rows_arriving_after_completion_are_migrated(self, db_session, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)
        ingest(3, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("late")})

        report = migrator.migrate(events.federation_id)

        assert report.migrated == 1
        assert report.state is MigrationState.COMPLETED
        assert _count(db_session, RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED) == 1

    def test_other_federations_are_untouched(self, db_session, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        ingest(
            10,
            "complete-lightning-payment-succeeded",
            {"payment_hash": events.hex64("other")},
            federation_id="fed-beta",
        )

        migrator.migrate(events.federation_id)

        assert _count(db_session, RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED) == 0
        assert migrator.status("fed-beta") is MigrationState.NOT_STARTED


class TestResume:
    def test_crash_after_writes_resumes_from_checkpoint(
        self, db_session, writer, ingest, events, monkeypatch
    ):
        _seed_outgoing_payment(ingest, events)
        ingest(3, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("h3")})
        migrator = SchemaMigrator(db_session, writer, batch_size=2)

        # Fail the second checkpoint, after the batch's v2 rows were written
        original_save = migrator.cursors.save
        calls = {"n": 0}

        def flaky_save(cursor):
            calls["n"] += 1
            if calls["n"] == 2:
                db_session.rollback()
                raise TransientStorageError("connection lost", operation="cursor_write")
            return original_save(cursor)

        monkeypatch.setattr(migrator.cursors, "save", flaky_save)

        with pytest.raises(TransientStorageError):
            migrator.migrate(events.federation_id)

        cursor = db_session.get(MigrationCursor, events.federation_id, populate_existing=True)
        assert cursor.state == MigrationState.IN_PROGRESS.value
        assert cursor.position == (0, 2)

        monkeypatch.setattr(migrator.cursors, "save", original_save)
        report = migrator.migrate(events.federation_id)

        # Row 3 was written before the failed checkpoint
        assert report.state is MigrationState.COMPLETED
        assert report.migrated == 0
        assert report.already_present == 1
        assert _count(db_session, RecordShape.LNV2_COMPLETE_LIGHTNING_PAYMENT_SUCCEEDED) == 1

    def test_rewritten_rows_are_already_present(self, db_session, writer, ingest, events):
        _seed_outgoing_payment(ingest, events)
        SchemaMigrator(db_session, writer, batch_size=10).migrate(events.federation_id)

        # Rewind the cursor as if the checkpoint had been lost
        cursor = db_session.get(MigrationCursor, events.federation_id)
        cursor.state = MigrationState.NOT_STARTED.value
        cursor.cursor_epoch = None
        cursor.cursor_log_id = None
        db_session.commit()

        report = SchemaMigrator(db_session, writer, batch_size=10).migrate(events.federation_id)

        assert report.migrated == 0
        assert report.already_present == 2
        assert db_session.execute(
            select(func.count()).select_from(Lnv2OutgoingPaymentSucceededRow)
        ).scalar_one() == 1


class TestCursorValidation:
    @pytest.mark.parametrize(
        "state, epoch, log_id",
        [
            ("in_progress", None, None),
            ("in_progress", 0, None),
            ("not_started", 0, 5),
            ("completed", -1, 3),
            ("paused", 0, 1),
        ],
    )
    def test_corrupted_cursor_halts_migration(self, db_session, migrator, state, epoch, log_id):
        db_session.add(
            MigrationCursor(
                federation_id="fed-alpha",
                state=state,
                cursor_epoch=epoch,
                cursor_log_id=log_id,
                migrated_count=0,
                gap_count=0,
            )
        )
        db_session.commit()

        with pytest.raises(CursorCorruptionError) as exc_info:
            migrator.migrate("fed-alpha")

        assert exc_info.value.federation_id == "fed-alpha"

    def test_batch_size_must_be_positive(self, db_session, writer):
        with pytest.raises(ValueError):
            SchemaMigrator(db_session, writer, batch_size=0)


class TestDropSource:
    def test_refused_before_migration(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)

        with pytest.raises(MigrationNotCompleteError):
            migrator.drop_source(events.federation_id)

    def test_refused_while_in_progress(self, db_session, migrator):
        db_session.add(
            MigrationCursor(
                federation_id="fed-alpha",
                state=MigrationState.IN_PROGRESS.value,
                cursor_epoch=0,
                cursor_log_id=4,
                migrated_count=4,
                gap_count=0,
            )
        )
        db_session.commit()

        with pytest.raises(MigrationNotCompleteError):
            migrator.drop_source("fed-alpha")

    def test_drops_v1_rows_after_completion(self, db_session, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)

        deleted = migrator.drop_source(events.federation_id)

        assert deleted == 2
        assert _count(db_session, RecordShape.LNV1_OUTGOING_PAYMENT_STARTED) == 0
        assert _count(db_session, RecordShape.LNV2_OUTGOING_PAYMENT_STARTED) == 1
        assert migrator.status(events.federation_id) is MigrationState.SOURCE_DROPPED

    def test_refused_when_rows_arrived_after_completion(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)
        ingest(3, "complete-lightning-payment-succeeded", {"payment_hash": events.hex64("late")})

        with pytest.raises(MigrationNotCompleteError):
            migrator.drop_source(events.federation_id)

    def test_second_drop_is_rejected(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)
        migrator.drop_source(events.federation_id)

        with pytest.raises(MigrationError):
            migrator.drop_source(events.federation_id)

    def test_migrate_after_drop_does_nothing(self, migrator, ingest, events):
        _seed_outgoing_payment(ingest, events)
        migrator.migrate(events.federation_id)
        migrator.drop_source(events.federation_id)

        report = migrator.migrate(events.federation_id)

        assert report.state is MigrationState.SOURCE_DROPPED
        assert report.migrated == 0
        assert PaymentRecordRepository(migrator.session).has_v1_rows_after(
            events.federation_id, None
        ) is False
