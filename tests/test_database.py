"""Tests for database models and repository layer."""

import json
import os
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from recon_sdk.database import (
    CheckOutcome,
    CheckRepository,
    DiscrepancyRepository,
    JobRepository,
    JobStatus,
    ProcessingState,
    Transaction,
    TransactionRepository,
    WatermarkRepository,
    WebhookEventRepository,
    close_db,
    get_async_session_factory,
    get_database_url,
    init_db,
    redact_url,
)
from recon_sdk.errors import AlreadyResolvedError, NotFoundError, SetupFailure


@pytest.fixture
async def check(db_session):
    """A mismatch check owned by a fresh job."""
    job = await JobRepository(db_session).create(job_type="transfer_status_reconciliation")
    return await CheckRepository(db_session).create(
        job_id=job.id,
        resource_type="transfer",
        resource_id="transfer-123",
        check_name="transfer_status_match",
        outcome=CheckOutcome.MISMATCH.value,
        metadata={"eventId": "evt_1"},
    )


class TestReconciliationJobModel:
    """Tests for the ReconciliationJob model."""

    async def test_create_job(self, db_session):
        repo = JobRepository(db_session)
        job = await repo.create(
            job_type="all",
            config={"type": "reconciliation", "configs": ["transfer_status_reconciliation"]},
            created_by="api",
        )

        assert job.id is not None
        assert job.status == "pending"
        assert job.created_by == "api"
        assert job.config["configs"] == ["transfer_status_reconciliation"]
        assert job.results is None

    async def test_job_to_dict(self, db_session):
        job = await JobRepository(db_session).create(job_type="all")
        data = job.to_dict()

        assert data["id"] == job.id
        assert data["type"] == "all"
        assert data["status"] == "pending"
        assert data["completed_at"] is None


class TestJobRepository:
    """Tests for JobRepository."""

    async def test_update_status_and_results(self, db_session):
        repo = JobRepository(db_session)
        job = await repo.create(job_type="all")

        now = datetime.utcnow()
        await repo.update(job, status=JobStatus.RUNNING.value, started_at=now)
        await repo.update(
            job,
            status=JobStatus.COMPLETED.value,
            completed_at=now,
            results={"totals": {"total_checks": 3}},
        )

        fetched = await repo.get(job.id)
        assert fetched.status == "completed"
        assert fetched.results == {"totals": {"total_checks": 3}}
        assert fetched.is_terminal

    async def test_terminal_job_is_immutable(self, db_session):
        """A completed or failed job cannot be changed again."""
        repo = JobRepository(db_session)
        job = await repo.create(job_type="all")
        await repo.update(job, status=JobStatus.FAILED.value, errors={"message": "boom"})

        with pytest.raises(SetupFailure):
            await repo.update(job, status=JobStatus.COMPLETED.value)
        assert job.status == "failed"

    async def test_get_nonexistent(self, db_session):
        assert await JobRepository(db_session).get("nonexistent") is None

    async def test_find_first_active_by_billing_period(self, db_session):
        repo = JobRepository(db_session)
        january = await repo.create(
            job_type="premium_reconciliation",
            config={"type": "premium_reconciliation", "billing_period": "2025-01"},
        )
        await repo.create(
            job_type="premium_reconciliation",
            config={"type": "premium_reconciliation", "billing_period": "2025-02"},
        )

        active = await repo.find_first_active("premium_reconciliation", "2025-01")
        assert active.id == january.id

        await repo.update(january, status=JobStatus.COMPLETED.value)
        assert await repo.find_first_active("premium_reconciliation", "2025-01") is None

    async def test_list_since_newest_first(self, db_session):
        repo = JobRepository(db_session)
        old = await repo.create(job_type="all")
        old.created_at = datetime.utcnow() - timedelta(hours=30)
        recent = await repo.create(job_type="all")
        recent.created_at = datetime.utcnow() - timedelta(hours=1)
        newest = await repo.create(job_type="all")
        await db_session.flush()

        jobs = await repo.list_since(datetime.utcnow() - timedelta(hours=24))

        assert [job.id for job in jobs] == [newest.id, recent.id]

    async def test_list_by_type_filters(self, db_session):
        repo = JobRepository(db_session)
        await repo.create(job_type="all")
        first = await repo.create(
            job_type="premium_reconciliation",
            config={"type": "premium_reconciliation", "billing_period": "2025-01"},
        )
        await repo.create(
            job_type="premium_reconciliation",
            config={"type": "premium_reconciliation", "billing_period": "2025-02"},
        )
        await repo.update(first, status=JobStatus.FAILED.value)

        assert len(await repo.list_by_type("premium_reconciliation")) == 2
        by_period = await repo.list_by_type("premium_reconciliation", billing_period="2025-01")
        assert [job.id for job in by_period] == [first.id]
        assert await repo.list_by_type("premium_reconciliation", status="completed") == []
        assert len(await repo.list_by_type("premium_reconciliation", limit=1)) == 1

    async def test_list_by_type_billing_period_ignores_json_layout(self, db_session):
        repo = JobRepository(db_session)
        compact = await repo.create(job_type="premium_reconciliation")
        compact.config_json = '{"type":"premium_reconciliation","billing_period":"2025-03"}'
        await db_session.flush()
        for _ in range(3):
            await repo.create(
                job_type="premium_reconciliation",
                config={"type": "premium_reconciliation", "billing_period": "2025-04"},
            )

        by_period = await repo.list_by_type("premium_reconciliation", billing_period="2025-03", limit=1)

        assert [job.id for job in by_period] == [compact.id]
        assert len(await repo.list_by_type("premium_reconciliation", billing_period="2025-04", limit=2)) == 2


class TestCheckRepository:
    """Tests for CheckRepository."""

    async def test_create_includes_job_id(self, db_session, check):
        assert check.check_metadata == {"eventId": "evt_1", "jobId": check.job_id}
        assert check.to_dict()["outcome"] == "mismatch"

    async def test_count_by_outcome(self, db_session, check):
        repo = CheckRepository(db_session)
        for outcome in ("match", "match", "error"):
            await repo.create(
                job_id=check.job_id,
                resource_type="transfer",
                resource_id="transfer-456",
                check_name="transfer_amount_match",
                outcome=outcome,
            )

        counts = await repo.count_by_outcome(check.job_id)
        assert counts == {"match": 2, "mismatch": 1, "error": 1}


class TestDiscrepancyRepository:
    """Tests for DiscrepancyRepository."""

    async def test_create_unresolved_serializes_values(self, db_session, check):
        repo = DiscrepancyRepository(db_session)
        discrepancy, created = await repo.create_unresolved(
            check_id=check.id,
            resource_type="transfer",
            resource_id="transfer-123",
            field="status",
            authoritative_value="completed",
            local_value="pending",
            severity="high",
        )

        assert created is True
        assert discrepancy.authoritative_value == '"completed"'
        assert discrepancy.local_value == '"pending"'
        assert discrepancy.resolved is False
        assert discrepancy.active_key == "transfer:transfer-123:status"

    async def test_create_unresolved_is_idempotent(self, db_session, check):
        """Repeated detection returns the open discrepancy instead of a new one."""
        repo = DiscrepancyRepository(db_session)
        first, created = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending"
        )
        second, created_again = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "failed", "pending"
        )

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert len(await repo.list_unresolved_for_job(check.job_id)) == 1

    async def test_resolve_once(self, db_session, check):
        repo = DiscrepancyRepository(db_session)
        discrepancy, _ = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending"
        )

        resolved = await repo.resolve(discrepancy.id, "manual", {"type": "accept_webhook", "details": {}})

        assert resolved.resolved is True
        assert resolved.resolved_by == "manual"
        assert resolved.resolved_at is not None
        assert resolved.resolution == {"type": "accept_webhook", "details": {}}
        assert resolved.active_key is None

        with pytest.raises(AlreadyResolvedError):
            await repo.resolve(discrepancy.id, "system", {"type": "auto_corrected"})

    async def test_resolve_nonexistent(self, db_session):
        with pytest.raises(NotFoundError):
            await DiscrepancyRepository(db_session).resolve("missing", "manual", {})

    async def test_new_discrepancy_after_resolution(self, db_session, check):
        """Resolving frees the identity for a later detection."""
        repo = DiscrepancyRepository(db_session)
        first, _ = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending"
        )
        await repo.resolve(first.id, "manual", {"type": "manual_override"})

        second, created = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "failed", "completed"
        )

        assert created is True
        assert second.id != first.id
        assert len(await repo.list_for_job(check.job_id)) == 2
        assert [item.id for item in await repo.list_unresolved_for_job(check.job_id)] == [second.id]

    async def test_resolved_event_is_not_reopened(self, db_session, check):
        """A mismatch raised again from an already settled event is not recreated."""
        repo = DiscrepancyRepository(db_session)
        first, _ = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending",
            source_event_id="evt_1",
        )
        await repo.resolve(first.id, "system", {"type": "auto_corrected"})

        same_event, created = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending",
            source_event_id="evt_1",
        )
        later_event, created_later = await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "failed", "pending",
            source_event_id="evt_2",
        )

        assert created is False
        assert same_event.id == first.id
        assert created_later is True
        assert later_event.source_event_id == "evt_2"
        assert later_event.to_dict()["source_event_id"] == "evt_2"

    async def test_list_unresolved_by_severity(self, db_session, check):
        repo = DiscrepancyRepository(db_session)
        await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "amount", "100.00", "99.50", severity="critical"
        )
        await repo.create_unresolved(
            check.id, "transfer", "transfer-123", "status", "completed", "pending", severity="high"
        )

        critical = await repo.list_unresolved(severity="critical")
        assert [item.field for item in critical] == ["amount"]


class TestWebhookEventRepository:
    """Tests for WebhookEventRepository."""

    async def test_list_since_filters(self, db_session):
        repo = WebhookEventRepository(db_session)
        now = datetime.utcnow()
        await repo.create(
            "evt_old", "transfer_completed", "transfer", "transfer-1",
            payload={"status": "completed"},
            processing_state=ProcessingState.COMPLETED.value,
            event_timestamp=now - timedelta(hours=5),
        )
        await repo.create(
            "evt_new", "transfer_failed", "transfer", "transfer-1",
            processing_state=ProcessingState.COMPLETED.value,
            event_timestamp=now - timedelta(minutes=5),
        )
        await repo.create(
            "evt_queued", "transfer_reconciled", "transfer", "transfer-1",
            event_timestamp=now,
        )
        await repo.create(
            "evt_customer", "customer_verified", "customer", "customer-1",
            processing_state=ProcessingState.COMPLETED.value,
            event_timestamp=now,
        )

        events = await repo.list_since(resource_type="transfer", since=now - timedelta(hours=1))
        assert [event.event_id for event in events] == ["evt_new"]

        every_state = await repo.list_since(resource_type="transfer", processing_state=None)
        assert [event.event_id for event in every_state] == ["evt_old", "evt_new", "evt_queued"]
        assert every_state[0].payload == {"status": "completed"}

        bounded = await repo.list_since(
            resource_type="transfer", since=now - timedelta(hours=6), until=now - timedelta(minutes=1),
            processing_state=None,
        )
        assert [event.event_id for event in bounded] == ["evt_old", "evt_new"]


class TestTransactionRepository:
    """Tests for TransactionRepository.list_collected."""

    async def test_list_collected_window_and_status(self, db_session):
        start = datetime(2025, 1, 1)
        end = datetime(2025, 1, 31, 23, 59, 59)
        rows = [
            ("t-processed", "processed", "100.00", datetime(2025, 1, 10)),
            ("t-pending", "pending", "50.00", datetime(2025, 1, 11)),
            ("t-failed", "failed", "75.00", datetime(2025, 1, 12)),
            ("t-outside", "processed", "20.00", datetime(2025, 2, 1)),
            ("t-zero", "processed", "0.00", datetime(2025, 1, 13)),
        ]
        for external_id, status, amount, processed_at in rows:
            db_session.add(Transaction(
                external_id=external_id,
                status=status,
                amount=Decimal(amount),
                processed_at=processed_at,
            ))
        await db_session.flush()

        repo = TransactionRepository(db_session)
        final = await repo.list_collected(start, end)
        assert [item.external_id for item in final] == ["t-processed"]

        with_pending = await repo.list_collected(start, end, include_pending=True)
        assert [item.external_id for item in with_pending] == ["t-processed", "t-pending"]


class TestWatermarkRepository:
    """Tests for WatermarkRepository."""

    async def test_watermark_never_moves_backwards(self, db_session):
        repo = WatermarkRepository(db_session)
        now = datetime.utcnow()

        await repo.set("transfer_status_reconciliation", now, "evt_2")
        await repo.set("transfer_status_reconciliation", now - timedelta(hours=1), "evt_1")

        watermark = await repo.get("transfer_status_reconciliation")
        assert watermark.last_event_at == now
        assert watermark.last_event_id == "evt_2"
        assert await repo.get("customer_state_reconciliation") is None

    async def test_equal_timestamp_keeps_first_event(self, db_session):
        repo = WatermarkRepository(db_session)
        now = datetime.utcnow()

        await repo.set("transfer_status_reconciliation", now, "evt_1")
        await repo.set("transfer_status_reconciliation", now, "evt_2")

        assert (await repo.get("transfer_status_reconciliation")).last_event_id == "evt_1"


class TestSession:
    """Tests for engine configuration and the application-wide session factory."""

    def test_database_url_default(self):
        with patch.dict(os.environ, {"DATABASE_URL": ""}):
            assert get_database_url() == "sqlite+aiosqlite:///./reconciliation.db"

    def test_database_url_uses_async_drivers(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgres://recon:secret@db:5432/recon"}):
            assert get_database_url() == "postgresql+asyncpg://recon:secret@db:5432/recon"
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite:///./local.db"}):
            assert get_database_url() == "sqlite+aiosqlite:///./local.db"
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+asyncpg://db/recon"}):
            assert get_database_url() == "postgresql+asyncpg://db/recon"

    def test_redact_url(self):
        redacted = redact_url("postgresql+asyncpg://recon:secret@db:5432/recon")

        assert "secret" not in redacted
        assert redacted.startswith("postgresql+asyncpg://recon:")

    async def test_init_and_close(self):
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            async with get_async_session_factory()() as session:
                job = await JobRepository(session).create(job_type="all")
                await session.commit()
                assert await JobRepository(session).get(job.id) is not None
        finally:
            await close_db()

        with pytest.raises(RuntimeError, match="Database not initialized"):
            get_async_session_factory()
