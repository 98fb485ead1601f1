"""Repository layer for reconciliation persistence operations."""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import AlreadyResolvedError, NotFoundError, SetupFailure
from .models import (
    ReconciliationJob,
    ReconciliationCheck,
    ReconciliationDiscrepancy,
    ReconciliationWatermark,
    WebhookEvent,
    Transaction,
    Customer,
    JobStatus,
    ProcessingState,
    ACTIVE_JOB_STATUSES,
    active_discrepancy_key,
)

logger = logging.getLogger(__name__)

# Upper bound for premium job listings
DEFAULT_JOB_LIST_LIMIT = 50


class JobRepository:
    """Repository for ReconciliationJob operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        job_type: str,
        config: Optional[Dict[str, Any]] = None,
        created_by: str = "system",
        status: str = JobStatus.PENDING.value,
    ) -> ReconciliationJob:
        """Create a new reconciliation job record.

        Args:
            job_type: Reconciliation type (config name, "all" or "premium_reconciliation").
            config: Parameters used to start the run.
            created_by: Actor identifier.
            status: Initial job status.

        Returns:
            Created ReconciliationJob instance.
        """
        job = ReconciliationJob(
            type=job_type,
            status=status,
            created_by=created_by,
            created_at=datetime.utcnow(),
        )
        job.config = config

        self.session.add(job)
        await self.session.flush()

        logger.info(f"Created reconciliation job {job.id} ({job_type}) with status {status}")
        return job

    async def get(self, job_id: str) -> Optional[ReconciliationJob]:
        """Get a job by its ID.

        Args:
            job_id: Job ID.

        Returns:
            ReconciliationJob instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(ReconciliationJob).where(ReconciliationJob.id == job_id)
        )
        return result.scalar_one_or_none()

    async def update(
        self,
        job: ReconciliationJob,
        status: Optional[str] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        results: Optional[Dict[str, Any]] = None,
        errors: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationJob:
        """Apply a patch to a job that has not reached a terminal state.

        Raises:
            SetupFailure: If the job is already completed or failed.
        """
        if job.is_terminal:
            raise SetupFailure(f"Job {job.id} is already {job.status}")

        if status is not None:
            job.status = status
        if started_at is not None:
            job.started_at = started_at
        if completed_at is not None:
            job.completed_at = completed_at
        if results is not None:
            job.results = results
        if errors is not None:
            job.errors = errors

        await self.session.flush()
        logger.info(f"Updated reconciliation job {job.id} status to {job.status}")
        return job

    async def find_first_active(
        self,
        job_type: str,
        billing_period: Optional[str] = None,
    ) -> Optional[ReconciliationJob]:
        """Find the newest pending or running job of a type.

        Args:
            job_type: Job type to match.
            billing_period: When given, only jobs started for this period match.

        Returns:
            The active job, or None.
        """
        result = await self.session.execute(
            select(ReconciliationJob)
            .where(
                and_(
                    ReconciliationJob.type == job_type,
                    ReconciliationJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            .order_by(ReconciliationJob.created_at.desc())
        )
        for job in result.scalars().all():
            if billing_period is None or (job.config or {}).get("billing_period") == billing_period:
                return job
        return None

    async def list_since(self, since: datetime) -> List[ReconciliationJob]:
        """List jobs created at or after a point in time, newest first."""
        result = await self.session.execute(
            select(ReconciliationJob)
            .where(ReconciliationJob.created_at >= since)
            .order_by(ReconciliationJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_by_type(
        self,
        job_type: str,
        status: Optional[str] = None,
        billing_period: Optional[str] = None,
        limit: int = DEFAULT_JOB_LIST_LIMIT,
    ) -> List[ReconciliationJob]:
        """List jobs of a type, newest first.

        Args:
            job_type: Job type to match.
            status: Optional status filter.
            billing_period: Optional billing period filter (premium jobs).
            limit: Maximum number of results.

        Returns:
            List of ReconciliationJob instances.
        """
        conditions = [ReconciliationJob.type == job_type]
        if status:
            conditions.append(ReconciliationJob.status == status)

        stmt = (
            select(ReconciliationJob)
            .where(and_(*conditions))
            .order_by(ReconciliationJob.created_at.desc())
        )
        # The period sits inside the JSON config, so it is matched after loading
        if not billing_period:
            stmt = stmt.limit(limit)

        result = await self.session.execute(stmt)
        jobs = [
            job for job in result.scalars().all()
            if not billing_period or (job.config or {}).get("billing_period") == billing_period
        ]
        return jobs[:limit]


class CheckRepository:
    """Repository for ReconciliationCheck operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        job_id: str,
        resource_type: str,
        resource_id: str,
        check_name: str,
        outcome: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationCheck:
        """Create a check record.

        Args:
            job_id: Owning job ID.
            resource_type: Resource type checked.
            resource_id: Resource external ID.
            check_name: Name of the check rule.
            outcome: match, mismatch or error.
            metadata: Extra context; the job ID is always included.

        Returns:
            Created ReconciliationCheck instance.
        """
        check = ReconciliationCheck(
            job_id=job_id,
            resource_type=resource_type,
            resource_id=resource_id,
            check_name=check_name,
            outcome=outcome,
            created_at=datetime.utcnow(),
        )
        check.check_metadata = {**(metadata or {}), "jobId": job_id}

        self.session.add(check)
        await self.session.flush()

        logger.debug(f"Recorded {outcome} for {check_name} on {resource_type} {resource_id}")
        return check

    async def list_for_job(self, job_id: str) -> List[ReconciliationCheck]:
        """List the checks of a job with their unresolved discrepancies loaded."""
        result = await self.session.execute(
            select(ReconciliationCheck)
            .where(ReconciliationCheck.job_id == job_id)
            .options(
                selectinload(
                    ReconciliationCheck.discrepancies.and_(
                        ReconciliationDiscrepancy.resolved.is_(False)
                    )
                )
            )
            .order_by(ReconciliationCheck.created_at)
        )
        return list(result.scalars().all())

    async def count_by_outcome(self, job_id: str) -> Dict[str, int]:
        """Count a job's checks per outcome."""
        result = await self.session.execute(
            select(ReconciliationCheck.outcome, func.count(ReconciliationCheck.id))
            .where(ReconciliationCheck.job_id == job_id)
            .group_by(ReconciliationCheck.outcome)
        )
        return {outcome: count for outcome, count in result.all()}


class DiscrepancyRepository:
    """Repository for ReconciliationDiscrepancy operations.

    At most one unresolved discrepancy may exist per
    (resource_type, resource_id, field); the unique ``active_key`` column
    holds that identity until the discrepancy is resolved.
    """

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, discrepancy_id: str) -> Optional[ReconciliationDiscrepancy]:
        """Get a discrepancy by ID, refreshed from the database."""
        result = await self.session.execute(
            select(ReconciliationDiscrepancy)
            .where(ReconciliationDiscrepancy.id == discrepancy_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active(
        self,
        resource_type: str,
        resource_id: str,
        field: str,
    ) -> Optional[ReconciliationDiscrepancy]:
        """Find the unresolved discrepancy for a resource field, if any."""
        result = await self.session.execute(
            select(ReconciliationDiscrepancy).where(
                ReconciliationDiscrepancy.active_key
                == active_discrepancy_key(resource_type, resource_id, field)
            )
        )
        return result.scalar_one_or_none()

    async def find_resolved_for_event(
        self,
        resource_type: str,
        resource_id: str,
        field: str,
        source_event_id: str,
    ) -> Optional[ReconciliationDiscrepancy]:
        """Find a resolved discrepancy raised from the same event for a resource field."""
        result = await self.session.execute(
            select(ReconciliationDiscrepancy)
            .where(
                and_(
                    ReconciliationDiscrepancy.resource_type == resource_type,
                    ReconciliationDiscrepancy.resource_id == resource_id,
                    ReconciliationDiscrepancy.field == field,
                    ReconciliationDiscrepancy.source_event_id == source_event_id,
                    ReconciliationDiscrepancy.resolved.is_(True),
                )
            )
            .order_by(ReconciliationDiscrepancy.detected_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_unresolved(
        self,
        check_id: str,
        resource_type: str,
        resource_id: str,
        field: str,
        authoritative_value: Any,
        local_value: Any,
        severity: str = "medium",
        source_event_id: Optional[str] = None,
    ) -> Tuple[ReconciliationDiscrepancy, bool]:
        """Create an unresolved discrepancy unless one is already active.

        Args:
            check_id: Owning check ID.
            resource_type: Resource type.
            resource_id: Resource external ID.
            field: Mismatched field.
            authoritative_value: Value reported by the event; stored JSON-serialized.
            local_value: Value held locally; stored JSON-serialized.
            severity: Severity of the owning check.
            source_event_id: Event the mismatch was detected from.

        Returns:
            Tuple of (discrepancy, created). When an unresolved discrepancy
            already exists for the identity, or one raised from the same
            event was already resolved, it is returned with created=False.
        """
        existing = await self.find_active(resource_type, resource_id, field)
        if existing is not None:
            return existing, False

        if source_event_id:
            resolved = await self.find_resolved_for_event(resource_type, resource_id, field, source_event_id)
            if resolved is not None:
                logger.debug(
                    f"Event {source_event_id} already settled {resource_type} {resource_id} {field}"
                )
                return resolved, False

        discrepancy = ReconciliationDiscrepancy(
            check_id=check_id,
            resource_type=resource_type,
            resource_id=resource_id,
            field=field,
            severity=severity,
            authoritative_value=json.dumps(authoritative_value, default=str),
            local_value=json.dumps(local_value, default=str),
            source_event_id=source_event_id,
            resolved=False,
            active_key=active_discrepancy_key(resource_type, resource_id, field),
            detected_at=datetime.utcnow(),
        )

        try:
            async with self.session.begin_nested():
                self.session.add(discrepancy)
                await self.session.flush()
        except IntegrityError:
            # Another writer inserted the same identity first
            existing = await self.find_active(resource_type, resource_id, field)
            if existing is None:
                raise
            logger.debug(f"Discrepancy for {resource_type} {resource_id} {field} already active")
            return existing, False

        logger.info(
            f"Created discrepancy {discrepancy.id} for {resource_type} {resource_id} "
            f"field {field}"
        )
        return discrepancy, True

    async def resolve(
        self,
        discrepancy_id: str,
        resolved_by: str,
        resolution: Dict[str, Any],
    ) -> ReconciliationDiscrepancy:
        """Mark a discrepancy resolved.

        The update only matches rows that are still unresolved, so of two
        concurrent resolutions exactly one succeeds.

        Args:
            discrepancy_id: Discrepancy ID.
            resolved_by: "system" or "manual".
            resolution: Structured resolution (type and details).

        Returns:
            The resolved ReconciliationDiscrepancy.

        Raises:
            NotFoundError: If no discrepancy has this ID.
            AlreadyResolvedError: If it was already resolved.
        """
        result = await self.session.execute(
            update(ReconciliationDiscrepancy)
            .where(
                and_(
                    ReconciliationDiscrepancy.id == discrepancy_id,
                    ReconciliationDiscrepancy.resolved.is_(False),
                )
            )
            .values(
                resolved=True,
                resolved_at=datetime.utcnow(),
                resolved_by=resolved_by,
                resolution_json=json.dumps(resolution, default=str),
                active_key=None,
            )
            .execution_options(synchronize_session=False)
        )

        discrepancy = await self.get(discrepancy_id)
        if result.rowcount == 0:
            if discrepancy is None:
                raise NotFoundError("Discrepancy", discrepancy_id)
            raise AlreadyResolvedError(discrepancy_id)

        logger.info(f"Discrepancy {discrepancy_id} resolved by {resolved_by}")
        return discrepancy

    async def list_unresolved_for_job(self, job_id: str) -> List[ReconciliationDiscrepancy]:
        """List unresolved discrepancies attached to the checks of a job."""
        result = await self.session.execute(
            select(ReconciliationDiscrepancy)
            .join(ReconciliationCheck, ReconciliationDiscrepancy.check_id == ReconciliationCheck.id)
            .where(
                and_(
                    ReconciliationCheck.job_id == job_id,
                    ReconciliationDiscrepancy.resolved.is_(False),
                )
            )
            .order_by(ReconciliationDiscrepancy.detected_at)
        )
        return list(result.scalars().all())

    async def list_for_job(self, job_id: str) -> List[ReconciliationDiscrepancy]:
        """List every discrepancy attached to the checks of a job."""
        result = await self.session.execute(
            select(ReconciliationDiscrepancy)
            .join(ReconciliationCheck, ReconciliationDiscrepancy.check_id == ReconciliationCheck.id)
            .where(ReconciliationCheck.job_id == job_id)
            .order_by(ReconciliationDiscrepancy.detected_at)
        )
        return list(result.scalars().all())

    async def list_unresolved(
        self,
        severity: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[ReconciliationDiscrepancy]:
        """List unresolved discrepancies, optionally by severity and detection time."""
        conditions = [ReconciliationDiscrepancy.resolved.is_(False)]
        if severity:
            conditions.append(ReconciliationDiscrepancy.severity == severity)
        if since:
            conditions.append(ReconciliationDiscrepancy.detected_at >= since)

        result = await self.session.execute(
            select(ReconciliationDiscrepancy)
            .where(and_(*conditions))
            .order_by(ReconciliationDiscrepancy.detected_at.desc())
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    """Repository for stored provider webhook events."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        event_id: str,
        event_type: str,
        resource_type: Optional[str],
        resource_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        processing_state: str = ProcessingState.QUEUED.value,
        event_timestamp: Optional[datetime] = None,
    ) -> WebhookEvent:
        """Store a webhook event.

        Args:
            event_id: Provider event ID (unique).
            event_type: Event topic, e.g. "transfer_completed".
            resource_type: Affected resource type.
            resource_id: Affected resource external ID.
            payload: Event payload.
            metadata: Extra processing context.
            processing_state: Initial processing state.
            event_timestamp: When the provider emitted the event.

        Returns:
            Created WebhookEvent instance.
        """
        now = datetime.utcnow()
        event = WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            processing_state=processing_state,
            event_timestamp=event_timestamp or now,
            created_at=now,
        )
        event.payload = payload
        event.event_metadata = metadata

        self.session.add(event)
        await self.session.flush()

        logger.debug(f"Stored webhook event {event_id} ({event_type})")
        return event

    async def list_since(
        self,
        resource_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        processing_state: Optional[str] = ProcessingState.COMPLETED.value,
        until: Optional[datetime] = None,
    ) -> List[WebhookEvent]:
        """List events at or after a timestamp, oldest first.

        Args:
            resource_type: Optional resource type filter.
            since: Optional lower bound on the event timestamp.
            limit: Optional maximum number of events.
            processing_state: Only events in this state; None for any.
            until: Optional inclusive upper bound on the event timestamp.

        Returns:
            List of WebhookEvent instances.
        """
        conditions = []
        if resource_type:
            conditions.append(WebhookEvent.resource_type == resource_type)
        if since:
            conditions.append(WebhookEvent.event_timestamp >= since)
        if until:
            conditions.append(WebhookEvent.event_timestamp <= until)
        if processing_state:
            conditions.append(WebhookEvent.processing_state == processing_state)

        stmt = select(WebhookEvent).order_by(WebhookEvent.event_timestamp, WebhookEvent.created_at)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        if limit:
            stmt = stmt.limit(limit)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class TransactionRepository:
    """Repository for locally persisted transfers."""

    # Statuses counted as collected premium
    FINAL_STATUSES = ("processed",)
    NON_FINAL_STATUSES = ("pending", "processing")

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_external_id(self, external_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.external_id == external_id)
        )
        return result.scalar_one_or_none()

    async def list_collected(
        self,
        start: datetime,
        end: datetime,
        include_pending: bool = False,
    ) -> List[Transaction]:
        """List positive-amount transfers collected within a window.

        Args:
            start: Window start (inclusive).
            end: Window end (inclusive).
            include_pending: Also count transfers that are not yet final.

        Returns:
            List of Transaction instances ordered by collection time.
        """
        statuses = list(self.FINAL_STATUSES)
        if include_pending:
            statuses.extend(self.NON_FINAL_STATUSES)

        collected_at = func.coalesce(Transaction.processed_at, Transaction.created_at)
        result = await self.session.execute(
            select(Transaction)
            .where(
                and_(
                    Transaction.status.in_(statuses),
                    Transaction.amount > 0,
                    collected_at >= start,
                    collected_at <= end,
                )
            )
            .order_by(collected_at)
        )
        return list(result.scalars().all())


class CustomerRepository:
    """Repository for locally persisted customers."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get_by_external_id(self, external_id: str) -> Optional[Customer]:
        result = await self.session.execute(
            select(Customer).where(Customer.external_id == external_id)
        )
        return result.scalar_one_or_none()


class WatermarkRepository:
    """Repository for per-config event watermarks."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def get(self, config_name: str) -> Optional[ReconciliationWatermark]:
        return await self.session.get(ReconciliationWatermark, config_name)

    async def set(
        self,
        config_name: str,
        last_event_at: datetime,
        last_event_id: Optional[str] = None,
    ) -> ReconciliationWatermark:
        """Advance the watermark of a config to a strictly later event."""
        watermark = await self.get(config_name)
        if watermark is None:
            watermark = ReconciliationWatermark(
                config_name=config_name,
                last_event_at=last_event_at,
                last_event_id=last_event_id,
                updated_at=datetime.utcnow(),
            )
            self.session.add(watermark)
        elif last_event_at > watermark.last_event_at:
            watermark.last_event_at = last_event_at
            watermark.last_event_id = last_event_id
            watermark.updated_at = datetime.utcnow()

        await self.session.flush()
        logger.debug(f"Watermark for {config_name} at {watermark.last_event_at.isoformat()}")
        return watermark
