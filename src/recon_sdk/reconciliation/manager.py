"""Reconciliation job manager.

Creates and tracks reconciliation jobs, keeps runs of the same scope from
overlapping, and exposes history, discrepancy listing and resolution.
"""

import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..connectors.base import (
    CarrierFileSource,
    CustomerDirectory,
    EventSource,
    SnapshotStore,
    TransactionSource,
)
from ..connectors.database_adapters import (
    DatabaseEventSource,
    DatabaseTransactionSource,
    default_snapshot_stores,
)
from ..connectors.hubspot import HubSpotDirectory
from ..database import (
    CheckRepository,
    DiscrepancyRepository,
    JobRepository,
    JobStatus,
    ReconciliationDiscrepancy,
    ReconciliationJob,
    ResolvedBy,
)
from ..errors import (
    AlreadyInProgressError,
    InvalidRequestError,
    NotFoundError,
    SetupFailure,
)
from .configs import ALL_SCOPE, select_configs
from .engine import ReconciliationEngine
from .guard import SingleFlightGuard
from .models import (
    DateRange,
    DiscrepancyResolution,
    PremiumJobConfig,
    PremiumReconciliationResult,
    ReconciliationConfig,
    ReconciliationRunConfig,
    ResolutionType,
    RunSummary,
    parse_job_config,
)
from .premium import PremiumReconciliationEngine
from .report import ReconciliationReporter

logger = logging.getLogger(__name__)

PREMIUM_JOB_TYPE = "premium_reconciliation"
DEFAULT_CATCH_UP_DAYS = 30


def premium_scope(billing_period: str) -> str:
    """Single-flight scope of a premium run."""
    return f"{PREMIUM_JOB_TYPE}:{billing_period}"


def _error_payload(error: BaseException) -> Dict[str, Any]:
    return {
        "message": str(error) or type(error).__name__,
        "type": type(error).__name__,
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }


def corrective_action(
    resolution: DiscrepancyResolution,
    discrepancy: ReconciliationDiscrepancy,
) -> Dict[str, Any]:
    """Describe the follow-up a manual resolution asks for."""
    if resolution.type == ResolutionType.ACCEPT_WEBHOOK:
        return {
            "action": "update_system",
            "target": discrepancy.resource_type,
            "resourceId": discrepancy.resource_id,
            "field": discrepancy.field,
            "newState": "from_webhook",
            "value": discrepancy.authoritative_value,
        }
    if resolution.type == ResolutionType.ACCEPT_ACTUAL:
        return {
            "action": "create_corrective_webhook",
            "target": discrepancy.resource_type,
            "resourceId": discrepancy.resource_id,
            "field": discrepancy.field,
            "value": discrepancy.local_value,
        }
    return {"action": "manual", "details": resolution.details or {}}


class ReconciliationJobManager:
    """Serializes and tracks reconciliation runs.

    Each manager owns its single-flight guard unless one is injected, so
    tests can build isolated managers while an application shares one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_source: Optional[EventSource] = None,
        snapshot_stores: Optional[Dict[str, SnapshotStore]] = None,
        transaction_source: Optional[TransactionSource] = None,
        customer_directory: Optional[CustomerDirectory] = None,
        carrier_file_source: Optional[CarrierFileSource] = None,
        guard: Optional[SingleFlightGuard] = None,
        configs: Optional[List[ReconciliationConfig]] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        adapter_timeout: Optional[float] = None,
    ):
        """Initialize the manager.

        Args:
            session_factory: Factory for database sessions.
            event_source: Source of provider events. Defaults to the local event log.
            snapshot_stores: Snapshot store per resource type. Defaults to the
                local transfers and customers tables.
            transaction_source: Collected premium source. Defaults to the
                local transactions table.
            customer_directory: CRM directory. Created from HUBSPOT_* env vars
                on first premium run when not provided.
            carrier_file_source: Optional carrier remittance source.
            guard: Single-flight guard. A new one is created when not provided.
            configs: Available reconciliation configurations.
            batch_size: Engine batch size.
            batch_delay: Engine inter-batch delay in seconds.
            adapter_timeout: Per external call timeout in seconds.
        """
        self.session_factory = session_factory
        self.event_source = event_source or DatabaseEventSource(session_factory)
        self.snapshot_stores = snapshot_stores or default_snapshot_stores(session_factory)
        self.transaction_source = transaction_source or DatabaseTransactionSource(session_factory)
        self._customer_directory = customer_directory
        self.carrier_file_source = carrier_file_source
        self.guard = guard or SingleFlightGuard()
        self.configs = configs
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.adapter_timeout = adapter_timeout
        self.scheduler = None

    def _get_customer_directory(self) -> Optional[CustomerDirectory]:
        """Get or create the CRM directory.

        No directory is needed when carrier files come from a source.
        """
        if self._customer_directory is None and self.carrier_file_source is None:
            self._customer_directory = HubSpotDirectory()
        return self._customer_directory

    def _build_engine(self, session: AsyncSession) -> ReconciliationEngine:
        return ReconciliationEngine(
            session=session,
            event_source=self.event_source,
            snapshot_stores=self.snapshot_stores,
            batch_size=self.batch_size,
            batch_delay=self.batch_delay,
            adapter_timeout=self.adapter_timeout,
        )

    async def _mark_failed(
        self,
        session: AsyncSession,
        job_id: str,
        errors: Dict[str, Any],
        results: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a failure on the job, logging instead of raising if it cannot be stored."""
        try:
            await session.rollback()
            jobs = JobRepository(session)
            job = await jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            await jobs.update(
                job,
                status=JobStatus.FAILED.value,
                completed_at=datetime.utcnow(),
                results=results,
                errors=errors,
            )
            await session.commit()
        except (SQLAlchemyError, SetupFailure) as e:
            logger.error(f"Could not record failure of job {job_id}: {e}")

    # Webhook reconciliation

    async def run_reconciliation(
        self,
        config_names: Optional[List[str]] = None,
        force_run: bool = False,
        created_by: str = "system",
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> ReconciliationJob:
        """Run reconciliation for one, several or all configurations.

        Args:
            config_names: Configuration names; None or "all" runs every configuration.
            force_run: Run even when an overlapping run is in flight, and
                ignore watermarks.
            created_by: Actor recorded on the job.
            since: Explicit window start. Replaces the watermark and leaves it
                untouched.
            until: Explicit window end (inclusive).

        Returns:
            The completed ReconciliationJob.

        Raises:
            InvalidRequestError: If a configuration name is unknown or the
                window is empty.
            AlreadyInProgressError: If an overlapping run is in flight.
            SetupFailure: If the job record cannot be created.
        """
        configs = select_configs(config_names, self.configs)
        requested = [name for name in (config_names or []) if name]
        scope = requested[0] if len(requested) == 1 else ALL_SCOPE
        try:
            run_config = ReconciliationRunConfig(
                configs=[config.name for config in configs],
                force_run=force_run,
                since=since,
                until=until,
            )
        except ValidationError as e:
            raise InvalidRequestError(str(e)) from e

        self.guard.acquire(scope, force=force_run)
        try:
            async with self.session_factory() as session:
                jobs = JobRepository(session)
                try:
                    job = await jobs.create(
                        job_type=scope,
                        config=run_config.model_dump(mode="json"),
                        created_by=created_by,
                    )
                    await jobs.update(job, status=JobStatus.RUNNING.value, started_at=datetime.utcnow())
                    await session.commit()
                except SQLAlchemyError as e:
                    logger.error(f"Could not create reconciliation job for {scope}: {e}")
                    raise SetupFailure(f"Could not create reconciliation job: {e}") from e

                job_id = job.id
                logger.info(f"Reconciliation job {job_id} running for {scope}")

                try:
                    summary: RunSummary = await self._build_engine(session).run(
                        job_id,
                        configs,
                        force_run=force_run,
                        since=run_config.since,
                        until=run_config.until,
                    )
                except Exception as e:
                    logger.error(f"Reconciliation job {job_id} failed: {e}")
                    await self._mark_failed(session, job_id, _error_payload(e))
                    raise

                job = await jobs.get(job_id)
                await jobs.update(
                    job,
                    status=JobStatus.COMPLETED.value,
                    completed_at=datetime.utcnow(),
                    results=summary.to_results(),
                )
                await session.commit()
                logger.info(f"Reconciliation job {job_id} completed")
                return job
        finally:
            self.guard.release(scope)

    async def run_catch_up(
        self,
        config_names: Optional[List[str]] = None,
        days_back: int = DEFAULT_CATCH_UP_DAYS,
        created_by: str = "system",
    ) -> ReconciliationJob:
        """Reconcile the last ``days_back`` days regardless of watermarks.

        Raises:
            InvalidRequestError: If days_back is not positive or a configuration
                name is unknown.
        """
        if days_back < 1:
            raise InvalidRequestError("days_back must be at least 1")
        until = datetime.utcnow()
        logger.info(f"Starting catch-up reconciliation over the last {days_back} day(s)")
        return await self.run_reconciliation(
            config_names,
            created_by=created_by,
            since=until - timedelta(days=days_back),
            until=until,
        )

    # Premium reconciliation

    async def create_premium_job(
        self,
        billing_period: str,
        date_range: Optional[DateRange] = None,
        include_pending: bool = False,
        force_run: bool = False,
        created_by: str = "system",
    ) -> ReconciliationJob:
        """Create a pending premium reconciliation job.

        Raises:
            InvalidRequestError: If the parameters are malformed.
            AlreadyInProgressError: If a job for the period is pending or
                running and force_run is False. The error carries its job ID.
        """
        try:
            config = PremiumJobConfig(
                billing_period=billing_period,
                date_range=date_range,
                include_pending=include_pending,
                force_run=force_run,
            )
        except ValidationError as e:
            raise InvalidRequestError(str(e)) from e

        scope = premium_scope(config.billing_period)
        async with self.session_factory() as session:
            jobs = JobRepository(session)
            try:
                self.guard.acquire(scope, force=force_run)
            except AlreadyInProgressError as e:
                active = await jobs.find_first_active(PREMIUM_JOB_TYPE, config.billing_period)
                if active is not None:
                    e.job_id, e.status = active.id, active.status
                raise

            try:
                if not force_run:
                    active = await jobs.find_first_active(PREMIUM_JOB_TYPE, config.billing_period)
                    if active is not None:
                        logger.info(
                            f"Premium reconciliation for {config.billing_period} already "
                            f"{active.status} as job {active.id}"
                        )
                        raise AlreadyInProgressError(scope, job_id=active.id, status=active.status)

                try:
                    job = await jobs.create(
                        job_type=PREMIUM_JOB_TYPE,
                        config=config.model_dump(mode="json"),
                        created_by=created_by,
                    )
                    await session.commit()
                except SQLAlchemyError as e:
                    raise SetupFailure(f"Could not create premium reconciliation job: {e}") from e
                return job
            finally:
                self.guard.release(scope)

    async def run_premium_reconciliation(self, config: PremiumJobConfig) -> PremiumReconciliationResult:
        """Run the premium engine for a job configuration."""
        engine = PremiumReconciliationEngine(
            transaction_source=self.transaction_source,
            customer_directory=self._get_customer_directory(),
            carrier_file_source=self.carrier_file_source,
            lookup_timeout=self.adapter_timeout,
        )
        return await engine.run(
            billing_period=config.billing_period,
            date_range=config.date_range,
            include_pending=config.include_pending,
        )

    async def process_premium_job(self, job_id: str) -> ReconciliationJob:
        """Run a pending premium job to completion.

        The job ends completed when validation passes and failed otherwise;
        failed validation is stored as data, not raised.

        Raises:
            NotFoundError: If the job does not exist.
        """
        async with self.session_factory() as session:
            jobs = JobRepository(session)
            job = await jobs.get(job_id)
            if job is None or job.type != PREMIUM_JOB_TYPE:
                raise NotFoundError("Job", job_id)

            try:
                config = parse_job_config(job.config or {})
            except ValidationError as e:
                raise InvalidRequestError(f"Job {job_id} has an invalid configuration: {e}") from e
            if not isinstance(config, PremiumJobConfig):
                raise InvalidRequestError(f"Job {job_id} does not hold a premium configuration")

            with self.guard.hold(premium_scope(config.billing_period), force=True):
                await jobs.update(job, status=JobStatus.RUNNING.value, started_at=datetime.utcnow())
                await session.commit()
                logger.info(f"Premium reconciliation job {job_id} running for {config.billing_period}")

                try:
                    result = await self.run_premium_reconciliation(config)
                except Exception as e:
                    logger.error(f"Premium reconciliation job {job_id} failed: {e}")
                    await self._mark_failed(session, job_id, _error_payload(e))
                    raise

                job = await jobs.get(job_id)
                if result.validation.is_valid:
                    await jobs.update(
                        job,
                        status=JobStatus.COMPLETED.value,
                        completed_at=datetime.utcnow(),
                        results=result.to_results(),
                    )
                else:
                    logger.warning(
                        f"Premium reconciliation job {job_id} found "
                        f"{len(result.validation.errors)} validation error(s)"
                    )
                    await jobs.update(
                        job,
                        status=JobStatus.FAILED.value,
                        completed_at=datetime.utcnow(),
                        results=result.to_results(),
                        errors={
                            "message": "Validation errors found",
                            "errors": [
                                issue.model_dump(mode="json") for issue in result.validation.errors
                            ],
                        },
                    )
                await session.commit()
                logger.info(f"Premium reconciliation job {job_id} finished as {job.status}")
                return job

    async def run_premium(
        self,
        billing_period: str,
        date_range: Optional[DateRange] = None,
        include_pending: bool = False,
        force_run: bool = False,
        created_by: str = "system",
    ) -> ReconciliationJob:
        """Create a premium job and process it in one call."""
        job = await self.create_premium_job(
            billing_period=billing_period,
            date_range=date_range,
            include_pending=include_pending,
            force_run=force_run,
            created_by=created_by,
        )
        return await self.process_premium_job(job.id)

    async def list_premium_jobs(
        self,
        billing_period: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[ReconciliationJob]:
        """List premium jobs, newest first."""
        async with self.session_factory() as session:
            return await JobRepository(session).list_by_type(
                PREMIUM_JOB_TYPE,
                status=status,
                billing_period=billing_period,
                limit=limit,
            )

    # Queries and resolution

    async def get_job(self, job_id: str) -> ReconciliationJob:
        """Get a job.

        Raises:
            NotFoundError: If the job does not exist.
        """
        async with self.session_factory() as session:
            job = await JobRepository(session).get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def get_reconciliation_history(self, hours: int = 24) -> List[ReconciliationJob]:
        """List jobs created within the last hours, newest first."""
        if hours <= 0:
            raise InvalidRequestError("hours must be positive")
        since = datetime.utcnow() - timedelta(hours=hours)
        async with self.session_factory() as session:
            return await JobRepository(session).list_since(since)

    async def get_job_discrepancies(self, job_id: str) -> List[ReconciliationDiscrepancy]:
        """List the unresolved discrepancies found by a job.

        Raises:
            NotFoundError: If the job does not exist.
        """
        async with self.session_factory() as session:
            if await JobRepository(session).get(job_id) is None:
                raise NotFoundError("Job", job_id)
            return await DiscrepancyRepository(session).list_unresolved_for_job(job_id)

    async def resolve_discrepancy(
        self,
        discrepancy_id: str,
        resolution: DiscrepancyResolution,
    ) -> ReconciliationDiscrepancy:
        """Resolve a discrepancy manually.

        Raises:
            InvalidRequestError: If the resolution type is reserved for the system.
            NotFoundError: If the discrepancy does not exist.
            AlreadyResolvedError: If it was already resolved.
        """
        if resolution.type == ResolutionType.AUTO_CORRECTED:
            raise InvalidRequestError("auto_corrected resolutions are applied by the system only")

        async with self.session_factory() as session:
            discrepancies = DiscrepancyRepository(session)
            discrepancy = await discrepancies.get(discrepancy_id)
            if discrepancy is None:
                raise NotFoundError("Discrepancy", discrepancy_id)

            resolved = await discrepancies.resolve(
                discrepancy_id,
                resolved_by=ResolvedBy.MANUAL.value,
                resolution={
                    "type": resolution.type.value,
                    "details": resolution.details or {},
                    "correctiveAction": corrective_action(resolution, discrepancy),
                },
            )
            await session.commit()

        logger.info(f"Discrepancy {discrepancy_id} resolved manually with {resolution.type.value}")
        return resolved

    async def generate_report(self, job_id: str) -> ReconciliationReporter:
        """Build a reporter for a job.

        Raises:
            NotFoundError: If the job does not exist.
        """
        async with self.session_factory() as session:
            job = await JobRepository(session).get(job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            discrepancies = await DiscrepancyRepository(session).list_for_job(job_id)
            checks = await CheckRepository(session).list_for_job(job_id)
        check_names = {check.id: check.check_name for check in checks}
        return ReconciliationReporter(job, discrepancies, check_names)

    # Scheduling

    def schedule_reconciliations(self):
        """Register the hourly and daily reconciliation triggers and start them."""
        from .scheduler import ReconciliationScheduler

        if self.scheduler is None:
            self.scheduler = ReconciliationScheduler(self)
        self.scheduler.start()
        return self.scheduler
