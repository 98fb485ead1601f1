"""Webhook reconciliation engine.

Compares the latest provider event of each resource against its local
snapshot, one named configuration at a time, and records checks and
discrepancies for the owning job.
"""

import os
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ..connectors.base import EventSink, EventSource, SnapshotStore
from ..connectors.database_adapters import DatabaseEventSink
from ..database import (
    CheckOutcome,
    CheckRepository,
    DiscrepancyRepository,
    ResolvedBy,
    WatermarkRepository,
)
from ..database.models import ReconciliationDiscrepancy, ReconciliationWatermark
from ..errors import AdapterFailure, AlreadyResolvedError
from .models import (
    CheckRule,
    ConfigMetrics,
    Event,
    EventFilter,
    FieldDifference,
    IsolatedFailure,
    ReconciliationConfig,
    ResolutionType,
    RunSummary,
    Severity,
    Snapshot,
)
from .reconciler import FieldComparator

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 25
DEFAULT_BATCH_DELAY_SECONDS = 0.1
DEFAULT_ADAPTER_TIMEOUT_SECONDS = 30.0


class ReconciliationEngine:
    """Runs reconciliation configurations for a job.

    Checks and discrepancies are written through the given session and
    committed after every batch. Snapshot lookups within a batch run
    concurrently, each bounded by the adapter timeout.
    """

    def __init__(
        self,
        session: AsyncSession,
        event_source: EventSource,
        snapshot_stores: Dict[str, SnapshotStore],
        event_sink: Optional[EventSink] = None,
        comparator: Optional[FieldComparator] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        adapter_timeout: Optional[float] = None,
    ):
        """Initialize the engine.

        Args:
            session: Session used for checks, discrepancies and watermarks.
            event_source: Source of authoritative events.
            snapshot_stores: Snapshot store per resource type.
            event_sink: Sink for follow-up events. Defaults to the local event log.
            comparator: Field comparator. Defaults to FieldComparator().
            batch_size: Resources per batch. Falls back to RECONCILIATION_BATCH_SIZE.
            batch_delay: Seconds slept between batches. Falls back to
                RECONCILIATION_BATCH_DELAY_SECONDS.
            adapter_timeout: Seconds allowed per external call. Falls back to
                RECONCILIATION_ADAPTER_TIMEOUT_SECONDS.
        """
        self.session = session
        self.event_source = event_source
        self.snapshot_stores = snapshot_stores
        self.event_sink = event_sink or DatabaseEventSink(session)
        self.comparator = comparator or FieldComparator()

        self.checks = CheckRepository(session)
        self.discrepancies = DiscrepancyRepository(session)
        self.watermarks = WatermarkRepository(session)

        if batch_size is None:
            batch_size = int(os.getenv("RECONCILIATION_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
        if batch_delay is None:
            batch_delay = float(
                os.getenv("RECONCILIATION_BATCH_DELAY_SECONDS", str(DEFAULT_BATCH_DELAY_SECONDS))
            )
        if adapter_timeout is None:
            adapter_timeout = float(
                os.getenv("RECONCILIATION_ADAPTER_TIMEOUT_SECONDS", str(DEFAULT_ADAPTER_TIMEOUT_SECONDS))
            )
        self.batch_size = max(1, batch_size)
        self.batch_delay = max(0.0, batch_delay)
        self.adapter_timeout = adapter_timeout

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        if self.adapter_timeout and self.adapter_timeout > 0:
            return await asyncio.wait_for(awaitable, timeout=self.adapter_timeout)
        return await awaitable

    @staticmethod
    def _record_failure(
        metrics: ConfigMetrics,
        message: str,
        resource_id: Optional[str] = None,
        check_name: Optional[str] = None,
    ) -> None:
        logger.warning(f"[{metrics.config_name}] {message}")
        metrics.errors_encountered += 1
        metrics.failures.append(IsolatedFailure(
            config_name=metrics.config_name,
            resource_type=metrics.resource_type,
            resource_id=resource_id,
            check_name=check_name,
            message=message,
        ))

    @staticmethod
    def latest_events(events: List[Event], resource_type: str) -> Dict[str, Event]:
        """Keep the newest event of each resource.

        Events without a resource ID or of another resource type are ignored.
        On equal timestamps the later event in the list wins.
        """
        latest: Dict[str, Event] = {}
        for event in events:
            if not event.resource_id:
                continue
            if event.resource_type and event.resource_type != resource_type:
                continue
            current = latest.get(event.resource_id)
            if current is None or event.timestamp >= current.timestamp:
                latest[event.resource_id] = event
        return latest

    async def _resolve_window(
        self,
        config: ReconciliationConfig,
        force_run: bool,
        since: Optional[datetime] = None,
    ) -> Tuple[datetime, Optional[ReconciliationWatermark]]:
        """Pick the window start and the watermark it continues from, if any.

        An explicit ``since`` wins. Otherwise the watermark is used unless
        force_run is set, and the lookback window after that.
        """
        if since is not None:
            return since, None
        if not force_run:
            watermark = await self.watermarks.get(config.name)
            if watermark is not None:
                return watermark.last_event_at, watermark
        return datetime.utcnow() - timedelta(hours=config.lookback_hours), None

    @staticmethod
    def in_window(
        event: Event,
        start: datetime,
        end: Optional[datetime] = None,
        watermark: Optional[ReconciliationWatermark] = None,
    ) -> bool:
        """Whether an event falls in [start, end] and is not the watermarked event."""
        if event.timestamp < start:
            return False
        if end is not None and event.timestamp > end:
            return False
        if watermark is not None and event.id == watermark.last_event_id:
            return False
        return True

    async def _fetch_snapshot(
        self,
        store: SnapshotStore,
        resource_id: str,
    ) -> Tuple[Optional[Snapshot], Optional[AdapterFailure]]:
        try:
            snapshot = await self._with_timeout(store.get_by_external_id(resource_id))
        except asyncio.TimeoutError:
            return None, AdapterFailure(
                "snapshot_store", resource_id, f"timed out after {self.adapter_timeout}s"
            )
        except Exception as e:
            return None, AdapterFailure("snapshot_store", resource_id, f"{type(e).__name__}: {e}")
        return snapshot, None

    async def _auto_resolve(
        self,
        config: ReconciliationConfig,
        rule: CheckRule,
        event: Event,
        discrepancy: ReconciliationDiscrepancy,
        difference: FieldDifference,
        metrics: ConfigMetrics,
    ) -> bool:
        """Accept the event value and queue a reconciled event.

        The follow-up event and the resolution commit together or not at all.
        A failure of either is recorded on the metrics and leaves the
        discrepancy open.

        Returns:
            True if the discrepancy was resolved here.
        """
        resource_type = config.resource_type
        payload = {
            "resourceId": event.resource_id,
            "field": difference.field,
            "value": difference.authoritative_value,
            "previousValue": difference.local_value,
            "sourceEventId": event.id,
            "discrepancyId": discrepancy.id,
        }
        if difference.field == "status":
            payload["status"] = difference.authoritative_value

        try:
            async with self.session.begin_nested():
                corrective_event_id = await self.event_sink.publish(
                    event_type=f"{resource_type}_reconciled",
                    resource_type=resource_type,
                    resource_id=event.resource_id,
                    payload=payload,
                    metadata={"source": "reconciliation", "checkName": rule.name},
                )
                await self.discrepancies.resolve(
                    discrepancy.id,
                    resolved_by=ResolvedBy.SYSTEM.value,
                    resolution={
                        "type": ResolutionType.AUTO_CORRECTED.value,
                        "details": {
                            "correctiveEventId": corrective_event_id,
                            "acceptedValue": difference.authoritative_value,
                        },
                    },
                )
        except AlreadyResolvedError:
            logger.info(f"Discrepancy {discrepancy.id} was resolved elsewhere; skipping auto-resolve")
            return False
        except Exception as e:
            self._record_failure(
                metrics,
                f"Auto-resolve of discrepancy {discrepancy.id} failed: {type(e).__name__}: {e}",
                event.resource_id,
                rule.name,
            )
            return False

        logger.info(
            f"Auto-resolved discrepancy {discrepancy.id} on {resource_type} "
            f"{event.resource_id} ({difference.field}) via event {corrective_event_id}"
        )
        return True

    async def _check_resource(
        self,
        job_id: str,
        config: ReconciliationConfig,
        event: Event,
        snapshot: Optional[Snapshot],
        metrics: ConfigMetrics,
    ) -> None:
        resource_id = event.resource_id
        for rule in config.checks:
            metrics.total_checks += 1
            base_metadata = {"eventId": event.id, "eventType": event.type, "checkType": rule.type.value}

            try:
                differences = self.comparator.compare(rule, event, snapshot)
            except ValueError as e:
                self._record_failure(
                    metrics, f"{rule.name} failed for {resource_id}: {e}", resource_id, rule.name
                )
                await self.checks.create(
                    job_id=job_id,
                    resource_type=config.resource_type,
                    resource_id=resource_id,
                    check_name=rule.name,
                    outcome=CheckOutcome.ERROR.value,
                    metadata={**base_metadata, "error": str(e)},
                )
                continue

            if not differences:
                metrics.matches += 1
                await self.checks.create(
                    job_id=job_id,
                    resource_type=config.resource_type,
                    resource_id=resource_id,
                    check_name=rule.name,
                    outcome=CheckOutcome.MATCH.value,
                    metadata=base_metadata,
                )
                continue

            metrics.mismatches += 1
            check = await self.checks.create(
                job_id=job_id,
                resource_type=config.resource_type,
                resource_id=resource_id,
                check_name=rule.name,
                outcome=CheckOutcome.MISMATCH.value,
                metadata={
                    **base_metadata,
                    "severity": rule.severity.value,
                    "fields": [difference.field for difference in differences],
                },
            )

            for difference in differences:
                discrepancy, created = await self.discrepancies.create_unresolved(
                    check_id=check.id,
                    resource_type=config.resource_type,
                    resource_id=resource_id,
                    field=difference.field,
                    authoritative_value=difference.authoritative_value,
                    local_value=difference.local_value,
                    severity=rule.severity.value,
                    source_event_id=event.id,
                )
                if not created:
                    metrics.duplicates_suppressed += 1
                    continue

                metrics.discrepancies_found += 1
                # A missing resource has nothing to correct
                if rule.auto_resolve and snapshot is not None:
                    if await self._auto_resolve(config, rule, event, discrepancy, difference, metrics):
                        metrics.discrepancies_resolved += 1

    async def run_config(
        self,
        job_id: str,
        config: ReconciliationConfig,
        force_run: bool = False,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> ConfigMetrics:
        """Run one configuration.

        Failures of the event source, a snapshot lookup or a single check are
        recorded on the returned metrics and never raised. The watermark only
        advances when the configuration ran without failures over its own
        incremental window; an explicit window leaves it untouched.

        Args:
            job_id: Owning job ID.
            config: Configuration to run.
            force_run: Ignore the watermark and scan the whole lookback window.
            since: Explicit window start, used instead of the watermark.
            until: Explicit window end (inclusive).

        Returns:
            ConfigMetrics for the configuration.
        """
        metrics = ConfigMetrics(config_name=config.name, resource_type=config.resource_type)
        metrics.window_start, watermark = await self._resolve_window(config, force_run, since)
        metrics.window_end = until
        await self.session.commit()

        logger.info(
            f"Running {config.name} for job {job_id} from {metrics.window_start.isoformat()} "
            f"to {until.isoformat() if until else 'now'}"
        )

        store = self.snapshot_stores.get(config.resource_type)
        if store is None:
            self._record_failure(metrics, f"No snapshot store for resource type {config.resource_type}")
            return metrics

        try:
            events = await self._with_timeout(self.event_source.get_events(
                EventFilter(resource_type=config.resource_type, since=metrics.window_start, until=until)
            ))
        except asyncio.TimeoutError:
            self._record_failure(metrics, f"Event source timed out after {self.adapter_timeout}s")
            return metrics
        except Exception as e:
            self._record_failure(metrics, f"Event source failed: {type(e).__name__}: {e}")
            return metrics

        events = [
            event for event in events
            if self.in_window(event, metrics.window_start, until, watermark)
        ]
        metrics.events_scanned = len(events)
        latest = self.latest_events(events, config.resource_type)
        resource_ids = list(latest)

        for start in range(0, len(resource_ids), self.batch_size):
            if start and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

            batch = resource_ids[start:start + self.batch_size]
            lookups = await asyncio.gather(*[
                self._fetch_snapshot(store, resource_id) for resource_id in batch
            ])

            for resource_id, (snapshot, failure) in zip(batch, lookups):
                if failure is not None:
                    self._record_failure(metrics, str(failure), resource_id)
                    continue

                metrics.resources_checked += 1
                try:
                    await self._check_resource(job_id, config, latest[resource_id], snapshot, metrics)
                except AdapterFailure as e:
                    self._record_failure(metrics, str(e), resource_id)

            await self.session.commit()

        explicit_window = since is not None or until is not None
        if latest and metrics.errors_encountered == 0 and not explicit_window:
            newest = max(latest.values(), key=lambda event: event.timestamp)
            await self.watermarks.set(config.name, newest.timestamp, newest.id)
            await self.session.commit()

        logger.info(
            f"Finished {config.name} for job {job_id}: {metrics.total_checks} checks, "
            f"{metrics.discrepancies_found} new discrepancies, "
            f"{metrics.duplicates_suppressed} already open, "
            f"{metrics.discrepancies_resolved} auto-resolved, "
            f"{metrics.errors_encountered} errors"
        )
        return metrics

    async def _alert_critical(self, job_id: str) -> int:
        """Log unresolved critical discrepancies of the job and return their count."""
        unresolved = await self.discrepancies.list_unresolved_for_job(job_id)
        critical = [item for item in unresolved if item.severity == Severity.CRITICAL.value]
        for discrepancy in critical:
            logger.error(
                f"Critical discrepancy {discrepancy.id} on {discrepancy.resource_type} "
                f"{discrepancy.resource_id}: {discrepancy.field} is {discrepancy.local_value} "
                f"locally but {discrepancy.authoritative_value} at the provider"
            )
        return len(critical)

    async def run(
        self,
        job_id: str,
        configs: List[ReconciliationConfig],
        force_run: bool = False,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> RunSummary:
        """Run configurations sequentially for a job.

        Args:
            job_id: Owning job ID.
            configs: Configurations to run.
            force_run: Ignore watermarks.
            since: Explicit window start applied to every configuration.
            until: Explicit window end applied to every configuration.

        Returns:
            RunSummary with per-config metrics.
        """
        summary = RunSummary()
        for config in configs:
            summary.configs.append(
                await self.run_config(job_id, config, force_run=force_run, since=since, until=until)
            )

        summary.critical_unresolved = await self._alert_critical(job_id)
        logger.info(
            f"Reconciliation job {job_id} checked {len(configs)} config(s): "
            f"{summary.total_checks} checks, {summary.discrepancies_found} discrepancies, "
            f"{summary.errors_encountered} errors"
        )
        return summary
