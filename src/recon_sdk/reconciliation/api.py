"""API endpoints for reconciliation operations."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from ..auth import PREMIUM_RATE_LIMIT, RUN_RATE_LIMIT, limiter, verify_api_key
from ..database import JobStatus
from ..errors import (
    AlreadyInProgressError,
    AlreadyResolvedError,
    InvalidRequestError,
    NotFoundError,
    ReconciliationError,
)
from .manager import DEFAULT_CATCH_UP_DAYS, PREMIUM_JOB_TYPE, ReconciliationJobManager
from .models import DateRange, DiscrepancyResolution, ResolutionType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class RunReconciliationBody(BaseModel):
    """Request body for starting a reconciliation run."""
    config_name: Optional[Union[str, List[str]]] = Field(
        default=None,
        alias="configName",
        description="Config name or names; omit or 'all' for every config",
    )
    force_run: bool = Field(default=False, alias="forceRun")
    since: Optional[datetime] = Field(default=None, description="Window start; overrides the watermark")
    until: Optional[datetime] = Field(default=None, description="Window end (inclusive)")

    class Config:
        populate_by_name = True

    def config_names(self) -> Optional[List[str]]:
        if self.config_name is None:
            return None
        if isinstance(self.config_name, str):
            return [self.config_name]
        return self.config_name


class BatchReconciliationBody(BaseModel):
    """Request body for reconciling a historical window."""
    config_name: Optional[Union[str, List[str]]] = Field(default=None, alias="configName")
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    catch_up: bool = Field(default=False, alias="catchUp")
    days_back: int = Field(default=DEFAULT_CATCH_UP_DAYS, alias="daysBack", gt=0)

    class Config:
        populate_by_name = True

    def config_names(self) -> Optional[List[str]]:
        if isinstance(self.config_name, str):
            return [self.config_name]
        return self.config_name


class ResolveDiscrepancyBody(BaseModel):
    """Request body for resolving a discrepancy."""
    type: ResolutionType
    details: Optional[Dict[str, Any]] = None


class PremiumReconciliationBody(BaseModel):
    """Request body for starting a premium reconciliation."""
    billing_period: Optional[str] = Field(default=None, alias="billingPeriod", description="YYYY-MM")
    date_range: Optional[Dict[str, Any]] = Field(default=None, alias="dateRange")
    include_pending: bool = Field(default=False, alias="includePending")
    force_run: bool = Field(default=False, alias="forceRun")

    class Config:
        populate_by_name = True


def get_manager(request: Request) -> ReconciliationJobManager:
    """Return the application's job manager."""
    manager = getattr(request.app.state, "reconciliation_manager", None)
    if manager is None:
        logger.error("Reconciliation manager is not initialized")
        raise HTTPException(status_code=503, detail="Reconciliation service not initialized")
    return manager


def http_error(error: ReconciliationError) -> HTTPException:
    """Map a reconciliation error to an HTTP error."""
    if isinstance(error, AlreadyInProgressError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (AlreadyResolvedError, InvalidRequestError)):
        return HTTPException(status_code=400, detail=str(error))
    logger.error(f"Reconciliation request failed: {error}")
    return HTTPException(status_code=500, detail=f"Reconciliation failed: {error}")


async def _process_premium_job(manager: ReconciliationJobManager, job_id: str) -> None:
    """Background task running a premium job; the outcome is stored on the job."""
    try:
        await manager.process_premium_job(job_id)
    except Exception as e:
        logger.error(f"Premium reconciliation job {job_id} failed in background: {e}")


@router.post("", status_code=201)
@limiter.limit(RUN_RATE_LIMIT)
async def start_reconciliation(
    request: Request,
    body: RunReconciliationBody,
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """
    Run webhook reconciliation for one config, several configs or all of them.

    The run completes before the response is sent. Returns 409 while an
    overlapping run is in progress unless forceRun is set.
    """
    logger.info(f"Starting reconciliation for {body.config_name or 'all'} (force={body.force_run})")
    try:
        job = await manager.run_reconciliation(
            config_names=body.config_names(),
            force_run=body.force_run,
            created_by="api",
            since=body.since,
            until=body.until,
        )
    except ReconciliationError as e:
        raise http_error(e) from e

    return {"success": True, "job": job.to_dict()}


@router.post("/batch", status_code=201)
@limiter.limit(RUN_RATE_LIMIT)
async def start_batch_reconciliation(
    request: Request,
    body: BatchReconciliationBody,
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """
    Reconcile a historical window, or the last daysBack days with catchUp.

    Watermarks are neither used nor advanced by these runs.
    """
    if not body.catch_up and (body.start_date is None or body.end_date is None):
        raise HTTPException(status_code=400, detail="startDate and endDate are required unless catchUp is set")

    try:
        if body.catch_up:
            job = await manager.run_catch_up(
                config_names=body.config_names(),
                days_back=body.days_back,
                created_by="api",
            )
        else:
            job = await manager.run_reconciliation(
                config_names=body.config_names(),
                created_by="api",
                since=body.start_date,
                until=body.end_date,
            )
    except ReconciliationError as e:
        raise http_error(e) from e

    return {"success": True, "type": "catch_up" if body.catch_up else "batch", "job": job.to_dict()}


@router.get("")
async def get_reconciliation(
    hours: int = Query(default=24, gt=0, description="History window in hours"),
    run_id: Optional[str] = Query(default=None, alias="runId", description="Job ID to report on"),
    format: str = Query(default="json", description="Report format: json, text, csv"),
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """
    Get reconciliation history, or the report of a single run.

    With runId the report of that job is returned; otherwise the jobs
    created within the last `hours`, newest first.
    """
    try:
        if run_id:
            if format not in ("json", "text", "csv"):
                raise HTTPException(status_code=400, detail="format must be one of: json, text, csv")
            reporter = await manager.generate_report(run_id)
            if format == "text":
                return PlainTextResponse(content=reporter.to_summary_text())
            if format == "csv":
                return PlainTextResponse(content=reporter.to_csv(), media_type="text/csv")
            return {"success": True, "job": reporter.job.to_dict(), "report": reporter.to_dict()}

        jobs = await manager.get_reconciliation_history(hours)
    except ReconciliationError as e:
        raise http_error(e) from e

    return {"success": True, "runs": [job.to_dict() for job in jobs], "count": len(jobs)}


@router.get("/jobs/{job_id}/discrepancies")
async def get_job_discrepancies(
    job_id: str,
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """List the unresolved discrepancies found by a job."""
    try:
        discrepancies = await manager.get_job_discrepancies(job_id)
    except ReconciliationError as e:
        raise http_error(e) from e

    return {
        "success": True,
        "jobId": job_id,
        "discrepancies": [item.to_dict() for item in discrepancies],
        "count": len(discrepancies),
    }


@router.post("/discrepancies/{discrepancy_id}/resolve")
async def resolve_discrepancy(
    discrepancy_id: str,
    body: ResolveDiscrepancyBody,
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Resolve a discrepancy manually."""
    try:
        discrepancy = await manager.resolve_discrepancy(
            discrepancy_id,
            DiscrepancyResolution(type=body.type, details=body.details),
        )
    except ReconciliationError as e:
        raise http_error(e) from e

    return {"success": True, "discrepancy": discrepancy.to_dict()}


@router.post("/premium", status_code=201)
@limiter.limit(PREMIUM_RATE_LIMIT)
async def start_premium_reconciliation(
    request: Request,
    body: PremiumReconciliationBody,
    background_tasks: BackgroundTasks,
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """
    Start premium reconciliation for a billing period.

    The job is created as pending and processed in the background. When a
    job for the period is already pending or running, its ID is returned
    with status 200 instead.
    """
    if not body.billing_period:
        raise HTTPException(status_code=400, detail="billingPeriod is required")

    date_range = None
    if body.date_range is not None:
        try:
            date_range = DateRange.model_validate(body.date_range)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid dateRange: {e}") from e

    try:
        job = await manager.create_premium_job(
            billing_period=body.billing_period,
            date_range=date_range,
            include_pending=body.include_pending,
            force_run=body.force_run,
            created_by="api",
        )
    except AlreadyInProgressError as e:
        return JSONResponse(
            status_code=200,
            content={
                "success": True,
                "jobId": e.job_id,
                "status": e.status or JobStatus.RUNNING.value,
                "message": str(e),
            },
        )
    except ReconciliationError as e:
        raise http_error(e) from e

    background_tasks.add_task(_process_premium_job, manager, job.id)
    logger.info(f"Premium reconciliation job {job.id} queued for {body.billing_period}")

    return {
        "success": True,
        "jobId": job.id,
        "status": job.status,
        "startedAt": (job.created_at or datetime.utcnow()).isoformat(),
        "message": f"Premium reconciliation started for {body.billing_period}",
    }


@router.get("/premium")
async def get_premium_reconciliation(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    billing_period: Optional[str] = Query(default=None, alias="billingPeriod"),
    status: Optional[str] = Query(default=None),
    manager: ReconciliationJobManager = Depends(get_manager),
    api_key: str = Depends(verify_api_key),
):
    """Get one premium job, or list premium jobs by billing period and status."""
    try:
        if job_id:
            job = await manager.get_job(job_id)
            if job.type != PREMIUM_JOB_TYPE:
                raise NotFoundError("Job", job_id)
            return {"success": True, "job": job.to_dict()}

        jobs = await manager.list_premium_jobs(billing_period=billing_period, status=status)
    except ReconciliationError as e:
        raise http_error(e) from e

    return {"success": True, "jobs": [job.to_dict() for job in jobs], "count": len(jobs)}


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
