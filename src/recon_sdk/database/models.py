"""SQLAlchemy models for reconciliation persistence."""

import uuid
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Boolean,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class JobStatus(str, enum.Enum):
    """Lifecycle states of a reconciliation job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset([JobStatus.COMPLETED.value, JobStatus.FAILED.value])
ACTIVE_JOB_STATUSES = frozenset([JobStatus.PENDING.value, JobStatus.RUNNING.value])


class CheckOutcome(str, enum.Enum):
    """Outcome of one check against one resource."""
    MATCH = "match"
    MISMATCH = "mismatch"
    ERROR = "error"


class ResolvedBy(str, enum.Enum):
    """Who resolved a discrepancy."""
    SYSTEM = "system"
    MANUAL = "manual"


class ProcessingState(str, enum.Enum):
    """Processing state of a stored webhook event."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _load_json(value: Optional[str]) -> Optional[Any]:
    if value:
        return json.loads(value)
    return None


def _dump_json(value: Optional[Any]) -> Optional[str]:
    if value is not None:
        return json.dumps(value, default=str)
    return None


class ReconciliationJob(Base):
    """One top-level reconciliation run."""
    __tablename__ = "reconciliation_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING.value)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")

    config_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    results_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    errors_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    checks: Mapped[List["ReconciliationCheck"]] = relationship(
        "ReconciliationCheck",
        back_populates="job",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_reconciliation_jobs_type_status", "type", "status"),
        Index("ix_reconciliation_jobs_created_at", "created_at"),
    )

    @property
    def config(self) -> Optional[Dict[str, Any]]:
        """Get run parameters as dictionary."""
        return _load_json(self.config_json)

    @config.setter
    def config(self, value: Optional[Dict[str, Any]]) -> None:
        self.config_json = _dump_json(value)

    @property
    def results(self) -> Optional[Dict[str, Any]]:
        """Get run results as dictionary."""
        return _load_json(self.results_json)

    @results.setter
    def results(self, value: Optional[Dict[str, Any]]) -> None:
        self.results_json = _dump_json(value)

    @property
    def errors(self) -> Optional[Dict[str, Any]]:
        """Get run errors as dictionary."""
        return _load_json(self.errors_json)

    @errors.setter
    def errors(self, value: Optional[Dict[str, Any]]) -> None:
        self.errors_json = _dump_json(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary representation."""
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "config": self.config,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "results": self.results,
            "errors": self.errors,
        }


class ReconciliationCheck(Base):
    """One named comparison rule executed against one resource."""
    __tablename__ = "reconciliation_checks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("reconciliation_jobs.id"), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    check_name: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)

    # Carries jobId, config name, source event id and severity
    check_metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    job: Mapped["ReconciliationJob"] = relationship("ReconciliationJob", back_populates="checks")
    discrepancies: Mapped[List["ReconciliationDiscrepancy"]] = relationship(
        "ReconciliationDiscrepancy",
        back_populates="check",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_reconciliation_checks_resource", "resource_type", "resource_id"),
        Index("ix_reconciliation_checks_outcome", "outcome"),
    )

    @property
    def check_metadata(self) -> Optional[Dict[str, Any]]:
        """Get check metadata as dictionary."""
        return _load_json(self.check_metadata_json)

    @check_metadata.setter
    def check_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.check_metadata_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "check_name": self.check_name,
            "outcome": self.outcome,
            "metadata": self.check_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def active_discrepancy_key(resource_type: str, resource_id: str, field: str) -> str:
    """Build the identity that may be held by at most one unresolved discrepancy."""
    return f"{resource_type}:{resource_id}:{field}"


class ReconciliationDiscrepancy(Base):
    """A field-level mismatch between an event and a local snapshot."""
    __tablename__ = "reconciliation_discrepancies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    check_id: Mapped[str] = mapped_column(String(36), ForeignKey("reconciliation_checks.id"), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")

    # Both values are stored JSON-serialized for audit
    authoritative_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    local_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider event the mismatch was detected from
    source_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    resolution_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Set while unresolved, NULL afterwards; unique so only one active row per identity
    active_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True, unique=True)

    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    check: Mapped["ReconciliationCheck"] = relationship("ReconciliationCheck", back_populates="discrepancies")

    __table_args__ = (
        Index("ix_reconciliation_discrepancies_resource", "resource_type", "resource_id", "field"),
        Index("ix_reconciliation_discrepancies_resolved", "resolved"),
    )

    @property
    def resolution(self) -> Optional[Dict[str, Any]]:
        """Get resolution as dictionary."""
        return _load_json(self.resolution_json)

    @resolution.setter
    def resolution(self, value: Optional[Dict[str, Any]]) -> None:
        self.resolution_json = _dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "field": self.field,
            "severity": self.severity,
            "authoritative_value": self.authoritative_value,
            "local_value": self.local_value,
            "source_event_id": self.source_event_id,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution": self.resolution,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }


class WebhookEvent(Base):
    """Authoritative event received from the payments provider."""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_state: Mapped[str] = mapped_column(String(20), nullable=False, default=ProcessingState.QUEUED.value)
    event_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_resource", "resource_type", "event_timestamp"),
        Index("ix_webhook_events_processing_state", "processing_state"),
    )

    @property
    def payload(self) -> Dict[str, Any]:
        return _load_json(self.payload_json) or {}

    @payload.setter
    def payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.payload_json = _dump_json(value)

    @property
    def event_metadata(self) -> Optional[Dict[str, Any]]:
        return _load_json(self.event_metadata_json)

    @event_metadata.setter
    def event_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.event_metadata_json = _dump_json(value)


class Transaction(Base):
    """Locally persisted ACH transfer, keyed by the provider's transfer id."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    transfer_metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_processed_at", "processed_at"),
    )

    @property
    def transfer_metadata(self) -> Optional[Dict[str, Any]]:
        return _load_json(self.transfer_metadata_json)

    @transfer_metadata.setter
    def transfer_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.transfer_metadata_json = _dump_json(value)


class Customer(Base):
    """Locally persisted payments-provider customer."""
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="unverified")
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def customer_metadata(self) -> Optional[Dict[str, Any]]:
        return _load_json(self.customer_metadata_json)

    @customer_metadata.setter
    def customer_metadata(self, value: Optional[Dict[str, Any]]) -> None:
        self.customer_metadata_json = _dump_json(value)


class ReconciliationWatermark(Base):
    """Newest event seen by the last successful run of a named config."""
    __tablename__ = "reconciliation_watermarks"

    config_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_event_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
