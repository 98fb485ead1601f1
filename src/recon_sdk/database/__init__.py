"""Database module for reconciliation persistence."""

from .models import (
    Base,
    ReconciliationJob,
    ReconciliationCheck,
    ReconciliationDiscrepancy,
    ReconciliationWatermark,
    WebhookEvent,
    Transaction,
    Customer,
    JobStatus,
    CheckOutcome,
    ResolvedBy,
    ProcessingState,
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
)
from .session import (
    get_database_url,
    redact_url,
    init_db,
    close_db,
    create_async_engine,
    create_session_factory,
    get_async_session_factory,
)
from .repository import (
    JobRepository,
    CheckRepository,
    DiscrepancyRepository,
    WebhookEventRepository,
    TransactionRepository,
    CustomerRepository,
    WatermarkRepository,
)

__all__ = [
    # Models
    "Base",
    "ReconciliationJob",
    "ReconciliationCheck",
    "ReconciliationDiscrepancy",
    "ReconciliationWatermark",
    "WebhookEvent",
    "Transaction",
    "Customer",
    "JobStatus",
    "CheckOutcome",
    "ResolvedBy",
    "ProcessingState",
    "ACTIVE_JOB_STATUSES",
    "TERMINAL_JOB_STATUSES",
    # Session management
    "get_database_url",
    "redact_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_session_factory",
    "get_async_session_factory",
    # Repositories
    "JobRepository",
    "CheckRepository",
    "DiscrepancyRepository",
    "WebhookEventRepository",
    "TransactionRepository",
    "CustomerRepository",
    "WatermarkRepository",
]
