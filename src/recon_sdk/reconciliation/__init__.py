"""Reconciliation module.

Detects and resolves discrepancies between provider webhook events and
locally persisted records, and validates collected premium against carrier
remittances.

Features:
- Named check configurations run per resource type
- Field comparison of the latest event against the local snapshot
- Idempotent discrepancy recording with optional auto-resolution
- Premium attribution by carrier and policy type with total validation
- Single-flight job manager, scheduler, reporter, HTTP router and CLI
"""

from .models import (
    Severity,
    CheckType,
    Schedule,
    ResolutionType,
    Event,
    Snapshot,
    EventFilter,
    CheckRule,
    ReconciliationConfig,
    DiscrepancyResolution,
    FieldDifference,
    ReconciliationRunConfig,
    DateRange,
    PremiumJobConfig,
    JobConfig,
    parse_job_config,
    ConfigMetrics,
    RunSummary,
    ValidationIssueType,
    PolicyLineItem,
    CustomerAccount,
    CollectedTransaction,
    CarrierRemittance,
    PremiumReconciliationReport,
    ValidationIssue,
    ValidationResult,
    CarrierFile,
    CarrierFileLineItem,
    PremiumReconciliationResult,
)
from .reconciler import FieldComparator, parse_amount, normalize_status, extract_status, AMOUNT_EPSILON
from .configs import (
    ALL_SCOPE,
    RECONCILIATION_CONFIGS,
    TRANSFER_STATUS_RECONCILIATION,
    CUSTOMER_STATE_RECONCILIATION,
    select_configs,
    configs_for_schedule,
)
from .carrier_mapping import get_carrier_by_policy_type, get_all_carriers
from .guard import SingleFlightGuard
from .engine import ReconciliationEngine
from .premium import PremiumReconciliationEngine, billing_period_window
from .report import ReconciliationReporter
from .manager import ReconciliationJobManager, PREMIUM_JOB_TYPE

__all__ = [
    # Models
    "Severity",
    "CheckType",
    "Schedule",
    "ResolutionType",
    "Event",
    "Snapshot",
    "EventFilter",
    "CheckRule",
    "ReconciliationConfig",
    "DiscrepancyResolution",
    "FieldDifference",
    "ReconciliationRunConfig",
    "DateRange",
    "PremiumJobConfig",
    "JobConfig",
    "parse_job_config",
    "ConfigMetrics",
    "RunSummary",
    "ValidationIssueType",
    "PolicyLineItem",
    "CustomerAccount",
    "CollectedTransaction",
    "CarrierRemittance",
    "PremiumReconciliationReport",
    "ValidationIssue",
    "ValidationResult",
    "CarrierFile",
    "CarrierFileLineItem",
    "PremiumReconciliationResult",
    # Comparison
    "FieldComparator",
    "parse_amount",
    "normalize_status",
    "extract_status",
    "AMOUNT_EPSILON",
    # Configurations
    "ALL_SCOPE",
    "RECONCILIATION_CONFIGS",
    "TRANSFER_STATUS_RECONCILIATION",
    "CUSTOMER_STATE_RECONCILIATION",
    "select_configs",
    "configs_for_schedule",
    "get_carrier_by_policy_type",
    "get_all_carriers",
    # Core Components
    "SingleFlightGuard",
    "ReconciliationEngine",
    "PremiumReconciliationEngine",
    "billing_period_window",
    "ReconciliationReporter",
    "ReconciliationJobManager",
    "PREMIUM_JOB_TYPE",
]
