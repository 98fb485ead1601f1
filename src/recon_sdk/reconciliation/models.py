"""Models for webhook and premium reconciliation."""

import enum
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List, Literal, Union, Annotated

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


BILLING_PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class Severity(str, enum.Enum):
    """How urgent a discrepancy found by a check is."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CheckType(str, enum.Enum):
    """Kinds of field comparison a check can perform."""
    EXISTENCE = "existence"
    STATUS = "status"
    AMOUNT = "amount"
    METADATA = "metadata"


class Schedule(str, enum.Enum):
    """How often a named configuration runs."""
    HOURLY = "hourly"
    DAILY = "daily"
    ON_DEMAND = "on_demand"


class ResolutionType(str, enum.Enum):
    """Ways a discrepancy can be resolved."""
    ACCEPT_WEBHOOK = "accept_webhook"
    ACCEPT_ACTUAL = "accept_actual"
    MANUAL_OVERRIDE = "manual_override"
    AUTO_CORRECTED = "auto_corrected"


class Event(BaseModel):
    """Authoritative event from the payments provider."""
    id: str = Field(..., description="Provider event ID")
    type: str = Field(..., description="Event type, e.g. transfer_completed")
    resource_id: Optional[str] = Field(None, description="Affected resource ID")
    resource_type: Optional[str] = Field(None, description="Affected resource type")
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(..., description="When the provider emitted the event")

    class Config:
        from_attributes = True


class Snapshot(BaseModel):
    """Locally persisted state of a resource."""
    external_id: str = Field(..., description="Provider resource ID")
    status: Optional[str] = None
    amount: Optional[Any] = Field(None, description="Number, numeric string or {value, currency}")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True


class EventFilter(BaseModel):
    """Filter passed to an event source."""
    resource_type: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(None, gt=0)


class CheckRule(BaseModel):
    """One named comparison rule of a configuration."""
    name: str
    type: CheckType
    severity: Severity = Severity.MEDIUM
    auto_resolve: bool = Field(default=False, description="Accept the event value automatically")
    fields: List[str] = Field(default_factory=list, description="Metadata keys compared by metadata checks")


class ReconciliationConfig(BaseModel):
    """A named set of checks run against one resource type."""
    name: str
    resource_type: str
    schedule: Schedule = Schedule.ON_DEMAND
    lookback_hours: int = Field(default=24, gt=0)
    checks: List[CheckRule] = Field(default_factory=list)


class DiscrepancyResolution(BaseModel):
    """Resolution requested for a discrepancy."""
    type: ResolutionType
    details: Optional[Dict[str, Any]] = None


class FieldDifference(BaseModel):
    """A mismatch found by a single check."""
    field: str
    authoritative_value: Any = None
    local_value: Any = None


# Job configurations, tagged by job type

class ReconciliationRunConfig(BaseModel):
    """Parameters of a webhook reconciliation run."""
    type: Literal["reconciliation"] = "reconciliation"
    configs: List[str] = Field(default_factory=list)
    force_run: bool = False
    since: Optional[datetime] = Field(None, description="Window start; overrides the watermark")
    until: Optional[datetime] = Field(None, description="Window end (inclusive)")

    @field_validator("since", "until")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored timestamps are naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "ReconciliationRunConfig":
        if self.since and self.until and self.since >= self.until:
            raise ValueError("since must be before until")
        return self


class DateRange(BaseModel):
    """Inclusive date window."""
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class PremiumJobConfig(BaseModel):
    """Parameters of a premium reconciliation run."""
    type: Literal["premium_reconciliation"] = "premium_reconciliation"
    billing_period: str = Field(..., description="Billing period as YYYY-MM")
    date_range: Optional[DateRange] = None
    include_pending: bool = False
    force_run: bool = False

    @field_validator("billing_period")
    @classmethod
    def _check_billing_period(cls, value: str) -> str:
        if not BILLING_PERIOD_PATTERN.match(value):
            raise ValueError("billing_period must be formatted as YYYY-MM")
        return value


JobConfig = Annotated[
    Union[ReconciliationRunConfig, PremiumJobConfig],
    Field(discriminator="type"),
]

_job_config_adapter = TypeAdapter(JobConfig)


def parse_job_config(data: Dict[str, Any]) -> Union[ReconciliationRunConfig, PremiumJobConfig]:
    """Validate a stored job config into the variant named by its type."""
    return _job_config_adapter.validate_python(data)


# Run metrics

class IsolatedFailure(BaseModel):
    """A per-resource failure that did not abort the run."""
    config_name: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    check_name: Optional[str] = None
    message: str


class ConfigMetrics(BaseModel):
    """Counters for one configuration within a run."""
    config_name: str
    resource_type: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    events_scanned: int = 0
    resources_checked: int = 0
    total_checks: int = 0
    matches: int = 0
    mismatches: int = 0
    discrepancies_found: int = 0
    duplicates_suppressed: int = 0
    discrepancies_resolved: int = 0
    errors_encountered: int = 0
    failures: List[IsolatedFailure] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Aggregate metrics of a webhook reconciliation run."""
    configs: List[ConfigMetrics] = Field(default_factory=list)
    critical_unresolved: int = 0

    def _total(self, attribute: str) -> int:
        return sum(getattr(metrics, attribute) for metrics in self.configs)

    @property
    def total_checks(self) -> int:
        return self._total("total_checks")

    @property
    def discrepancies_found(self) -> int:
        return self._total("discrepancies_found")

    @property
    def errors_encountered(self) -> int:
        return self._total("errors_encountered")

    def to_results(self) -> Dict[str, Any]:
        """Return the JSON payload stored on the job."""
        return {
            "type": "reconciliation",
            "totals": {
                "events_scanned": self._total("events_scanned"),
                "resources_checked": self._total("resources_checked"),
                "total_checks": self.total_checks,
                "matches": self._total("matches"),
                "mismatches": self._total("mismatches"),
                "discrepancies_found": self.discrepancies_found,
                "duplicates_suppressed": self._total("duplicates_suppressed"),
                "discrepancies_resolved": self._total("discrepancies_resolved"),
                "errors_encountered": self.errors_encountered,
                "critical_unresolved": self.critical_unresolved,
            },
            "configs": [metrics.model_dump(mode="json") for metrics in self.configs],
        }


# Premium reconciliation

class ValidationIssueType(str, enum.Enum):
    """Categories of premium validation findings."""
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_MAPPING = "missing_mapping"
    MISSING_ACCOUNT = "missing_account"
    INVALID_LINE_ITEM = "invalid_line_item"
    LINE_ITEM_TOTAL_MISMATCH = "line_item_total_mismatch"


class PolicyLineItem(BaseModel):
    """One policy premium held by one employee."""
    policy_type: str
    amount: Decimal = Field(default=Decimal("0"))
    employee_name: Optional[str] = None
    coverage_level: Optional[str] = None


class CustomerAccount(BaseModel):
    """CRM customer with its policies."""
    account_id: str
    name: str
    email: Optional[str] = None
    policies: List[PolicyLineItem] = Field(default_factory=list)


class CollectedTransaction(BaseModel):
    """A transfer counted as collected premium."""
    external_id: str
    amount: Decimal
    status: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    company_name: Optional[str] = None
    customer_email: Optional[str] = None
    collected_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClientPremium(BaseModel):
    """Premium collected from one client for one policy type."""
    customer_name: str
    account_id: Optional[str] = None
    transaction_id: str
    amount: Decimal
    employee_count: int = 0


class PolicyTypeBreakdown(BaseModel):
    """Premium for one policy type within a carrier."""
    policy_type: str
    total_amount: Decimal = Field(default=Decimal("0"))
    clients: List[ClientPremium] = Field(default_factory=list)


class CarrierRemittance(BaseModel):
    """Premium owed to one carrier."""
    carrier: str
    total_amount: Decimal = Field(default=Decimal("0"))
    policy_types: List[PolicyTypeBreakdown] = Field(default_factory=list)


class PremiumReconciliationReport(BaseModel):
    """Aggregated collections of a billing period."""
    report_id: str
    billing_period: str
    period_start: datetime
    period_end: datetime
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    include_pending: bool = False
    total_collected: Decimal = Field(default=Decimal("0"))
    total_accounts_processed: int = 0
    total_transactions: int = 0
    carriers: List[CarrierRemittance] = Field(default_factory=list)
    unmatched_transactions: List[str] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    """A single validation error or warning."""
    type: ValidationIssueType
    message: str
    carriers: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """Outcome of validating carrier files against collections."""
    is_valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class CarrierFileLineItem(BaseModel):
    """One remittance line of a carrier file."""
    customer_name: Optional[str] = None
    transaction_id: Optional[str] = None
    policy_type: Optional[str] = None
    employee_name: Optional[str] = None
    amount: Decimal = Field(default=Decimal("0"))


class CarrierFile(BaseModel):
    """Remittance file for one carrier and billing period."""
    carrier: str
    billing_period: str
    remittance_date: Optional[datetime] = None
    file_format: str = "csv"
    total_amount: Decimal = Field(default=Decimal("0"))
    line_items: List[CarrierFileLineItem] = Field(default_factory=list)


class PremiumReconciliationResult(BaseModel):
    """Report, validation and carrier files of one premium run."""
    report: PremiumReconciliationReport
    validation: ValidationResult
    carrier_files: List[CarrierFile] = Field(default_factory=list)

    def to_results(self) -> Dict[str, Any]:
        """Return the JSON payload stored on the job."""
        return {"type": "premium_reconciliation", **self.model_dump(mode="json")}
