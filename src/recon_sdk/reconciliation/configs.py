"""Named reconciliation configurations."""

from typing import Dict, Iterable, List, Optional

from ..errors import InvalidRequestError
from .models import CheckRule, CheckType, ReconciliationConfig, Schedule, Severity

# Scope covering every configuration
ALL_SCOPE = "all"

TRANSFER_STATUS_RECONCILIATION = ReconciliationConfig(
    name="transfer_status_reconciliation",
    resource_type="transfer",
    schedule=Schedule.HOURLY,
    lookback_hours=2,
    checks=[
        CheckRule(name="transfer_exists", type=CheckType.EXISTENCE, severity=Severity.CRITICAL),
        CheckRule(
            name="transfer_status_match",
            type=CheckType.STATUS,
            severity=Severity.HIGH,
            auto_resolve=True,
        ),
        CheckRule(name="transfer_amount_match", type=CheckType.AMOUNT, severity=Severity.CRITICAL),
    ],
)

CUSTOMER_STATE_RECONCILIATION = ReconciliationConfig(
    name="customer_state_reconciliation",
    resource_type="customer",
    schedule=Schedule.DAILY,
    lookback_hours=24,
    checks=[
        CheckRule(name="customer_exists", type=CheckType.EXISTENCE, severity=Severity.HIGH),
        CheckRule(
            name="customer_status_match",
            type=CheckType.STATUS,
            severity=Severity.MEDIUM,
            auto_resolve=True,
        ),
        CheckRule(
            name="customer_metadata_match",
            type=CheckType.METADATA,
            severity=Severity.LOW,
            fields=["correlationId", "clearing", "achDetails"],
        ),
    ],
)

RECONCILIATION_CONFIGS: List[ReconciliationConfig] = [
    TRANSFER_STATUS_RECONCILIATION,
    CUSTOMER_STATE_RECONCILIATION,
]


def select_configs(
    names: Optional[Iterable[str]] = None,
    configs: Optional[List[ReconciliationConfig]] = None,
) -> List[ReconciliationConfig]:
    """Resolve config names to configurations.

    Args:
        names: Config names; None, empty or containing "all" selects every config.
        configs: Available configurations. Defaults to RECONCILIATION_CONFIGS.

    Returns:
        Selected configurations in declaration order.

    Raises:
        InvalidRequestError: If a name matches no configuration.
    """
    available = configs if configs is not None else RECONCILIATION_CONFIGS
    requested = [name for name in (names or []) if name]
    if not requested or ALL_SCOPE in requested:
        return list(available)

    by_name: Dict[str, ReconciliationConfig] = {config.name: config for config in available}
    unknown = [name for name in requested if name not in by_name]
    if unknown:
        raise InvalidRequestError(f"Unknown reconciliation config: {', '.join(unknown)}")

    return [config for config in available if config.name in requested]


def configs_for_schedule(
    schedule: Schedule,
    configs: Optional[List[ReconciliationConfig]] = None,
) -> List[ReconciliationConfig]:
    """Return the configurations registered for a schedule."""
    available = configs if configs is not None else RECONCILIATION_CONFIGS
    return [config for config in available if config.schedule == schedule]
