"""Field comparison between authoritative events and local snapshots."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .models import CheckRule, CheckType, Event, FieldDifference, Snapshot

logger = logging.getLogger(__name__)

# Largest difference treated as equal; half a cent absorbs float noise
# while any whole-cent gap is still reported.
AMOUNT_EPSILON = Decimal("0.005")

# Metadata keys compared when a metadata check names none
DEFAULT_METADATA_FIELDS = ("correlationId", "clearing", "achDetails")

# Event type keywords mapped to the status they imply, checked in order
EVENT_TYPE_STATUSES: Tuple[str, ...] = (
    "completed",
    "failed",
    "cancelled",
    "pending",
    "processing",
    "verified",
    "suspended",
)

UNKNOWN_STATUS = "unknown"


def normalize_status(status: Any) -> Optional[str]:
    """Normalize a status to a canonical form for comparison.

    Args:
        status: Status value from either source.

    Returns:
        Lower-cased, stripped status, or None when absent.
    """
    if status is None:
        return None
    return str(status).strip().lower()


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount into a Decimal.

    Accepts plain numbers, numeric strings and ``{"value": ..., "currency": ...}``
    objects. Currency is not compared.

    Args:
        value: Raw amount.

    Returns:
        Decimal amount, or None when the value is absent.

    Raises:
        ValueError: If the value cannot be read as a number.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        return parse_amount(value.get("value"))
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # str() keeps the float's shortest repr instead of its binary expansion
        return Decimal(str(value))
    if isinstance(value, str):
        text = value.strip().replace(",", "").lstrip("$")
        if not text:
            return None
        try:
            return Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")
    raise ValueError(f"Invalid amount: {value!r}")


def amounts_match(authoritative: Decimal, local: Decimal, epsilon: Decimal = AMOUNT_EPSILON) -> bool:
    """Check if two amounts are within epsilon of each other."""
    return abs(authoritative - local) <= epsilon


def extract_status(event: Event) -> str:
    """Derive the authoritative status carried by an event.

    The payload ``status`` wins; otherwise the status is inferred from
    keywords in the event type.
    """
    status = event.payload.get("status")
    if status:
        return normalize_status(status)

    event_type = event.type.lower()
    for keyword in EVENT_TYPE_STATUSES:
        if keyword in event_type:
            return keyword
    return UNKNOWN_STATUS


class FieldComparator:
    """Compares the latest event of a resource against its local snapshot."""

    def __init__(self, amount_epsilon: Decimal = AMOUNT_EPSILON):
        """Initialize the comparator.

        Args:
            amount_epsilon: Largest amount difference treated as a match.
        """
        self.amount_epsilon = amount_epsilon

    def _compare_existence(self, snapshot: Optional[Snapshot]) -> List[FieldDifference]:
        if snapshot is None:
            return [FieldDifference(field="existence", authoritative_value="exists", local_value="not_found")]
        return []

    def _compare_status(self, event: Event, snapshot: Snapshot) -> List[FieldDifference]:
        authoritative = extract_status(event)
        local = normalize_status(snapshot.status)
        if authoritative != local:
            return [FieldDifference(
                field="status",
                authoritative_value=authoritative,
                local_value=snapshot.status,
            )]
        return []

    def _compare_amount(self, event: Event, snapshot: Snapshot) -> List[FieldDifference]:
        authoritative = parse_amount(event.payload.get("amount"))
        local = parse_amount(snapshot.amount)
        if authoritative is None or local is None:
            return []
        if not amounts_match(authoritative, local, self.amount_epsilon):
            return [FieldDifference(
                field="amount",
                authoritative_value=str(authoritative),
                local_value=str(local),
            )]
        return []

    def _compare_metadata(
        self,
        rule: CheckRule,
        event: Event,
        snapshot: Snapshot,
    ) -> List[FieldDifference]:
        differences: List[FieldDifference] = []
        local_metadata: Dict[str, Any] = snapshot.metadata or {}
        for key in rule.fields or DEFAULT_METADATA_FIELDS:
            authoritative = event.payload.get(key)
            local = local_metadata.get(key)
            if authoritative != local:
                differences.append(FieldDifference(
                    field=f"metadata.{key}",
                    authoritative_value=authoritative,
                    local_value=local,
                ))
        return differences

    def compare(
        self,
        rule: CheckRule,
        event: Event,
        snapshot: Optional[Snapshot],
    ) -> List[FieldDifference]:
        """Run one check rule.

        Field checks only apply when a snapshot exists; a missing snapshot is
        reported by existence checks alone.

        Args:
            rule: Check rule to run.
            event: Latest event for the resource.
            snapshot: Local snapshot, or None when the resource is unknown locally.

        Returns:
            List of FieldDifference, empty on match.

        Raises:
            ValueError: If a compared value cannot be parsed.
        """
        if rule.type == CheckType.EXISTENCE:
            return self._compare_existence(snapshot)
        if snapshot is None:
            return []
        if rule.type == CheckType.STATUS:
            return self._compare_status(event, snapshot)
        if rule.type == CheckType.AMOUNT:
            return self._compare_amount(event, snapshot)
        if rule.type == CheckType.METADATA:
            return self._compare_metadata(rule, event, snapshot)

        logger.warning(f"Unsupported check type {rule.type} for {rule.name}")
        return []
