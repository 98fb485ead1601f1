"""Collaborator interfaces and adapters for reconciliation."""

from .base import (
    EventSource,
    EventSink,
    SnapshotStore,
    TransactionSource,
    CustomerDirectory,
    CarrierFileSource,
)
from .database_adapters import (
    DatabaseEventSource,
    DatabaseEventSink,
    DatabaseSnapshotStore,
    DatabaseTransactionSource,
    default_snapshot_stores,
)
from .stripe_events import StripeEventSource
from .hubspot import HubSpotDirectory, HubSpotError

__all__ = [
    "EventSource",
    "EventSink",
    "SnapshotStore",
    "TransactionSource",
    "CustomerDirectory",
    "CarrierFileSource",
    "DatabaseEventSource",
    "DatabaseEventSink",
    "DatabaseSnapshotStore",
    "DatabaseTransactionSource",
    "default_snapshot_stores",
    "StripeEventSource",
    "HubSpotDirectory",
    "HubSpotError",
]
