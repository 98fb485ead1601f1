"""Database-backed implementations of the collaborator interfaces."""

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Awaitable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import (
    WebhookEventRepository,
    TransactionRepository,
    CustomerRepository,
    ProcessingState,
)
from ..database.models import Customer, Transaction, WebhookEvent
from ..reconciliation.models import CollectedTransaction, Event, EventFilter, Snapshot
from .base import EventSink, EventSource, SnapshotStore, TransactionSource

logger = logging.getLogger(__name__)


def event_from_record(record: WebhookEvent) -> Event:
    """Convert a stored webhook event into an Event."""
    return Event(
        id=record.event_id,
        type=record.event_type,
        resource_id=record.resource_id,
        resource_type=record.resource_type,
        payload=record.payload,
        timestamp=record.event_timestamp,
    )


def snapshot_from_transaction(transaction: Transaction) -> Snapshot:
    return Snapshot(
        external_id=transaction.external_id,
        status=transaction.status,
        amount={"value": str(transaction.amount), "currency": transaction.currency},
        metadata=transaction.transfer_metadata or {},
    )


def snapshot_from_customer(customer: Customer) -> Snapshot:
    return Snapshot(
        external_id=customer.external_id,
        status=customer.status,
        metadata=customer.customer_metadata or {},
    )


class DatabaseEventSource(EventSource):
    """Reads processed webhook events from the local event log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize the event source.

        Args:
            session_factory: Factory used to open one session per call.
        """
        self.session_factory = session_factory

    async def get_events(self, event_filter: EventFilter) -> List[Event]:
        async with self.session_factory() as session:
            records = await WebhookEventRepository(session).list_since(
                resource_type=event_filter.resource_type,
                since=event_filter.since,
                until=event_filter.until,
                limit=event_filter.limit,
                processing_state=ProcessingState.COMPLETED.value,
            )
            events = [event_from_record(record) for record in records]

        logger.debug(f"Loaded {len(events)} {event_filter.resource_type or 'any'} events")
        return events


class DatabaseEventSink(EventSink):
    """Queues synthetic events in the caller's session.

    The event commits together with whatever else the session writes, so a
    follow-up event and the resolution that caused it land atomically.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def publish(
        self,
        event_type: str,
        resource_type: str,
        resource_id: str,
        payload: dict,
        metadata: Optional[dict] = None,
    ) -> str:
        event_id = f"reconciliation_{uuid.uuid4()}"
        await WebhookEventRepository(self.session).create(
            event_id=event_id,
            event_type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            payload=payload,
            metadata=metadata,
            processing_state=ProcessingState.QUEUED.value,
            event_timestamp=datetime.utcnow(),
        )
        logger.info(f"Queued {event_type} event {event_id} for {resource_type} {resource_id}")
        return event_id


class DatabaseSnapshotStore(SnapshotStore):
    """Looks up local snapshots of one resource type."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        loader: Callable[[AsyncSession, str], Awaitable[Optional[Snapshot]]],
    ):
        """Initialize the snapshot store.

        Args:
            session_factory: Factory used to open one session per lookup, so
                lookups may run concurrently.
            loader: Coroutine loading a snapshot by external ID from a session.
        """
        self.session_factory = session_factory
        self.loader = loader

    async def get_by_external_id(self, external_id: str) -> Optional[Snapshot]:
        async with self.session_factory() as session:
            return await self.loader(session, external_id)


async def load_transfer_snapshot(session: AsyncSession, external_id: str) -> Optional[Snapshot]:
    transaction = await TransactionRepository(session).get_by_external_id(external_id)
    if transaction is None:
        return None
    return snapshot_from_transaction(transaction)


async def load_customer_snapshot(session: AsyncSession, external_id: str) -> Optional[Snapshot]:
    customer = await CustomerRepository(session).get_by_external_id(external_id)
    if customer is None:
        return None
    return snapshot_from_customer(customer)


def default_snapshot_stores(
    session_factory: async_sessionmaker[AsyncSession],
) -> Dict[str, SnapshotStore]:
    """Build the snapshot stores keyed by resource type."""
    return {
        "transfer": DatabaseSnapshotStore(session_factory, load_transfer_snapshot),
        "customer": DatabaseSnapshotStore(session_factory, load_customer_snapshot),
    }


class DatabaseTransactionSource(TransactionSource):
    """Reads collected-premium transfers from the local transactions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_collected(
        self,
        start: datetime,
        end: datetime,
        include_pending: bool = False,
    ) -> List[CollectedTransaction]:
        async with self.session_factory() as session:
            records = await TransactionRepository(session).list_collected(
                start=start,
                end=end,
                include_pending=include_pending,
            )
            transactions = [
                CollectedTransaction(
                    external_id=record.external_id,
                    amount=record.amount,
                    status=record.status,
                    customer_id=record.customer_id,
                    customer_name=record.customer_name,
                    company_name=record.company_name,
                    customer_email=record.customer_email,
                    collected_at=record.processed_at or record.created_at,
                )
                for record in records
            ]

        logger.info(
            f"Loaded {len(transactions)} collected transactions between "
            f"{start.isoformat()} and {end.isoformat()}"
        )
        return transactions
