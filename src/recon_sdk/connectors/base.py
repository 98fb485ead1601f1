from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from ..reconciliation.models import (
    CarrierFile,
    CollectedTransaction,
    CustomerAccount,
    Event,
    EventFilter,
    Snapshot,
)


class EventSource(ABC):
    """
    Source of authoritative provider events. Implementations may suspend on
    network I/O but must not mutate local state.
    """

    @abstractmethod
    async def get_events(self, event_filter: EventFilter) -> List[Event]:
        """
        Return events matching the filter, oldest first.
        """
        raise NotImplementedError


class EventSink(ABC):
    """Destination for synthetic follow-up events."""

    @abstractmethod
    async def publish(
        self,
        event_type: str,
        resource_type: str,
        resource_id: str,
        payload: dict,
        metadata: Optional[dict] = None,
    ) -> str:
        """
        Queue an event for normal processing; return its event id.
        """
        raise NotImplementedError


class SnapshotStore(ABC):
    """Lookup of the locally persisted state of one resource type."""

    @abstractmethod
    async def get_by_external_id(self, external_id: str) -> Optional[Snapshot]:
        raise NotImplementedError


class TransactionSource(ABC):
    """Collected-premium transactions for a date window."""

    @abstractmethod
    async def list_collected(
        self,
        start: datetime,
        end: datetime,
        include_pending: bool = False,
    ) -> List[CollectedTransaction]:
        raise NotImplementedError


class CustomerDirectory(ABC):
    """CRM lookup of customer accounts and their policies."""

    @abstractmethod
    async def find_customer(
        self,
        customer_id: Optional[str] = None,
        company_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[CustomerAccount]:
        """
        Find the account paying a transfer, trying the payments customer id,
        then the company name, then the email.
        """
        raise NotImplementedError


class CarrierFileSource(ABC):
    """Per-carrier remittance files for a billing period."""

    @abstractmethod
    async def get_carrier_files(self, billing_period: str) -> List[CarrierFile]:
        raise NotImplementedError
