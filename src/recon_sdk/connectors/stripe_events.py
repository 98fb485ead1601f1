"""Stripe event source for reconciliation."""

import os
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from ..reconciliation.models import Event, EventFilter
from .base import EventSource

logger = logging.getLogger(__name__)

# Stripe object types mapped to local resource types
OBJECT_RESOURCE_TYPES = {
    "payment_intent": "transfer",
    "charge": "transfer",
    "customer": "customer",
}

# Stripe event type prefixes fetched per local resource type
RESOURCE_EVENT_TYPES = {
    "transfer": "payment_intent.*",
    "customer": "customer.*",
}

# Stripe statuses mapped to local transfer statuses
STATUS_MAPPING = {
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "requires_capture": "pending",
    "processing": "processing",
    "succeeded": "completed",
    "canceled": "cancelled",
    "failed": "failed",
}


class StripeEventSource(EventSource):
    """Fetches provider events from the Stripe Events API."""

    # Fields that should not be copied into event payloads
    SENSITIVE_FIELDS = frozenset([
        'client_secret',
        'payment_method',
        'payment_method_details',
        'source',
        'card',
        'bank_account',
    ])

    def __init__(self, api_key: Optional[str] = None, page_size: int = 100):
        """Initialize the Stripe event source.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.
            page_size: Events requested per API call (max 100).

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )
        self.page_size = min(page_size, 100)

    def _configure_stripe(self) -> None:
        """Configure the Stripe SDK with the API key."""
        stripe.api_key = self._api_key

    def _to_payload(self, data_object: Dict[str, Any]) -> Dict[str, Any]:
        """Flatten a Stripe object into the payload shape compared locally."""
        payload: Dict[str, Any] = dict(data_object.get("metadata") or {})
        for key, value in data_object.items():
            if key in self.SENSITIVE_FIELDS or key == "metadata":
                continue
            if isinstance(value, (str, int, float, bool)) or value is None:
                payload.setdefault(key, value)

        status = data_object.get("status")
        if status:
            payload["status"] = STATUS_MAPPING.get(status, status)

        amount = data_object.get("amount")
        if amount is not None:
            # Stripe amounts are in minor units
            payload["amount"] = {
                "value": str(Decimal(amount) / 100),
                "currency": str(data_object.get("currency") or "usd").upper(),
            }
        return payload

    def _convert_event(self, stripe_event: Any) -> Optional[Event]:
        """Convert a Stripe Event into an Event, or None if it has no known resource."""
        raw = stripe_event.to_dict() if hasattr(stripe_event, "to_dict") else dict(stripe_event)
        data_object = (raw.get("data") or {}).get("object") or {}
        resource_type = OBJECT_RESOURCE_TYPES.get(data_object.get("object"))
        if resource_type is None:
            return None

        return Event(
            id=raw["id"],
            type=raw["type"],
            resource_id=data_object.get("id"),
            resource_type=resource_type,
            payload=self._to_payload(data_object),
            timestamp=datetime.fromtimestamp(raw["created"], tz=timezone.utc).replace(tzinfo=None),
        )

    def _list_events(self, event_filter: EventFilter) -> List[Event]:
        self._configure_stripe()

        params: Dict[str, Any] = {"limit": self.page_size}
        created: Dict[str, int] = {}
        if event_filter.since:
            created["gte"] = int(event_filter.since.replace(tzinfo=timezone.utc).timestamp())
        if event_filter.until:
            created["lte"] = int(event_filter.until.replace(tzinfo=timezone.utc).timestamp())
        if created:
            params["created"] = created
        if event_filter.resource_type in RESOURCE_EVENT_TYPES:
            params["type"] = RESOURCE_EVENT_TYPES[event_filter.resource_type]

        events: List[Event] = []
        try:
            page = stripe.Event.list(**params)
            for stripe_event in page.auto_paging_iter():
                event = self._convert_event(stripe_event)
                if event is None:
                    continue
                if event_filter.resource_type and event.resource_type != event_filter.resource_type:
                    continue
                events.append(event)
                if event_filter.limit and len(events) >= event_filter.limit:
                    break
        except stripe.AuthenticationError as e:
            logger.error("Stripe authentication failed")
            raise ValueError("Invalid Stripe API key") from e
        except stripe.APIConnectionError as e:
            logger.error("Failed to connect to Stripe API")
            raise ConnectionError("Failed to connect to Stripe API") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe API error: {type(e).__name__}")
            raise RuntimeError(f"Stripe API error: {e}") from e

        # Stripe lists newest first
        events.sort(key=lambda event: event.timestamp)
        logger.info(f"Fetched {len(events)} events from Stripe")
        return events

    async def get_events(self, event_filter: EventFilter) -> List[Event]:
        # The Stripe SDK is synchronous
        return await asyncio.to_thread(self._list_events, event_filter)
