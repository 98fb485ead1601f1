"""HubSpot CRM directory used to attribute collected premium to policies.

Companies carry the payments customer id in ``dwolla_customer_id`` and the
owner email in ``email___owner``. Policies hang off Summary of Benefits
objects associated with the company.
"""

import os
import asyncio
import random
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from ..reconciliation.models import CustomerAccount, PolicyLineItem
from .base import CustomerDirectory

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.hubapi.com"

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 10.0
MAX_RETRY_AFTER_SECONDS = 60.0
RETRY_STATUS_CODES = frozenset({429, 502, 503, 504})

# Custom object type ids of the CRM portal
SUMMARY_OF_BENEFITS_OBJECT = "2-45680577"
POLICY_OBJECT = "2-45586773"

COMPANY_PROPERTIES = ["name", "domain", "email___owner", "dwolla_customer_id", "hs_object_id"]
POLICY_PROPERTIES = [
    "policy_number",
    "policy_holder_name",
    "coverage_type",
    "coverage_level",
    "premium_amount",
    "status",
]


class HubSpotError(Exception):
    """HubSpot API error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HubSpotDirectory(CustomerDirectory):
    """Async HubSpot client resolving transfers to customer accounts."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        """Initialize the directory.

        Args:
            access_token: Private app token. Falls back to HUBSPOT_ACCESS_TOKEN env var.
            base_url: API base URL. Falls back to HUBSPOT_BASE_URL env var.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport, used by tests.
            max_retries: Retries of a rate-limited or failed request.
            backoff_seconds: Initial backoff, doubled on every retry.

        Raises:
            ValueError: If no access token is provided or found.
        """
        self.access_token = access_token or os.getenv("HUBSPOT_ACCESS_TOKEN")
        if not self.access_token:
            raise ValueError(
                "HUBSPOT_ACCESS_TOKEN must be provided either as argument or environment variable"
            )
        self.base_url = (base_url or os.getenv("HUBSPOT_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = max(0.0, backoff_seconds)

    def _headers(self) -> Dict[str, str]:
        """Get request headers with authorization."""
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Seconds asked for by a Retry-After header, in delta-seconds or HTTP-date form."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
        try:
            retry_at = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            return None
        return max(0.0, (retry_at - datetime.now(retry_at.tzinfo)).total_seconds())

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with up to 25% jitter."""
        delay = min(self.backoff_seconds * (2 ** attempt), MAX_BACKOFF_SECONDS)
        return delay + random.uniform(0, 0.25 * delay)

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an API request.

        Rate limits, gateway errors and transport failures are retried up to
        max_retries times, honouring Retry-After when the API sends one.

        Raises:
            HubSpotError: On non-2xx responses or transport failures once
                retries are exhausted.
        """
        for attempt in range(self.max_retries + 1):
            retries_left = attempt < self.max_retries
            try:
                response = await client.request(method, endpoint, json=json)
            except httpx.TransportError as e:
                if retries_left:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"HubSpot request to {endpoint} failed ({e}); retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"HubSpot request to {endpoint} failed: {e}")
                raise HubSpotError(f"Request failed: {e}") from e
            except httpx.HTTPError as e:
                logger.error(f"HubSpot request to {endpoint} failed: {e}")
                raise HubSpotError(f"Request failed: {e}") from e

            if response.status_code in RETRY_STATUS_CODES and retries_left:
                delay = self._parse_retry_after(response)
                if delay is None:
                    delay = self._calculate_backoff(attempt)
                delay = min(delay, MAX_RETRY_AFTER_SECONDS)
                logger.warning(
                    f"HubSpot returned {response.status_code} on {endpoint}; "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                body = response.text[:500]
                logger.error(f"HubSpot API error {response.status_code} on {endpoint}: {body}")
                raise HubSpotError(
                    f"API error {response.status_code}: {body}",
                    status_code=response.status_code,
                )
            return response.json()

    async def _search_companies(
        self,
        client: httpx.AsyncClient,
        property_name: str,
        value: str,
    ) -> List[Dict[str, Any]]:
        operator = "CONTAINS_TOKEN" if property_name == "name" else "EQ"
        data = await self._request(
            client,
            "POST",
            "/crm/v3/objects/companies/search",
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": property_name, "operator": operator, "value": value}]}
                ],
                "properties": COMPANY_PROPERTIES,
                "limit": 10,
            },
        )
        return data.get("results", [])

    async def _associated_ids(
        self,
        client: httpx.AsyncClient,
        from_type: str,
        from_id: str,
        to_type: str,
    ) -> List[str]:
        data = await self._request(
            client, "GET", f"/crm/v3/objects/{from_type}/{from_id}/associations/{to_type}"
        )
        return [str(result["id"]) for result in data.get("results", [])]

    async def _batch_read(
        self,
        client: httpx.AsyncClient,
        object_type: str,
        object_ids: List[str],
        properties: List[str],
    ) -> List[Dict[str, Any]]:
        if not object_ids:
            return []
        data = await self._request(
            client,
            "POST",
            f"/crm/v3/objects/{object_type}/batch/read",
            json={"inputs": [{"id": object_id} for object_id in object_ids], "properties": properties},
        )
        return data.get("results", [])

    async def _company_policies(self, client: httpx.AsyncClient, company_id: str) -> List[PolicyLineItem]:
        sob_ids = await self._associated_ids(client, "companies", company_id, SUMMARY_OF_BENEFITS_OBJECT)
        policy_id_lists = await asyncio.gather(*[
            self._associated_ids(client, SUMMARY_OF_BENEFITS_OBJECT, sob_id, POLICY_OBJECT)
            for sob_id in sob_ids
        ])
        policy_ids = [policy_id for ids in policy_id_lists for policy_id in ids]
        records = await self._batch_read(client, POLICY_OBJECT, policy_ids, POLICY_PROPERTIES)
        return [self._to_policy(record) for record in records]

    @staticmethod
    def _to_policy(record: Dict[str, Any]) -> PolicyLineItem:
        properties = record.get("properties") or {}
        try:
            amount = Decimal(str(properties.get("premium_amount") or "0"))
        except InvalidOperation:
            logger.warning(f"Policy {record.get('id')} has invalid premium {properties.get('premium_amount')!r}")
            amount = Decimal("0")
        return PolicyLineItem(
            policy_type=str(properties.get("coverage_type") or ""),
            amount=amount,
            employee_name=properties.get("policy_holder_name") or None,
            coverage_level=properties.get("coverage_level") or None,
        )

    async def find_customer(
        self,
        customer_id: Optional[str] = None,
        company_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[CustomerAccount]:
        searches = [
            ("dwolla_customer_id", customer_id),
            ("name", company_name),
            ("email___owner", email),
        ]
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            for property_name, value in searches:
                if not value:
                    continue
                companies = await self._search_companies(client, property_name, value)
                if not companies:
                    logger.debug(f"No HubSpot company for {property_name}={value}")
                    continue

                company = companies[0]
                properties = company.get("properties") or {}
                policies = await self._company_policies(client, str(company["id"]))
                logger.info(
                    f"Matched HubSpot company {company['id']} by {property_name} "
                    f"with {len(policies)} policies"
                )
                return CustomerAccount(
                    account_id=str(company["id"]),
                    name=properties.get("name") or "",
                    email=properties.get("email___owner"),
                    policies=policies,
                )

        return None
