"""Premium reconciliation: collected premium versus carrier remittances."""

import asyncio
import logging
import uuid
from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ..connectors.base import CarrierFileSource, CustomerDirectory, TransactionSource
from ..errors import InvalidRequestError
from .carrier_mapping import UNKNOWN_CARRIER, get_carrier_by_policy_type
from .models import (
    BILLING_PERIOD_PATTERN,
    CarrierFile,
    CarrierFileLineItem,
    CarrierRemittance,
    ClientPremium,
    CollectedTransaction,
    CustomerAccount,
    DateRange,
    PolicyTypeBreakdown,
    PremiumReconciliationReport,
    PremiumReconciliationResult,
    ValidationIssue,
    ValidationIssueType,
    ValidationResult,
)
from .reconciler import AMOUNT_EPSILON

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def billing_period_window(billing_period: str) -> Tuple[datetime, datetime]:
    """Return the first and last instant of a YYYY-MM billing period.

    Raises:
        InvalidRequestError: If the period is not formatted as YYYY-MM.
    """
    if not BILLING_PERIOD_PATTERN.match(billing_period or ""):
        raise InvalidRequestError("billingPeriod must be formatted as YYYY-MM")
    year, month = (int(part) for part in billing_period.split("-"))
    start = datetime(year, month, 1)
    last_day = monthrange(year, month)[1]
    end = datetime(year, month, last_day) + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


class PremiumReconciliationEngine:
    """Attributes a billing period's collections to carriers and validates the totals.

    Pipeline:
    1. Load qualifying collected transactions for the window
    2. Match each transaction to a CRM account (customer id, company name, email)
    3. Break the account's policies down by carrier and policy type
    4. Build the report
    5. Build or fetch one carrier file per carrier
    6. Validate carrier file totals against the collected total
    """

    def __init__(
        self,
        transaction_source: TransactionSource,
        customer_directory: Optional[CustomerDirectory] = None,
        carrier_file_source: Optional[CarrierFileSource] = None,
        tolerance: Decimal = AMOUNT_EPSILON,
        lookup_timeout: Optional[float] = None,
    ):
        """Initialize the engine.

        Args:
            transaction_source: Source of collected transactions.
            customer_directory: CRM directory used for carrier attribution.
            carrier_file_source: Optional source of carrier remittance files.
                When absent, files are built from the carrier breakdown.
            tolerance: Largest total difference treated as reconciled.
            lookup_timeout: Seconds allowed per CRM lookup.
        """
        if customer_directory is None and carrier_file_source is None:
            raise ValueError("A customer directory or a carrier file source is required")
        self.transaction_source = transaction_source
        self.customer_directory = customer_directory
        self.carrier_file_source = carrier_file_source
        self.tolerance = tolerance
        self.lookup_timeout = lookup_timeout

    async def _find_account(self, transaction: CollectedTransaction) -> Optional[CustomerAccount]:
        lookup = self.customer_directory.find_customer(
            customer_id=transaction.customer_id,
            company_name=transaction.company_name,
            email=transaction.customer_email,
        )
        if self.lookup_timeout:
            return await asyncio.wait_for(lookup, timeout=self.lookup_timeout)
        return await lookup

    async def match_accounts(
        self,
        transactions: List[CollectedTransaction],
    ) -> Tuple[List[Tuple[CollectedTransaction, CustomerAccount]], List[Tuple[CollectedTransaction, str]]]:
        """Match transactions to CRM accounts.

        Lookup failures are isolated to the transaction.

        Returns:
            Tuple of (matched pairs, unmatched transactions with reason).
        """
        matched: List[Tuple[CollectedTransaction, CustomerAccount]] = []
        unmatched: List[Tuple[CollectedTransaction, str]] = []
        cache: Dict[Tuple[Optional[str], Optional[str], Optional[str]], Optional[CustomerAccount]] = {}

        for transaction in transactions:
            key = (transaction.customer_id, transaction.company_name, transaction.customer_email)
            if key not in cache:
                try:
                    cache[key] = await self._find_account(transaction)
                except Exception as e:
                    logger.warning(
                        f"Customer lookup failed for transaction {transaction.external_id}: "
                        f"{type(e).__name__}: {e}"
                    )
                    unmatched.append((transaction, f"lookup failed: {e}"))
                    continue

            account = cache[key]
            if account is None:
                logger.warning(f"No CRM account found for transaction {transaction.external_id}")
                unmatched.append((transaction, "no matching account"))
            else:
                matched.append((transaction, account))

        return matched, unmatched

    @staticmethod
    def breakdown_by_carrier(
        matched: List[Tuple[CollectedTransaction, CustomerAccount]],
    ) -> List[CarrierRemittance]:
        """Group policy premiums by carrier, then policy type, then client."""
        carriers: Dict[str, CarrierRemittance] = {}

        for transaction, account in matched:
            for policy in account.policies:
                carrier_name = get_carrier_by_policy_type(policy.policy_type)
                carrier = carriers.setdefault(carrier_name, CarrierRemittance(carrier=carrier_name))

                breakdown = next(
                    (item for item in carrier.policy_types if item.policy_type == policy.policy_type),
                    None,
                )
                if breakdown is None:
                    breakdown = PolicyTypeBreakdown(policy_type=policy.policy_type)
                    carrier.policy_types.append(breakdown)

                client = next(
                    (item for item in breakdown.clients if item.transaction_id == transaction.external_id),
                    None,
                )
                if client is None:
                    client = ClientPremium(
                        customer_name=account.name,
                        account_id=account.account_id,
                        transaction_id=transaction.external_id,
                        amount=ZERO,
                    )
                    breakdown.clients.append(client)

                client.amount += policy.amount
                client.employee_count += 1
                breakdown.total_amount += policy.amount
                carrier.total_amount += policy.amount

        return sorted(carriers.values(), key=lambda item: item.carrier)

    @staticmethod
    def build_carrier_files(
        report: PremiumReconciliationReport,
        matched: List[Tuple[CollectedTransaction, CustomerAccount]],
    ) -> List[CarrierFile]:
        """Build one remittance file per carrier from the matched policies."""
        files: Dict[str, CarrierFile] = {}
        for transaction, account in matched:
            for policy in account.policies:
                carrier_name = get_carrier_by_policy_type(policy.policy_type)
                carrier_file = files.setdefault(carrier_name, CarrierFile(
                    carrier=carrier_name,
                    billing_period=report.billing_period,
                    remittance_date=report.generated_at,
                ))
                carrier_file.line_items.append(CarrierFileLineItem(
                    customer_name=account.name,
                    transaction_id=transaction.external_id,
                    policy_type=policy.policy_type,
                    employee_name=policy.employee_name,
                    amount=policy.amount,
                ))
                carrier_file.total_amount += policy.amount
        return sorted(files.values(), key=lambda item: item.carrier)

    def _affected_carriers(
        self,
        report: PremiumReconciliationReport,
        carrier_files: List[CarrierFile],
    ) -> List[str]:
        expected = {carrier.carrier: carrier.total_amount for carrier in report.carriers}
        affected = [
            carrier_file.carrier
            for carrier_file in carrier_files
            if carrier_file.carrier in expected
            and abs(carrier_file.total_amount - expected[carrier_file.carrier]) > self.tolerance
        ]
        affected.extend(
            carrier for carrier in expected
            if carrier not in {carrier_file.carrier for carrier_file in carrier_files}
        )
        return affected or [carrier_file.carrier for carrier_file in carrier_files]

    def _file_warnings(self, carrier_file: CarrierFile) -> List[ValidationIssue]:
        warnings: List[ValidationIssue] = []
        if not carrier_file.carrier:
            warnings.append(ValidationIssue(
                type=ValidationIssueType.INVALID_LINE_ITEM,
                message="Carrier file has no carrier name",
            ))

        if carrier_file.total_amount < ZERO:
            warnings.append(ValidationIssue(
                type=ValidationIssueType.INVALID_LINE_ITEM,
                message=f"Carrier {carrier_file.carrier} has a negative total {_money(carrier_file.total_amount)}",
                carriers=[carrier_file.carrier],
            ))

        for index, item in enumerate(carrier_file.line_items):
            problems = []
            if item.amount < ZERO:
                problems.append(f"negative amount {_money(item.amount)}")
            if not item.customer_name and not item.transaction_id:
                problems.append("missing customer and transaction")
            if not item.policy_type:
                problems.append("missing policy type")
            if problems:
                warnings.append(ValidationIssue(
                    type=ValidationIssueType.INVALID_LINE_ITEM,
                    message=f"Carrier {carrier_file.carrier} line {index + 1}: {', '.join(problems)}",
                    carriers=[carrier_file.carrier],
                    details={"line": index + 1, "transaction_id": item.transaction_id},
                ))

        if carrier_file.line_items:
            line_total = sum((item.amount for item in carrier_file.line_items), ZERO)
            if abs(line_total - carrier_file.total_amount) > self.tolerance:
                warnings.append(ValidationIssue(
                    type=ValidationIssueType.LINE_ITEM_TOTAL_MISMATCH,
                    message=(
                        f"Carrier {carrier_file.carrier} line items sum to {_money(line_total)} "
                        f"but the file total is {_money(carrier_file.total_amount)}"
                    ),
                    carriers=[carrier_file.carrier],
                    details={"line_total": str(line_total), "file_total": str(carrier_file.total_amount)},
                ))
        return warnings

    def validate(
        self,
        report: PremiumReconciliationReport,
        carrier_files: List[CarrierFile],
    ) -> ValidationResult:
        """Validate carrier files against the collected total."""
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        carrier_total = sum((carrier_file.total_amount for carrier_file in carrier_files), ZERO)
        delta = report.total_collected - carrier_total
        if abs(delta) > self.tolerance:
            affected = self._affected_carriers(report, carrier_files)
            direction = "short of" if delta > ZERO else "over"
            errors.append(ValidationIssue(
                type=ValidationIssueType.AMOUNT_MISMATCH,
                message=(
                    f"Total collected ({_money(report.total_collected)}) does not match carrier "
                    f"remittances ({_money(carrier_total)}): remittances are {_money(abs(delta))} "
                    f"{direction} collections; affected carriers: {', '.join(affected) or 'none'}"
                ),
                carriers=affected,
                details={
                    "total_collected": str(report.total_collected),
                    "carrier_total": str(carrier_total),
                    "difference": str(delta),
                },
            ))

        unknown = [carrier_file for carrier_file in carrier_files if carrier_file.carrier == UNKNOWN_CARRIER]
        if unknown:
            unmapped_total = sum((carrier_file.total_amount for carrier_file in unknown), ZERO)
            policy_types = sorted({
                item.policy_type for carrier_file in unknown for item in carrier_file.line_items if item.policy_type
            })
            warnings.append(ValidationIssue(
                type=ValidationIssueType.MISSING_MAPPING,
                message=(
                    f"Found {len(policy_types)} unmapped policy type(s) with total premium "
                    f"{_money(unmapped_total)}"
                ),
                carriers=[UNKNOWN_CARRIER],
                details={"policy_types": policy_types, "total": str(unmapped_total)},
            ))

        for carrier_file in carrier_files:
            warnings.extend(self._file_warnings(carrier_file))

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    async def run(
        self,
        billing_period: str,
        date_range: Optional[DateRange] = None,
        include_pending: bool = False,
    ) -> PremiumReconciliationResult:
        """Run premium reconciliation for a billing period.

        Args:
            billing_period: Period as YYYY-MM.
            date_range: Explicit window; defaults to the whole billing period.
            include_pending: Count transfers that are not yet final.

        Returns:
            PremiumReconciliationResult with report, validation and carrier files.
        """
        if date_range is not None:
            start, end = date_range.start, date_range.end
        else:
            start, end = billing_period_window(billing_period)

        logger.info(
            f"Starting premium reconciliation for {billing_period} "
            f"({start.isoformat()} to {end.isoformat()}, include_pending={include_pending})"
        )

        transactions = await self.transaction_source.list_collected(
            start=start,
            end=end,
            include_pending=include_pending,
        )
        total_collected = sum((transaction.amount for transaction in transactions), ZERO)

        matched: List[Tuple[CollectedTransaction, CustomerAccount]] = []
        unmatched: List[Tuple[CollectedTransaction, str]] = []
        if self.customer_directory is not None:
            matched, unmatched = await self.match_accounts(transactions)

        accounts = {account.account_id for _, account in matched}
        accounts.update(
            transaction.customer_id or transaction.company_name or transaction.customer_email
            or transaction.external_id
            for transaction, _ in unmatched
        )
        if self.customer_directory is None:
            accounts.update(
                transaction.customer_id or transaction.company_name or transaction.customer_email
                or transaction.external_id
                for transaction in transactions
            )

        report = PremiumReconciliationReport(
            report_id=f"recon-{uuid.uuid4()}",
            billing_period=billing_period,
            period_start=start,
            period_end=end,
            include_pending=include_pending,
            total_collected=total_collected,
            total_accounts_processed=len(accounts),
            total_transactions=len(transactions),
            carriers=self.breakdown_by_carrier(matched),
            unmatched_transactions=[transaction.external_id for transaction, _ in unmatched],
        )

        if self.carrier_file_source is not None:
            carrier_files = await self.carrier_file_source.get_carrier_files(billing_period)
        else:
            carrier_files = self.build_carrier_files(report, matched)

        validation = self.validate(report, carrier_files)
        if unmatched:
            unmatched_total = sum((transaction.amount for transaction, _ in unmatched), ZERO)
            validation.warnings.append(ValidationIssue(
                type=ValidationIssueType.MISSING_ACCOUNT,
                message=(
                    f"{len(unmatched)} transaction(s) totaling {_money(unmatched_total)} "
                    f"could not be matched to a customer account"
                ),
                details={
                    "transactions": [
                        {"transaction_id": transaction.external_id, "reason": reason}
                        for transaction, reason in unmatched
                    ],
                },
            ))

        logger.info(
            f"Premium reconciliation for {billing_period} finished: collected "
            f"{_money(total_collected)} across {len(carrier_files)} carrier file(s), "
            f"valid={validation.is_valid}"
        )
        return PremiumReconciliationResult(
            report=report,
            validation=validation,
            carrier_files=carrier_files,
        )
