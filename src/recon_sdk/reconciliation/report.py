"""Report generation for reconciliation jobs."""

import csv
import io
import json
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..database.models import ReconciliationDiscrepancy, ReconciliationJob
from .models import Severity

# Discrepancies per checks, in percent, above which the run is flagged
HIGH_ERROR_RATE = 5.0
LOW_RESOLUTION_RATE = 80.0
FREQUENT_ISSUE_COUNT = 10
STATUS_MISMATCH_COUNT = 5
TOP_ISSUE_LIMIT = 10
EXAMPLES_PER_ISSUE = 3


class ReconciliationReporter:
    """Builds summaries and renderings of one reconciliation job."""

    def __init__(
        self,
        job: ReconciliationJob,
        discrepancies: List[ReconciliationDiscrepancy],
        check_names: Optional[Dict[str, str]] = None,
    ):
        """Initialize the reporter.

        Args:
            job: The job to report on.
            discrepancies: Every discrepancy recorded by the job's checks.
            check_names: Check name per check ID, used to group top issues.
        """
        self.job = job
        self.discrepancies = discrepancies
        self.check_names = check_names or {}

    @property
    def totals(self) -> Dict[str, Any]:
        results = self.job.results or {}
        return results.get("totals") or {}

    def summary(self) -> Dict[str, Any]:
        """Summarize duration, status and totals of the job."""
        started = self.job.started_at or self.job.created_at
        ended = self.job.completed_at or datetime.utcnow()
        totals = self.totals

        total_checks = totals.get("total_checks", 0)
        found = totals.get("discrepancies_found", 0)
        resolved = sum(1 for item in self.discrepancies if item.resolved)
        unresolved = len(self.discrepancies) - resolved
        critical = sum(
            1 for item in self.discrepancies
            if not item.resolved and item.severity == Severity.CRITICAL.value
        )

        return {
            "run_id": self.job.id,
            "type": self.job.type,
            "status": self.job.status,
            "start_time": started.isoformat() if started else None,
            "end_time": ended.isoformat(),
            "duration_seconds": round((ended - started).total_seconds(), 3) if started else None,
            "total_checks": total_checks,
            "total_discrepancies": len(self.discrepancies),
            "resolved_discrepancies": resolved,
            "unresolved_discrepancies": unresolved,
            "critical_issues": critical,
            "errors_encountered": totals.get("errors_encountered", 0),
            "error_rate": round(found / total_checks * 100, 2) if total_checks else 0.0,
            "resolution_rate": round(resolved / len(self.discrepancies) * 100, 2) if self.discrepancies else 100.0,
        }

    def by_resource_type(self) -> Dict[str, int]:
        return dict(Counter(item.resource_type for item in self.discrepancies))

    def by_field(self) -> Dict[str, int]:
        return dict(Counter(item.field for item in self.discrepancies))

    def by_severity(self) -> Dict[str, int]:
        return dict(Counter(item.severity for item in self.discrepancies))

    def top_issues(self, limit: int = TOP_ISSUE_LIMIT) -> List[Dict[str, Any]]:
        """Group discrepancies by check name, most frequent first."""
        groups: Dict[str, List[ReconciliationDiscrepancy]] = defaultdict(list)
        for item in self.discrepancies:
            name = self.check_names.get(item.check_id) or f"{item.resource_type}.{item.field}"
            groups[name].append(item)

        issues = [
            {
                "check_name": name,
                "count": len(items),
                "severity": items[0].severity,
                "examples": [
                    {
                        "resource_id": item.resource_id,
                        "field": item.field,
                        "authoritative_value": item.authoritative_value,
                        "local_value": item.local_value,
                    }
                    for item in items[:EXAMPLES_PER_ISSUE]
                ],
            }
            for name, items in groups.items()
        ]
        issues.sort(key=lambda issue: issue["count"], reverse=True)
        return issues[:limit]

    def recommendations(self) -> List[str]:
        summary = self.summary()
        issues = self.top_issues()
        recommendations: List[str] = []

        if summary["error_rate"] > HIGH_ERROR_RATE:
            recommendations.append(
                f"High discrepancy rate detected ({summary['error_rate']:.2f}%). Investigate webhook "
                f"delivery issues or synchronization delays."
            )
        if summary["critical_issues"]:
            recommendations.append(
                f"{summary['critical_issues']} critical issue(s) require immediate attention. Review "
                f"amount mismatches and missing resources."
            )
        if self.discrepancies and summary["resolution_rate"] < LOW_RESOLUTION_RATE:
            recommendations.append(
                f"Resolution rate is {summary['resolution_rate']:.2f}%. Consider enabling "
                f"auto-resolution for more check types."
            )
        if summary["errors_encountered"]:
            recommendations.append(
                f"{summary['errors_encountered']} check(s) could not be completed. Check the "
                f"availability of the event source and snapshot stores."
            )

        for issue in issues[:3]:
            if issue["count"] > FREQUENT_ISSUE_COUNT:
                recommendations.append(
                    f'"{issue["check_name"]}" is failing frequently ({issue["count"]} times). '
                    f"Consider specific handling for this issue."
                )

        status_issues = sum(issue["count"] for issue in issues if "status" in issue["check_name"])
        if status_issues > STATUS_MISMATCH_COUNT:
            recommendations.append(
                "Multiple status mismatches detected. Ensure webhook events are processed in order."
            )
        return recommendations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "discrepancies_by_resource_type": self.by_resource_type(),
            "discrepancies_by_field": self.by_field(),
            "discrepancies_by_severity": self.by_severity(),
            "top_issues": self.top_issues(),
            "recommendations": self.recommendations(),
            "errors": self.job.errors,
        }

    def to_json(self, indent: int = 2) -> str:
        """Generate JSON representation of the report."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def to_csv(self) -> str:
        """Generate CSV rows, one per discrepancy."""
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "discrepancy_id", "check_name", "resource_type", "resource_id", "field",
            "severity", "authoritative_value", "local_value", "resolved", "resolved_by",
            "detected_at",
        ])
        for item in self.discrepancies:
            writer.writerow([
                item.id,
                self.check_names.get(item.check_id, ""),
                item.resource_type,
                item.resource_id,
                item.field,
                item.severity,
                item.authoritative_value,
                item.local_value,
                item.resolved,
                item.resolved_by or "",
                item.detected_at.isoformat() if item.detected_at else "",
            ])
        return output.getvalue()

    def _premium_lines(self) -> List[str]:
        results = self.job.results or {}
        report = results.get("report") or {}
        validation = results.get("validation") or {}
        lines = [
            "",
            "Premium Reconciliation:",
            f"  Billing Period: {report.get('billing_period', 'N/A')}",
            f"  Total Collected: {report.get('total_collected', 'N/A')}",
            f"  Accounts Processed: {report.get('total_accounts_processed', 0)}",
            f"  Carrier Files: {len(results.get('carrier_files') or [])}",
            f"  Valid: {validation.get('is_valid', 'N/A')}",
        ]
        for issue in validation.get("errors") or []:
            lines.append(f"  ERROR: {issue.get('message')}")
        for issue in validation.get("warnings") or []:
            lines.append(f"  WARNING: {issue.get('message')}")
        return lines

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report."""
        summary = self.summary()
        lines = [
            "=" * 60,
            "RECONCILIATION REPORT SUMMARY",
            "=" * 60,
            f"Run ID: {summary['run_id']}",
            f"Type: {summary['type']}",
            f"Status: {summary['status']}",
            f"Started: {summary['start_time']}",
            f"Ended: {summary['end_time']}",
            f"Duration: {summary['duration_seconds']}s",
            "",
            "Statistics:",
            f"  Total Checks: {summary['total_checks']}",
            f"  Discrepancies: {summary['total_discrepancies']}",
            f"  Resolved: {summary['resolved_discrepancies']}",
            f"  Unresolved: {summary['unresolved_discrepancies']}",
            f"  Critical: {summary['critical_issues']}",
            f"  Errors: {summary['errors_encountered']}",
            f"  Discrepancy Rate: {summary['error_rate']:.2f}%",
        ]

        if self.job.type == "premium_reconciliation":
            lines.extend(self._premium_lines())

        issues = self.top_issues()
        if issues:
            lines.extend(["", "Top Issues:"])
            for issue in issues:
                lines.append(f"  {issue['check_name']}: {issue['count']} ({issue['severity']})")
                for example in issue["examples"]:
                    lines.append(
                        f"    - {example['resource_id']} {example['field']}: "
                        f"{example['local_value']} (local) vs {example['authoritative_value']} (provider)"
                    )

        recommendations = self.recommendations()
        if recommendations:
            lines.extend(["", "Recommendations:"])
            lines.extend(f"  - {item}" for item in recommendations)

        errors = self.job.errors or {}
        if errors.get("message"):
            lines.extend(["", "Error:", f"  {errors['message']}"])

        lines.append("=" * 60)
        return "\n".join(lines)
