"""Tests for API endpoints."""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient
from starlette.requests import Request

from recon_sdk.api import app
from recon_sdk.auth import client_key
from recon_sdk.database import get_async_session_factory
from recon_sdk.reconciliation import (
    CheckRule,
    CheckType,
    CustomerAccount,
    PolicyLineItem,
    ReconciliationConfig,
    ReconciliationJobManager,
    Severity,
    Snapshot,
)

from fakes import (
    FakeCustomerDirectory,
    FakeEventSource,
    FakeSnapshotStore,
    FakeTransactionSource,
    collected,
    make_event,
)

MANUAL_TRANSFER_CONFIG = ReconciliationConfig(
    name="manual_transfer_reconciliation",
    resource_type="transfer",
    checks=[
        CheckRule(name="transfer_exists", type=CheckType.EXISTENCE, severity=Severity.CRITICAL),
        CheckRule(name="transfer_status_match", type=CheckType.STATUS, severity=Severity.HIGH),
    ],
)


def build_manager(transactions=None):
    return ReconciliationJobManager(
        get_async_session_factory(),
        event_source=FakeEventSource([make_event("transfer-123", status="completed", amount="100.00")]),
        snapshot_stores={
            "transfer": FakeSnapshotStore({
                "transfer-123": Snapshot(external_id="transfer-123", status="pending", amount="100.00"),
            }),
        },
        transaction_source=FakeTransactionSource(
            transactions if transactions is not None
            else [collected("transfer-1", "100.00", customer_id="cust-acme")]
        ),
        customer_directory=FakeCustomerDirectory({
            "cust-acme": CustomerAccount(
                account_id="101",
                name="Acme Corp",
                policies=[PolicyLineItem(policy_type="Dental", amount=Decimal("100.00"))],
            ),
        }),
        configs=[MANUAL_TRANSFER_CONFIG],
        batch_delay=0,
    )


@pytest.fixture
def client(mock_api_key):
    """Create test client with an in-memory database and fake collaborators."""
    with TestClient(app) as test_client:
        app.state.reconciliation_manager = build_manager()
        yield test_client


@pytest.fixture
def run_job(client, auth_headers):
    """Run the manual transfer config once and return the job."""
    response = client.post(
        "/reconciliation",
        json={"configName": "manual_transfer_reconciliation"},
        headers=auth_headers,
    )
    assert response.status_code == 201
    return response.json()["job"]


class TestAuthentication:
    """Tests for API key checks."""

    def test_missing_auth(self, client):
        response = client.get("/reconciliation")

        assert response.status_code in (401, 403)

    def test_invalid_auth(self, client):
        response = client.get("/reconciliation", headers={"Authorization": "Bearer invalid_key"})

        assert response.status_code == 401

    def test_health_is_public(self, client):
        response = client.get("/reconciliation/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "reconciliation"}


class TestStartReconciliation:
    """Tests for POST /reconciliation."""

    def test_run_single_config(self, run_job):
        assert run_job["status"] == "completed"
        assert run_job["type"] == "manual_transfer_reconciliation"
        assert run_job["created_by"] == "api"
        assert run_job["results"]["totals"]["discrepancies_found"] == 1

    def test_run_all(self, client, auth_headers):
        response = client.post("/reconciliation", json={}, headers=auth_headers)

        assert response.status_code == 201
        assert response.json()["job"]["type"] == "all"

    def test_config_name_list(self, client, auth_headers):
        response = client.post(
            "/reconciliation",
            json={"configName": ["manual_transfer_reconciliation"], "forceRun": True},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["job"]["config"]["force_run"] is True

    def test_unknown_config(self, client, auth_headers):
        response = client.post("/reconciliation", json={"configName": "nope"}, headers=auth_headers)

        assert response.status_code == 400

    def test_run_in_progress(self, client, auth_headers):
        app.state.reconciliation_manager.guard.acquire("all")

        response = client.post("/reconciliation", json={}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["detail"] == "Reconciliation already in progress"


class TestBatchReconciliation:
    """Tests for POST /reconciliation/batch."""

    def test_window_required_without_catch_up(self, client, auth_headers):
        response = client.post(
            "/reconciliation/batch",
            json={"startDate": "2025-01-01T00:00:00"},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_explicit_window(self, client, auth_headers):
        response = client.post(
            "/reconciliation/batch",
            json={
                "configName": "manual_transfer_reconciliation",
                "startDate": "2025-01-01T00:00:00",
                "endDate": "2025-01-31T23:59:59",
            },
            headers=auth_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["type"] == "batch"
        assert body["job"]["config"]["since"] == "2025-01-01T00:00:00"
        assert body["job"]["results"]["totals"]["events_scanned"] == 0

    def test_reversed_window(self, client, auth_headers):
        response = client.post(
            "/reconciliation/batch",
            json={"startDate": "2025-02-01T00:00:00", "endDate": "2025-01-01T00:00:00"},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_catch_up(self, client, auth_headers):
        response = client.post(
            "/reconciliation/batch",
            json={"configName": "manual_transfer_reconciliation", "catchUp": True, "daysBack": 7},
            headers=auth_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["type"] == "catch_up"
        assert body["job"]["results"]["totals"]["events_scanned"] == 1

    def test_catch_up_rejects_non_positive_days(self, client, auth_headers):
        response = client.post(
            "/reconciliation/batch",
            json={"catchUp": True, "daysBack": 0},
            headers=auth_headers,
        )

        assert response.status_code == 422


class TestHistoryAndReports:
    """Tests for GET /reconciliation."""

    def test_history(self, client, auth_headers, run_job):
        response = client.get("/reconciliation", params={"hours": 24}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["count"] == 1
        assert data["runs"][0]["id"] == run_job["id"]

    def test_history_rejects_non_positive_hours(self, client, auth_headers):
        response = client.get("/reconciliation", params={"hours": 0}, headers=auth_headers)

        assert response.status_code == 422

    def test_report_json(self, client, auth_headers, run_job):
        response = client.get("/reconciliation", params={"runId": run_job["id"]}, headers=auth_headers)

        assert response.status_code == 200
        report = response.json()["report"]
        assert report["summary"]["run_id"] == run_job["id"]
        assert report["top_issues"][0]["check_name"] == "transfer_status_match"

    def test_report_text_and_csv(self, client, auth_headers, run_job):
        text = client.get(
            "/reconciliation",
            params={"runId": run_job["id"], "format": "text"},
            headers=auth_headers,
        )
        csv_response = client.get(
            "/reconciliation",
            params={"runId": run_job["id"], "format": "csv"},
            headers=auth_headers,
        )

        assert "RECONCILIATION REPORT SUMMARY" in text.text
        assert csv_response.headers["content-type"].startswith("text/csv")
        assert csv_response.text.startswith("discrepancy_id,check_name")

    def test_report_bad_format(self, client, auth_headers, run_job):
        response = client.get(
            "/reconciliation",
            params={"runId": run_job["id"], "format": "xml"},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_report_unknown_run(self, client, auth_headers):
        response = client.get("/reconciliation", params={"runId": "missing"}, headers=auth_headers)

        assert response.status_code == 404


class TestDiscrepancies:
    """Tests for discrepancy listing and resolution."""

    def test_list_and_resolve(self, client, auth_headers, run_job):
        listing = client.get(f"/reconciliation/jobs/{run_job['id']}/discrepancies", headers=auth_headers)

        assert listing.status_code == 200
        data = listing.json()
        assert data["count"] == 1
        discrepancy = data["discrepancies"][0]
        assert discrepancy["field"] == "status"
        assert discrepancy["authoritative_value"] == '"completed"'

        resolved = client.post(
            f"/reconciliation/discrepancies/{discrepancy['id']}/resolve",
            json={"type": "accept_webhook", "details": {"note": "checked with provider"}},
            headers=auth_headers,
        )
        assert resolved.status_code == 200
        assert resolved.json()["discrepancy"]["resolved"] is True
        assert resolved.json()["discrepancy"]["resolved_by"] == "manual"

        again = client.post(
            f"/reconciliation/discrepancies/{discrepancy['id']}/resolve",
            json={"type": "manual_override"},
            headers=auth_headers,
        )
        assert again.status_code == 400

        remaining = client.get(f"/reconciliation/jobs/{run_job['id']}/discrepancies", headers=auth_headers)
        assert remaining.json()["count"] == 0

    def test_resolve_auto_corrected_rejected(self, client, auth_headers):
        response = client.post(
            "/reconciliation/discrepancies/any/resolve",
            json={"type": "auto_corrected"},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_resolve_unknown(self, client, auth_headers):
        response = client.post(
            "/reconciliation/discrepancies/missing/resolve",
            json={"type": "accept_actual"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    def test_resolve_invalid_type(self, client, auth_headers):
        response = client.post(
            "/reconciliation/discrepancies/any/resolve",
            json={"type": "ignore"},
            headers=auth_headers,
        )

        assert response.status_code == 422

    def test_discrepancies_unknown_job(self, client, auth_headers):
        response = client.get("/reconciliation/jobs/missing/discrepancies", headers=auth_headers)

        assert response.status_code == 404


class TestPremiumReconciliation:
    """Tests for the premium endpoints."""

    def test_start_and_fetch(self, client, auth_headers):
        response = client.post(
            "/reconciliation/premium",
            json={"billingPeriod": "2025-01"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "pending"
        assert data["message"] == "Premium reconciliation started for 2025-01"

        fetched = client.get("/reconciliation/premium", params={"jobId": data["jobId"]}, headers=auth_headers)
        assert fetched.status_code == 200
        job = fetched.json()["job"]
        assert job["status"] == "completed"
        assert job["results"]["validation"]["is_valid"] is True

    def test_missing_billing_period(self, client, auth_headers):
        response = client.post("/reconciliation/premium", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "billingPeriod is required"

    def test_invalid_billing_period(self, client, auth_headers):
        response = client.post(
            "/reconciliation/premium",
            json={"billingPeriod": "January"},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_invalid_date_range(self, client, auth_headers):
        response = client.post(
            "/reconciliation/premium",
            json={
                "billingPeriod": "2025-01",
                "dateRange": {"start": "2025-01-31T00:00:00", "end": "2025-01-01T00:00:00"},
            },
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_active_job_returned_with_200(self, client, auth_headers):
        manager = app.state.reconciliation_manager
        pending = client.portal.call(manager.create_premium_job, "2025-03")

        response = client.post(
            "/reconciliation/premium",
            json={"billingPeriod": "2025-03"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["jobId"] == pending.id
        assert data["status"] == "pending"
        assert data["message"] == "Reconciliation already in progress"

    def test_forced_rerun_creates_new_job(self, client, auth_headers):
        manager = app.state.reconciliation_manager
        pending = client.portal.call(manager.create_premium_job, "2025-03")

        response = client.post(
            "/reconciliation/premium",
            json={"billingPeriod": "2025-03", "forceRun": True},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["jobId"] != pending.id

    def test_validation_failure_recorded_on_job(self, client, auth_headers):
        app.state.reconciliation_manager = build_manager(transactions=[
            collected("transfer-1", "100.00", customer_id="cust-acme"),
            collected("transfer-2", "0.51", company_name="Unknown Co"),
        ])

        response = client.post(
            "/reconciliation/premium",
            json={"billingPeriod": "2025-01"},
            headers=auth_headers,
        )
        job_id = response.json()["jobId"]

        job = client.get("/reconciliation/premium", params={"jobId": job_id}, headers=auth_headers).json()["job"]
        assert job["status"] == "failed"
        assert job["errors"]["message"] == "Validation errors found"
        assert "$0.51" in job["errors"]["errors"][0]["message"]

    def test_list_premium_jobs(self, client, auth_headers):
        client.post("/reconciliation/premium", json={"billingPeriod": "2025-01"}, headers=auth_headers)
        client.post("/reconciliation/premium", json={"billingPeriod": "2025-02"}, headers=auth_headers)

        response = client.get(
            "/reconciliation/premium",
            params={"billingPeriod": "2025-02"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["jobs"][0]["config"]["billing_period"] == "2025-02"

    def test_webhook_job_not_returned_as_premium(self, client, auth_headers, run_job):
        response = client.get("/reconciliation/premium", params={"jobId": run_job["id"]}, headers=auth_headers)

        assert response.status_code == 404


def make_request(headers):
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/reconciliation",
        "headers": [(name.lower().encode(), value.encode()) for name, value in headers.items()],
        "client": ("10.0.0.7", 50000),
    })


class TestRateLimitKey:
    """Tests for the per-client rate limit key."""

    def test_keyed_by_token_fingerprint(self):
        first = client_key(make_request({"Authorization": "Bearer key-one"}))
        second = client_key(make_request({"Authorization": "Bearer key-two"}))

        assert first.startswith("key:")
        assert "key-one" not in first
        assert first != second
        assert first == client_key(make_request({"Authorization": "Bearer key-one"}))

    def test_falls_back_to_remote_address(self):
        assert client_key(make_request({})) == "10.0.0.7"
        assert client_key(make_request({"Authorization": "Basic abc"})) == "10.0.0.7"
