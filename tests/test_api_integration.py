"""
Integration tests for the Loan Servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from loan_servicing.api import create_app
from loan_servicing.api.dependencies import ServicingSystem


HEADERS = {"X-Org-Id": "org-a", "X-User-Id": "teller-1"}

TERMS = {
    "principal": "1200",
    "annual_interest_rate": "0",
    "duration": 12,
    "interest_type": "Flat",
    "period": "Monthly",
    "start_date": "2024-01-01"
}


@pytest.fixture
def client():
    """Test client over a fresh in-memory servicing system"""
    return TestClient(create_app(ServicingSystem()))


@pytest.fixture
def loan_id(client):
    r = client.post("/loans", json={"terms": TERMS, "loan_number": "L-1"}, headers=HEADERS)
    assert r.status_code == 201
    return r.json()["id"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestPreviewEndpoints:
    """Stateless calculation endpoints"""

    def test_schedule_preview(self, client):
        r = client.post("/schedules/preview", json={"terms": {**TERMS, "annual_interest_rate": "12",
                                                              "interest_type": "Reducing",
                                                              "principal": "100000"}})
        assert r.status_code == 200
        data = r.json()
        assert len(data["rows"]) == 12
        assert data["rows"][0]["total_due"] == "8884.88"
        assert data["summary"]["total_principal"] == "100000.00"

    def test_schedule_preview_rejects_bad_terms(self, client):
        r = client.post("/schedules/preview", json={"terms": {**TERMS, "duration": 0}})
        assert r.status_code == 400

    def test_schedule_preview_rejects_unknown_type(self, client):
        r = client.post("/schedules/preview", json={"terms": {**TERMS, "interest_type": "Balloon"}})
        assert r.status_code == 400

    def test_waterfall_preview(self, client):
        rows = client.post("/schedules/preview", json={"terms": TERMS}).json()["rows"]

        r = client.post("/payments/preview", json={"payment": "150", "rows": rows})
        assert r.status_code == 200
        data = r.json()
        assert [u["installment_number"] for u in data["updates"]] == [1, 2]
        assert data["updates"][1]["status"] == "Partial"
        assert data["credit_amount"] == "0.00"

    def test_waterfall_preview_rejects_negative_payment(self, client):
        r = client.post("/payments/preview", json={"payment": "-1", "rows": []})
        assert r.status_code == 400

    def test_accrued_interest(self, client):
        r = client.post("/interest/accrued", json={
            "terms": {**TERMS, "principal": "10000", "annual_interest_rate": "10",
                      "interest_type": "Interest-Only", "has_penalty_rate": True,
                      "penalty_rate": "15", "penalty_rate_from": "2024-07-01"},
            "as_of": "2024-12-31"
        })
        assert r.status_code == 200
        assert r.json()["accrued_interest"] == "1250.68"


class TestLoanFlow:
    """End-to-end loan servicing"""

    def test_org_header_required(self, client):
        r = client.get("/loans")
        assert r.status_code == 400

    def test_create_and_get_loan(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}", headers=HEADERS)
        assert r.status_code == 200
        data = r.json()
        assert data["loan_number"] == "L-1"
        assert data["status"] == "Live"
        assert data["version"] == 1

    def test_loan_invisible_to_other_org(self, client, loan_id):
        r = client.get(f"/loans/{loan_id}", headers={"X-Org-Id": "org-b"})
        assert r.status_code == 404

    def test_list_loans(self, client, loan_id):
        r = client.get("/loans", headers=HEADERS)
        assert [loan["id"] for loan in r.json()] == [loan_id]

        r = client.get("/loans", params={"loan_status": "Settled"}, headers=HEADERS)
        assert r.json() == []

    def test_stored_schedule(self, client, loan_id):
        r = client.get(f"/schedules/{loan_id}", headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["summary"]["number_of_installments"] == 12

    def test_apply_payment(self, client, loan_id):
        r = client.post(f"/payments/{loan_id}", json={
            "amount": "250", "payment_date": "2024-02-15", "expected_version": 1
        }, headers=HEADERS)
        assert r.status_code == 200
        data = r.json()
        assert data["principal_applied"] == "250.00"
        assert data["loan"]["version"] == 2

        r = client.get(f"/payments/{loan_id}/transactions", headers=HEADERS)
        assert [tx["id"] for tx in r.json()["transactions"]] == [data["transaction_id"]]

    def test_stale_version_conflict(self, client, loan_id):
        payment = {"amount": "100", "payment_date": "2024-02-01", "expected_version": 1}
        assert client.post(f"/payments/{loan_id}", json=payment, headers=HEADERS).status_code == 200

        r = client.post(f"/payments/{loan_id}", json=payment, headers=HEADERS)
        assert r.status_code == 409

    def test_payment_to_missing_loan(self, client):
        r = client.post("/payments/missing", json={"amount": "100"}, headers=HEADERS)
        assert r.status_code == 404

    def test_manual_payment_and_regenerate(self, client, loan_id):
        r = client.post(f"/payments/{loan_id}/manual", json={
            "interest_amount": "0", "principal_amount": "150", "payment_date": "2024-02-01"
        }, headers=HEADERS)
        assert r.status_code == 200

        r = client.post(f"/schedules/{loan_id}/regenerate", params={"expected_version": 2},
                        headers=HEADERS)
        assert r.status_code == 200
        statuses = [row["status"] for row in r.json()["rows"][:3]]
        assert statuses == ["Paid", "Partial", "Pending"]

    def test_further_advance_and_interest_position(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/advances", json={
            "amount": "600", "advance_date": "2024-03-01"
        }, headers=HEADERS)
        assert r.status_code == 201

        r = client.get(f"/interest/{loan_id}", params={"as_of": "2024-04-01"}, headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["principal_remaining"] == "1800.00"

    def test_further_advance_on_start_date_rejected(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/advances", json={
            "amount": "600", "advance_date": "2024-01-01"
        }, headers=HEADERS)
        assert r.status_code == 400

    def test_status_change(self, client, loan_id):
        r = client.post(f"/loans/{loan_id}/status", json={"status": "Defaulted"}, headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["status"] == "Defaulted"

        r = client.post(f"/loans/{loan_id}/status", json={"status": "Unknown"}, headers=HEADERS)
        assert r.status_code == 400

    def test_interest_by_period(self, client):
        terms = {**TERMS, "principal": "36500", "annual_interest_rate": "10",
                 "interest_type": "Interest-Only"}
        loan_id = client.post("/loans", json={"terms": terms}, headers=HEADERS).json()["id"]

        r = client.get(f"/interest/{loan_id}/periods", params={"as_of": "2024-03-01"}, headers=HEADERS)
        assert r.status_code == 200
        data = r.json()
        assert [p["interest_due"] for p in data["periods"]] == ["310.00", "290.00"]
        assert data["total_interest_due"] == "600.00"
        assert data["interest_balance"] == "600.00"

        r = client.get(f"/interest/{loan_id}", params={"as_of": "2024-03-01"}, headers=HEADERS)
        assert r.json()["schedule_interest_due"] == "600.00"

    def test_interest_by_period_missing_loan(self, client):
        r = client.get("/interest/missing/periods", headers=HEADERS)
        assert r.status_code == 404
