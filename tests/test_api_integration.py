"""
Integration tests for the Obligations API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient

from core_obligations import __version__
from core_obligations.api import create_app
from core_obligations.clock import FixedClock
from core_obligations.config import ObligationsConfig
from core_obligations.engine import ObligationEngine
from core_obligations.storage import InMemoryStorage


@pytest.fixture
def engine():
    """Engine on in-memory storage with a pinned clock"""
    return ObligationEngine(
        InMemoryStorage(),
        config=ObligationsConfig(database_url="memory://"),
        clock=FixedClock(date(2024, 1, 15))
    )


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


@pytest.fixture
def payment(engine):
    return engine.transaction_directory.record_transaction(
        Decimal('110000'), description="Wire transfer"
    )


def create_loan(client, **overrides):
    payload = {
        "title": "Truck financing",
        "borrowerName": "Acme Logistics",
        "borrowerType": "COMPANY",
        "principalAmount": "300000",
        "interestRate": "10",
        "totalInstallments": 3,
        "frequency": "MONTHLY",
        "startDate": "2024-02-01"
    }
    payload.update(overrides)
    return client.post("/api/loans", json=payload)


def create_service(client, **overrides):
    payload = {
        "name": "Office rent",
        "serviceType": "LEASE",
        "defaultAmount": 1000,
        "startDate": "2023-12-01",
        "emissionMode": "FIXED_DAY",
        "emissionDay": 1,
        "dueDay": 5,
        "monthsToGenerate": 4,
        "lateFeeMode": "PERCENTAGE",
        "lateFeeValue": 5,
        "lateFeeGraceDays": 3
    }
    payload.update(overrides)
    return client.post("/api/services", json=payload)


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "service": "obligations_api", "version": __version__}


class TestLoanFlow:
    """End-to-end loan tests"""

    def test_create_loan(self, client):
        r = create_loan(client)
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "ok"
        assert data["loan"]["status"] == "ACTIVE"
        assert data["loan"]["borrower_type"] == "COMPANY"
        assert [s["expected_amount"] for s in data["schedules"]] == ["110000.00"] * 3
        assert data["summary"]["total_expected"] == "330000.00"
        assert data["summary"]["pending_installments"] == 3

    def test_list_loans(self, client):
        create_loan(client)
        r = client.get("/api/loans")
        assert r.status_code == 200
        loans = r.json()["loans"]
        assert len(loans) == 1
        assert loans[0]["remaining_amount"] == "330000.00"

    def test_pay_and_unlink(self, client, payment):
        loan = create_loan(client).json()
        schedule_id = loan["schedules"][0]["id"]

        r = client.post(f"/api/loan-schedules/{schedule_id}/pay", json={
            "transactionId": payment.id, "paidAmount": 110000, "paidDate": "2024-02-01"
        })
        assert r.status_code == 200
        schedule = r.json()["schedule"]
        assert schedule["status"] == "PAID"
        assert schedule["transaction"]["description"] == "Wire transfer"

        detail = client.get(f"/api/loans/{loan['loan']['id']}").json()
        assert detail["summary"]["total_paid"] == "110000.00"
        assert detail["summary"]["paid_installments"] == 1

        r = client.post(f"/api/loan-schedules/{schedule_id}/unlink")
        assert r.status_code == 200
        assert r.json()["schedule"]["status"] == "PENDING"
        assert r.json()["schedule"]["transaction"] is None

    def test_regenerate_with_new_terms(self, client):
        loan = create_loan(client).json()
        r = client.post(f"/api/loans/{loan['loan']['id']}/schedules", json={
            "totalInstallments": 6, "interestRate": 0
        })
        assert r.status_code == 200
        data = r.json()
        assert len(data["schedules"]) == 6
        assert data["loan"]["total_installments"] == 6
        assert data["summary"]["total_expected"] == "300000.00"

    def test_regenerate_with_empty_body_keeps_terms(self, client):
        loan = create_loan(client).json()
        r = client.post(f"/api/loans/{loan['loan']['id']}/schedules", json={})
        assert r.status_code == 200
        assert len(r.json()["schedules"]) == 3


class TestServiceFlow:
    """End-to-end service tests"""

    def test_create_service(self, client):
        r = create_service(client)
        assert r.status_code == 201
        data = r.json()
        assert data["service"]["name"] == "Office rent"
        assert data["service"]["late_fee_mode"] == "PERCENTAGE"
        assert len(data["schedules"]) == 4
        # Dec 5 and Jan 5 are past due on Jan 15
        assert data["service"]["overdue_count"] == 2
        assert data["service"]["pending_count"] == 2
        assert data["schedules"][0]["late_fee_amount"] == "50.00"
        assert data["schedules"][0]["effective_amount"] == "1050.00"

    def test_payment_is_measured_against_effective_amount(self, client, payment):
        service = create_service(client).json()
        schedule_id = service["schedules"][0]["id"]

        r = client.post(f"/api/services/schedules/{schedule_id}/pay", json={
            "transactionId": payment.id, "paidAmount": 1000, "paidDate": "2024-01-15"
        })
        assert r.json()["schedule"]["status"] == "PARTIAL"

        r = client.post(f"/api/services/schedules/{schedule_id}/pay", json={
            "transactionId": payment.id, "paidAmount": 1050, "paidDate": "2024-01-15",
            "note": "includes late fee"
        })
        assert r.json()["schedule"]["status"] == "PAID"
        assert r.json()["schedule"]["note"] == "includes late fee"

    def test_update_service(self, client):
        service = create_service(client).json()
        service_id = service["service"]["id"]

        r = client.put(f"/api/services/{service_id}", json={
            "name": "HQ rent", "defaultAmount": 1200, "startDate": "2023-12-01",
            "emissionMode": "DATE_RANGE", "emissionStartDay": 1, "emissionEndDay": 5
        })
        assert r.status_code == 200
        data = r.json()
        assert data["service"]["name"] == "HQ rent"
        assert data["service"]["emission_mode"] == "DATE_RANGE"
        assert data["service"]["months_to_generate"] == 4
        # Existing periods keep their amount until regenerated
        assert data["schedules"][0]["expected_amount"] == "1000.00"

    def test_regenerate_service_schedule(self, client):
        service = create_service(client).json()
        r = client.post(f"/api/services/{service['service']['id']}/schedules", json={
            "months": 2, "defaultAmount": 1200, "emissionDay": 10
        })
        assert r.status_code == 200
        data = r.json()
        assert [s["expected_amount"] for s in data["schedules"]] == ["1200.00", "1200.00"]
        assert data["service"]["emission_day"] == 10

    def test_list_services(self, client):
        create_service(client)
        create_service(client, name="Internet", recurrenceType="ONE_OFF")
        services = client.get("/api/services").json()["services"]
        assert [s["name"] for s in services] == ["Internet", "Office rent"]


class TestErrorResponses:
    """Test error payloads and status codes"""

    def test_unknown_loan(self, client):
        r = client.get("/api/loans/missing")
        assert r.status_code == 404
        assert r.json()["code"] == "not_found"
        assert r.json()["status"] == "error"

    def test_unknown_transaction(self, client):
        loan = create_loan(client).json()
        schedule_id = loan["schedules"][0]["id"]
        r = client.post(f"/api/loan-schedules/{schedule_id}/pay", json={
            "transactionId": 999, "paidAmount": 10, "paidDate": "2024-01-15"
        })
        assert r.status_code == 404
        assert r.json()["details"]["entity_type"] == "Transaction"

    def test_unknown_schedule_unlink(self, client):
        r = client.post("/api/services/schedules/missing/unlink")
        assert r.status_code == 404

    def test_invalid_payload(self, client):
        r = create_loan(client, totalInstallments=0)
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

    def test_principal_too_small(self, client):
        r = create_loan(client, principalAmount="0.05", interestRate="0", totalInstallments=10)
        assert r.status_code == 400
        assert r.json()["code"] == "invalid_schedule"

    def test_emission_day_override_needs_fixed_day(self, client):
        service = create_service(client, emissionMode="SPECIFIC_DATE", emissionExactDate="2024-01-01").json()
        r = client.post(f"/api/services/{service['service']['id']}/schedules", json={"emissionDay": 3})
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

    def test_missing_emission_day(self, client):
        r = create_service(client, emissionDay=None)
        assert r.status_code == 400
