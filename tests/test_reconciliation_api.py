"""
SOA Reconciliation API Tests

Tests for the SOA endpoints through the ASGI app:
- GET  /api/soa/status - Module status
- GET  /api/soa/statements/{vendor_id} - Vendor statements
- GET  /api/soa/cases/{case_id}/lines - Lines
- GET  /api/soa/cases/{case_id}/summary - Summary
- POST /api/soa/cases/{case_id}/match-run - Matching run
- POST /api/soa/matches - Create match
- POST /api/soa/matches/{match_id}/confirm - Confirm match
- POST /api/soa/matches/{match_id}/reject - Reject match
- POST /api/soa/cases/{case_id}/discrepancies - Raise discrepancy
- POST /api/soa/discrepancies/{discrepancy_id}/resolve - Resolve
- POST /api/soa/cases/{case_id}/sign-off - Sign off
"""

from datetime import date

import httpx
import pytest
import pytest_asyncio

from conftest import USER_ID, VENDOR_ID, make_line, make_record, seed_case
from soa_recon.database.connection import get_db
from soa_recon.reconciliation.endpoints.reconciliation_api import get_audit_log
from soa_recon.reconciliation.services.collaborators import drain_notifications
from soa_recon.reconciliation.services.repository import SOARepository
from soa_recon.server import app


STATEMENT_DATE = date(2026, 3, 1)
HEADERS = {"X-User-Id": USER_ID}


@pytest_asyncio.fixture
async def client(session_factory, audit_log):
    """HTTP client bound to the app, with the test database and audit log."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_log] = lambda: audit_log

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await drain_notifications()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        await seed_case(
            SOARepository(session),
            lines=[
                make_line("L1", "1000.00", "INV-1", STATEMENT_DATE, line_number=1),
                make_line("L2", "300.00", "INV-3", date(2026, 6, 1), line_number=2),
            ],
            records=[make_record("R1", "1000.00", "INV-1", STATEMENT_DATE)],
        )


class TestPublicEndpoints:

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/api/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_status_endpoint(self, client):
        response = await client.get("/api/soa/status")

        assert response.status_code == 200
        data = response.json()
        assert data["module"] == "soa_reconciliation"
        assert data["status"] == "operational"
        assert data["matching"]["min_confidence"] == 0.6
        assert "detection" in data
        assert "timestamp" in data


class TestReconciliationFlow:
    """End-to-end flow through the HTTP surface."""

    @pytest.mark.asyncio
    async def test_match_run_confirm_and_sign_off(self, client, seeded):
        response = await client.post(
            "/api/soa/cases/case-1/match-run", json={"vendor_id": VENDOR_ID}, headers=HEADERS
        )
        assert response.status_code == 200
        run = response.json()
        assert run["proposed"] == 1
        assert run["deterministic"] == 1
        assert run["no_match"] == 1
        match_id = run["matches"][0]["id"]

        response = await client.post(f"/api/soa/matches/{match_id}/confirm", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        response = await client.get("/api/soa/cases/case-1/summary", params={"vendor_id": VENDOR_ID})
        summary = response.json()["summary"]
        assert summary["matched_lines"] == 1
        assert summary["discrepancy_lines"] == 1

        response = await client.post(
            "/api/soa/cases/case-1/sign-off", json={"vendor_id": VENDOR_ID}, headers=HEADERS
        )
        assert response.status_code == 412
        assert response.json()["detail"]["error"] == "PreconditionError"

        response = await client.post(
            "/api/soa/cases/case-1/sign-off",
            json={"vendor_id": VENDOR_ID, "acknowledgement_type": "with_exceptions"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["acknowledgement_type"] == "with_exceptions"

        response = await client.get(f"/api/soa/statements/{VENDOR_ID}")
        assert response.json()["statements"][0]["status"] == "closed"

    @pytest.mark.asyncio
    async def test_reject_then_confirm_is_conflict(self, client, seeded):
        response = await client.post("/api/soa/matches", json={"soa_item_id": "L1"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["created"] is True
        match_id = response.json()["match"]["id"]

        response = await client.post(
            f"/api/soa/matches/{match_id}/reject", json={"reason": "duplicate"}, headers=HEADERS
        )
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

        response = await client.post(f"/api/soa/matches/{match_id}/confirm", headers=HEADERS)
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InvalidStateError"

    @pytest.mark.asyncio
    async def test_second_active_match_is_conflict(self, client, seeded):
        body = {"soa_item_id": "L1", "invoice_id": "R1"}
        assert (await client.post("/api/soa/matches", json=body, headers=HEADERS)).status_code == 200

        response = await client.post("/api/soa/matches", json=body, headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "ConflictError"

    @pytest.mark.asyncio
    async def test_discrepancy_create_and_resolve(self, client, seeded):
        response = await client.post(
            "/api/soa/cases/case-1/discrepancies",
            json={"discrepancy_type": "other", "description": "Vendor query", "soa_item_id": "L2"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        discrepancy_id = response.json()["id"]

        response = await client.post(
            f"/api/soa/discrepancies/{discrepancy_id}/resolve",
            json={"action": "waived", "notes": "Agreed with vendor"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "resolved"
        assert response.json()["resolution_action"] == "waived"


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_unknown_case_is_404(self, client):
        response = await client.get("/api/soa/cases/nope/summary", params={"vendor_id": VENDOR_ID})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_status_filter_is_422(self, client, seeded):
        response = await client.get(
            "/api/soa/cases/case-1/lines", params={"vendor_id": VENDOR_ID, "status": "bogus"}
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_confirm_without_user_is_422(self, client, seeded):
        response = await client.post("/api/soa/matches", json={"soa_item_id": "L1"}, headers=HEADERS)
        match_id = response.json()["match"]["id"]

        response = await client.post(f"/api/soa/matches/{match_id}/confirm")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_vendor_ledger_is_422(self, client, session_factory):
        async with session_factory() as session:
            await seed_case(SOARepository(session), lines=[make_line("L9", "10.00", "INV-9")])

        response = await client.post("/api/soa/matches", json={"soa_item_id": "L9"}, headers=HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "NoCandidateError"

    @pytest.mark.asyncio
    async def test_malformed_match_criteria_is_422(self, client, seeded):
        body = {
            "soa_item_id": "L1",
            "invoice_id": "R1",
            "match_type": "fuzzy",
            "confidence": 0.5,
            "match_score": 50,
            "match_criteria": {"amount_score": "x"},
        }

        response = await client.post("/api/soa/matches", json=body, headers=HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "ValidationError"
        assert (await client.get("/api/soa/cases/case-1/matches")).json()["matches"] == []
