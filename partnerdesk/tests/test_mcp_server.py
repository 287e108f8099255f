"""Tests for the MCP tool surface."""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from partnerdesk.db import get_session, init_db
from partnerdesk.models import Partner, PartnerApplication, ServiceRequest


@pytest.fixture()
def seeded(tmp_path, monkeypatch):
    monkeypatch.delenv("PARTNER_SOURCE", raising=False)
    init_db(tmp_path / "mcp.db")
    session = get_session()
    application = PartnerApplication(
        company_name="Azure Marine Charters", email="ops@azuremarine.com",
        categories_json=json.dumps(["yachts"]),
    )
    blank = PartnerApplication(company_name="", email="someone@example.com")
    request = ServiceRequest(client_id="client-3", category="yachts", title="Week in the Cyclades")
    partner = Partner(company_name="Aegean Sails", email="hello@aegeansails.gr",
                      categories_json=json.dumps(["yachts"]), rating=4.6, status="approved")
    session.add_all([application, blank, request, partner])
    session.commit()
    ids = {"application": application.id, "blank": blank.id, "request": request.id}
    session.close()
    return ids


class TestHelpers:
    def test_import_mcp_server(self):
        from partnerdesk.mcp_server import mcp
        assert mcp is not None

    def test_failure_shape(self):
        from partnerdesk.mcp_server import _failure
        result = _failure("Matching", RuntimeError("pool unavailable"))
        assert result == {"error": "Matching failed: pool unavailable", "error_code": "INTERNAL_ERROR"}

    def test_overview_is_json(self):
        from partnerdesk.mcp_server import partnerdesk_overview
        data = json.loads(partnerdesk_overview())
        assert data["dispositions"] == ["approve", "manual_review", "reject"]


class TestVettingTools:
    @pytest.mark.asyncio
    async def test_vet_stored_application(self, seeded):
        from partnerdesk.mcp_server import get_vetting_result, vet_application
        with patch("partnerdesk.mcp_server.get_llm_client", return_value=None):
            result = await vet_application(seeded["application"])
        assert result["persisted"] is True
        # 60 base + 13 neutral advisory, no website and no indicators
        assert result["result"]["overall_score"] == 73
        assert result["result"]["ai_recommendation"] == "manual_review"

        stored = get_vetting_result(seeded["application"])
        assert stored["overall_score"] == 73
        assert stored["risk_level"] == "medium"

    @pytest.mark.asyncio
    async def test_unknown_application(self, seeded):
        from partnerdesk.mcp_server import vet_application
        result = await vet_application(999)
        assert result["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_missing_fields(self, seeded):
        from partnerdesk.mcp_server import vet_application
        result = await vet_application(seeded["blank"])
        assert result == {"error": "Missing required fields: company_name", "error_code": "INVALID_INPUT"}

    def test_no_result_yet(self, seeded):
        from partnerdesk.mcp_server import get_vetting_result
        assert get_vetting_result(seeded["application"])["error_code"] == "NOT_FOUND"


class TestMatchingTool:
    @pytest.mark.asyncio
    async def test_invalid_max_partners(self, seeded):
        from partnerdesk.mcp_server import match_service_request
        result = await match_service_request(seeded["request"], max_partners=0)
        assert result["error_code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_unknown_request(self, seeded):
        from partnerdesk.mcp_server import match_service_request
        result = await match_service_request(999)
        assert result["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_match_without_outreach(self, seeded):
        from partnerdesk.mcp_server import match_service_request
        with patch("partnerdesk.mcp_server.get_llm_client", return_value=None):
            result = await match_service_request(seeded["request"], auto_outreach=False)
        assert result["candidates_evaluated"] == 1
        # 35 category + 8 flexible budget + 9 rating
        assert [(m["company_name"], m["score"]) for m in result["matches"]] == [("Aegean Sails", 52)]
        assert result["auto_outreach_sent"] == 0

    @pytest.mark.asyncio
    async def test_internal_fault(self, seeded):
        from partnerdesk.mcp_server import match_service_request
        with patch("partnerdesk.mcp_server.get_llm_client", return_value=None), \
                patch("partnerdesk.services.rank_candidates", side_effect=RuntimeError("pool unavailable")):
            result = await match_service_request(seeded["request"])
        assert result == {"error": "Matching failed: pool unavailable", "error_code": "INTERNAL_ERROR"}
