from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from partnerdesk import services
from partnerdesk.db import init_db, session_scope
from partnerdesk.llm import get_llm_client
from partnerdesk.models import PartnerApplication, ServiceRequest

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def partnerdesk_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "PartnerDesk",
    instructions=(
        "PartnerDesk vets partner applications and matches approved partners to client "
        "service requests. Use vet_application(id) to score a stored application, "
        "get_vetting_result(id) to read the latest result, and match_service_request(id) "
        "to rank partners and invite the shortlist."
    ),
    lifespan=partnerdesk_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found", "error_code": "NOT_FOUND"}
    return obj, None


def _failure(action: str, exc: Exception) -> dict:
    return {"error": f"{action} failed: {exc}", "error_code": "INTERNAL_ERROR"}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("partnerdesk://overview")
def partnerdesk_overview() -> str:
    """Overview of PartnerDesk: data model, workflow, and score semantics."""
    return json.dumps({
        "system": "PartnerDesk — partner vetting, matching and outreach",
        "data_model": {
            "partner_application": "Submitted identity of a prospective partner.",
            "vetting_result": "Score 0-100, risk tier, risk indicators and a disposition. Newest run wins.",
            "partner": "Approved partner with categories, regions, rating, response rate and budget range.",
            "service_request": "A client's ask with category, budget and preferred location.",
            "partner_recommendation": "Persisted match of a partner to a request (score, reasons, confidence).",
        },
        "workflow": [
            "1. vet_application(application_id) — score a stored application.",
            "2. get_vetting_result(application_id) — read the latest stored result.",
            "3. match_service_request(service_request_id) — rank partners and invite the shortlist.",
        ],
        "risk_tiers": {"low": ">= 80", "medium": ">= 60", "high": ">= 40", "critical": "< 40"},
        "dispositions": ["approve", "manual_review", "reject"],
        "note": "All scores and dispositions are advisory.",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Vetting
# ---------------------------------------------------------------------------


@mcp.tool()
async def vet_application(application_id: int) -> dict:
    """Run all verification probes for a stored partner application and score it."""
    with session_scope() as session:
        app_row, err = _get_or_error(session, PartnerApplication, application_id, "Application")
        if err:
            return err
        req = services.application_to_request(app_row)
        missing = services.missing_fields(req)
        if missing:
            return {"error": f"Missing required fields: {', '.join(missing)}", "error_code": "INVALID_INPUT"}
        try:
            response = await services.run_vetting(session, req, get_llm_client())
        except Exception as exc:
            log.exception("Vetting failed for application %s", application_id)
            return _failure("Vetting", exc)
        return response.model_dump()


@mcp.tool()
def get_vetting_result(application_id: int) -> dict:
    """Latest stored vetting result for an application."""
    with session_scope() as session:
        rec = services.latest_vetting(session, application_id)
        if rec is None:
            return {"error": f"No vetting result for application {application_id}", "error_code": "NOT_FOUND"}
        return services.vetting_record_out(rec)


# ---------------------------------------------------------------------------
# Tools: Matching
# ---------------------------------------------------------------------------


@mcp.tool()
async def match_service_request(
    service_request_id: int, auto_outreach: bool = True, max_partners: int = 5,
) -> dict:
    """Rank approved partners for a service request.

    Args:
        service_request_id: The request to match.
        auto_outreach: Invite the shortlist to bid (in-app notification and e-mail).
        max_partners: Shortlist length, 1-50.
    """
    if not 1 <= max_partners <= 50:
        return {"error": "max_partners must be between 1 and 50", "error_code": "INVALID_INPUT"}
    with session_scope() as session:
        request, err = _get_or_error(session, ServiceRequest, service_request_id, "Service request")
        if err:
            return err
        try:
            response = await services.run_matching(
                session, request,
                auto_outreach=auto_outreach,
                max_partners=max_partners,
                client=get_llm_client(),
            )
        except Exception as exc:
            log.exception("Matching failed for request %s", service_request_id)
            return _failure("Matching", exc)
        return response.model_dump()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the PartnerDesk MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
