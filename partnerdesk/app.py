from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from partnerdesk import services
from partnerdesk.db import init_db, session_generator
from partnerdesk.llm import LLMClient, get_llm_client
from partnerdesk.models import PartnerApplication, ServiceRequest
from partnerdesk.schemas import MatchRequest, MatchResponse, RecommendationOut, VettingRequest, VettingResponse

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="PartnerDesk",
    version="0.1.0",
    description=(
        "Partner vetting, matching and outreach engine for a luxury concierge service. "
        "Scores partner applications for legitimacy, ranks approved partners against "
        "client service requests and invites the shortlist to bid. "
        "All scores and dispositions are advisory. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Vetting", "description": "Legitimacy and fraud-risk scoring of partner applications."},
        {"name": "Matching", "description": "Rank partners for a service request and run outreach."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def llm_client() -> LLMClient | None:
    return get_llm_client()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Vetting
# ---------------------------------------------------------------------------


@app.post("/api/vet", response_model=VettingResponse,
          tags=["Vetting"], summary="Vet a partner application")
async def vet(
    body: VettingRequest,
    session: Session = Depends(db_session),
    client: LLMClient | None = Depends(llm_client),
):
    missing = services.missing_fields(body)
    if missing:
        raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")
    try:
        return await services.run_vetting(session, body, client)
    except Exception as exc:
        log.exception("Vetting failed for application %s", body.application_id)
        raise HTTPException(500, "Vetting process failed") from exc


@app.get("/api/applications/{application_id}/vetting",
         tags=["Vetting"], summary="Get the latest stored vetting result for an application")
async def get_vetting(application_id: int, session: Session = Depends(db_session)):
    rec = services.latest_vetting(session, application_id)
    if rec is None:
        raise HTTPException(404, "Vetting result not found")
    return services.vetting_record_out(rec)


# ---------------------------------------------------------------------------
# Routes: Matching
# ---------------------------------------------------------------------------


@app.post("/api/match", response_model=MatchResponse,
          tags=["Matching"], summary="Rank partners for a service request and optionally invite them")
async def match(
    body: MatchRequest,
    session: Session = Depends(db_session),
    client: LLMClient | None = Depends(llm_client),
):
    request = _get_or_404(session, ServiceRequest, body.service_request_id, "Service request")
    try:
        return await services.run_matching(
            session, request,
            auto_outreach=body.auto_outreach,
            max_partners=body.max_partners,
            client=client,
        )
    except Exception as exc:
        log.exception("Matching failed for request %s", body.service_request_id)
        raise HTTPException(500, f"Matching failed: {exc}") from exc


@app.get("/api/service-requests/{request_id}/recommendations", response_model=list[RecommendationOut],
         tags=["Matching"], summary="List stored partner recommendations, best first")
async def list_recommendations(request_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, ServiceRequest, request_id, "Service request")
    return services.list_recommendations(session, request_id)


@app.get("/api/applications/{application_id}",
         tags=["Vetting"], summary="Get a stored partner application")
async def get_application(application_id: int, session: Session = Depends(db_session)):
    app_row = _get_or_404(session, PartnerApplication, application_id, "Application")
    return services.application_to_request(app_row)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "partnerdesk.app:app",
        host=os.environ.get("PARTNERDESK_HOST", "127.0.0.1"),
        port=int(os.environ.get("PARTNERDESK_PORT", "8002")),
    )


if __name__ == "__main__":
    main()
