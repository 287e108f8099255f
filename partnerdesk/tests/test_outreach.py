"""Tests for the outreach orchestrator.

Covers: recommendation upserts, bidding enable, per-partner notification
isolation, timeline entry, audit log, and run_matching end to end.
"""
from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from partnerdesk.db import make_engine
from partnerdesk.models import (
    Base,
    DiscoveryLog,
    Notification,
    OutboxMessage,
    Partner,
    PartnerRecommendation,
    ServiceRequest,
    ServiceRequestBid,
    ServiceRequestUpdate,
)
from partnerdesk.outreach import DatabaseNotifier, dispatch_outreach
from partnerdesk.ranking import MatchResult


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def service_request(session: Session) -> ServiceRequest:
    req = ServiceRequest(
        client_id="client-1", category="yachts", title="Superyacht for Monaco GP",
        description="Ten guests, race weekend", budget_min=80000, budget_max=150000,
        preferred_location="Monaco",
    )
    session.add(req)
    session.commit()
    return req


@pytest.fixture()
def partners(session: Session) -> dict[int, Partner]:
    rows = []
    for i in range(1, 6):
        rows.append(Partner(
            user_id=f"user-{i}", company_name=f"Yacht Co {i}", email=f"charter@yacht{i}.com",
            categories_json=json.dumps(["yachts"]), service_regions_json=json.dumps(["Monaco"]),
            rating=4.7, response_rate=90, total_bookings=60,
            min_budget=50000, max_budget=200000, status="approved",
        ))
    session.add_all(rows)
    session.commit()
    return {p.id: p for p in rows}


def _shortlist(partners: dict[int, Partner]) -> list[MatchResult]:
    return [
        MatchResult(partner_id=pid, company_name=p.company_name, score=90 - i,
                    reasons=["Specializes in yachts"], ai_confidence=0.5)
        for i, (pid, p) in enumerate(partners.items())
    ]


class FailingNotifier(DatabaseNotifier):
    """Database notifier that fails for chosen user ids."""

    def __init__(self, session: Session, fail_for: set[str], fail_email: bool = False):
        super().__init__(session)
        self.fail_for = fail_for
        self.fail_email = fail_email

    async def notify_in_app(self, user_id, title, description, action_url):
        if user_id in self.fail_for:
            raise ConnectionError("channel down")
        await super().notify_in_app(user_id, title, description, action_url)

    async def queue_email(self, recipient, subject, content, priority="normal"):
        if self.fail_email:
            raise ConnectionError("smtp relay down")
        await super().queue_email(recipient, subject, content, priority)


# ---------------------------------------------------------------------------
# Tests: dispatch_outreach
# ---------------------------------------------------------------------------


class TestDispatchOutreach:
    @pytest.mark.asyncio
    async def test_one_failed_notification_does_not_stop_the_rest(self, session, service_request, partners):
        matches = _shortlist(partners)
        failing_user = partners[matches[2].partner_id].user_id
        report = await dispatch_outreach(
            session, service_request, matches, partners,
            notifier=FailingNotifier(session, {failing_user}),
        )
        assert report.sent == 4
        failed = [a for a in report.attempts if not a.success]
        assert len(failed) == 1
        assert failed[0].partner_id == matches[2].partner_id
        assert failed[0].method == "failed"

        recs = session.execute(select(PartnerRecommendation)).scalars().all()
        assert len(recs) == 5
        assert {r.status for r in recs} == {"pending"}
        notes = session.execute(select(Notification)).scalars().all()
        assert len(notes) == 4

    @pytest.mark.asyncio
    async def test_writes_in_app_and_email(self, session, service_request, partners):
        matches = _shortlist(partners)[:1]
        report = await dispatch_outreach(session, service_request, matches, partners)
        assert [a.method for a in report.attempts] == ["in_app_notification"]

        note = session.execute(select(Notification)).scalar_one()
        assert note.type == "bid_invitation"
        assert note.title == "New Bidding Opportunity"
        assert "Superyacht for Monaco GP" in note.description
        assert note.action_url == f"/partner-portal?tab=opportunities&request={service_request.id}"

        email = session.execute(select(OutboxMessage)).scalar_one()
        assert email.channel == "email"
        assert email.priority == "high"
        assert email.subject == "Exclusive Opportunity: Superyacht for Monaco GP"
        content = json.loads(email.content_json)
        assert content["template"] == "partner_bid_invitation"
        assert content["data"]["match_score"] == matches[0].score
        assert content["data"]["deadline"] is not None

    @pytest.mark.asyncio
    async def test_email_only_partner(self, session, service_request, partners):
        matches = _shortlist(partners)[:1]
        partners[matches[0].partner_id].user_id = None
        report = await dispatch_outreach(session, service_request, matches, partners)
        assert report.attempts[0].success
        assert report.attempts[0].method == "email"
        assert session.execute(select(Notification)).first() is None

    @pytest.mark.asyncio
    async def test_no_identity_fails(self, session, service_request, partners):
        matches = _shortlist(partners)[:1]
        report = await dispatch_outreach(session, service_request, matches, {})
        assert report.attempts[0].success is False
        assert report.attempts[0].method == "failed"

    @pytest.mark.asyncio
    async def test_email_failure_keeps_in_app_outcome(self, session, service_request, partners):
        matches = _shortlist(partners)[:2]
        report = await dispatch_outreach(
            session, service_request, matches, partners,
            notifier=FailingNotifier(session, set(), fail_email=True),
        )
        assert [a.method for a in report.attempts] == ["in_app_notification", "in_app_notification"]
        assert session.execute(select(OutboxMessage)).first() is None

    @pytest.mark.asyncio
    async def test_slow_notification_times_out(self, session, service_request, partners):
        class SlowNotifier(DatabaseNotifier):
            async def notify_in_app(self, *args, **kwargs):
                await asyncio.sleep(5)

        matches = _shortlist(partners)[:2]
        report = await dispatch_outreach(
            session, service_request, matches, partners,
            notifier=SlowNotifier(session), timeout=0.01,
        )
        assert [a.success for a in report.attempts] == [False, False]

    @pytest.mark.asyncio
    async def test_enables_bidding_once(self, session, service_request, partners):
        matches = _shortlist(partners)
        await dispatch_outreach(session, service_request, matches, partners)
        assert service_request.bidding_enabled is True
        assert service_request.auto_recommend_partners is False
        deadline = service_request.bidding_deadline
        remaining = deadline.replace(tzinfo=UTC) - datetime.now(UTC)
        assert timedelta(hours=47) < remaining <= timedelta(hours=48)

        await dispatch_outreach(session, service_request, matches, partners)
        assert service_request.bidding_deadline == deadline

    @pytest.mark.asyncio
    async def test_bidding_window_from_env(self, session, service_request, partners, monkeypatch):
        monkeypatch.setenv("BIDDING_WINDOW_HOURS", "24")
        await dispatch_outreach(session, service_request, _shortlist(partners), partners)
        remaining = service_request.bidding_deadline.replace(tzinfo=UTC) - datetime.now(UTC)
        assert remaining <= timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_rerun_upserts_recommendations(self, session, service_request, partners):
        matches = _shortlist(partners)
        await dispatch_outreach(session, service_request, matches, partners, auto_outreach=False)
        rescored = [MatchResult(m.partner_id, m.company_name, m.score - 10, ["Rescored"], 0.25) for m in matches]
        await dispatch_outreach(session, service_request, rescored, partners, auto_outreach=False)

        recs = session.execute(select(PartnerRecommendation)).scalars().all()
        assert len(recs) == 5
        assert sorted(r.match_score for r in recs) == sorted(m.score for m in rescored)
        assert all(json.loads(r.match_reasons_json) == ["Rescored"] for r in recs)

    @pytest.mark.asyncio
    async def test_without_outreach_only_persists_and_logs(self, session, service_request, partners):
        report = await dispatch_outreach(
            session, service_request, _shortlist(partners), partners, auto_outreach=False,
        )
        assert report.attempts == []
        assert report.recommendations_persisted
        assert service_request.bidding_enabled is False
        assert session.execute(select(Notification)).first() is None
        assert session.execute(select(ServiceRequestUpdate)).first() is None
        log_row = session.execute(select(DiscoveryLog)).scalar_one()
        assert json.loads(log_row.metadata_json)["auto_outreach"] is False

    @pytest.mark.asyncio
    async def test_empty_shortlist_still_logged(self, session, service_request):
        report = await dispatch_outreach(session, service_request, [], {}, evaluated=3)
        assert report.attempts == []
        assert report.logged
        meta = json.loads(session.execute(select(DiscoveryLog)).scalar_one().metadata_json)
        assert meta["matches_found"] == 0
        assert meta["candidates_evaluated"] == 3
        assert session.execute(select(ServiceRequestUpdate)).first() is None

    @pytest.mark.asyncio
    async def test_timeline_and_audit_log(self, session, service_request, partners):
        matches = _shortlist(partners)
        await dispatch_outreach(session, service_request, matches, partners, evaluated=5)

        update = session.execute(select(ServiceRequestUpdate)).scalar_one()
        assert update.title == "Partners Matched"
        assert update.is_visible_to_client is True
        assert json.loads(update.metadata_json) == {"partners_matched": 5, "top_match_score": 90}

        log_row = session.execute(select(DiscoveryLog)).scalar_one()
        assert log_row.kind == "partner_match"
        meta = json.loads(log_row.metadata_json)
        assert meta["category"] == "yachts"
        assert meta["client_id"] == "client-1"
        assert meta["candidates_evaluated"] == 5
        assert meta["matches_found"] == 5
        assert meta["auto_outreach"] is True
        assert len(meta["outreach_results"]) == 5
        assert meta["processing_time_ms"] >= 0

    @pytest.mark.asyncio
    async def test_recommendation_failure_does_not_block_outreach(self, session, service_request, partners):
        with patch("partnerdesk.outreach.persist_recommendations", return_value=False):
            report = await dispatch_outreach(session, service_request, _shortlist(partners), partners)
        assert report.recommendations_persisted is False
        assert report.sent == 5


# ---------------------------------------------------------------------------
# Tests: run_matching
# ---------------------------------------------------------------------------


class TestRunMatching:
    @pytest.mark.asyncio
    async def test_excludes_open_bids_and_answered_recommendations(self, session, service_request, partners, monkeypatch):
        from partnerdesk.services import run_matching
        monkeypatch.delenv("PARTNER_SOURCE", raising=False)
        ids = sorted(partners)
        session.add(ServiceRequestBid(service_request_id=service_request.id, partner_id=ids[0], status="submitted"))
        session.add(ServiceRequestBid(service_request_id=service_request.id, partner_id=ids[1], status="withdrawn"))
        session.add(PartnerRecommendation(
            service_request_id=service_request.id, partner_id=ids[2], match_score=70, status="declined",
        ))
        session.commit()

        response = await run_matching(session, service_request, auto_outreach=False)
        returned = [m.partner_id for m in response.matches]
        assert ids[0] not in returned
        assert ids[2] not in returned
        assert ids[1] in returned
        assert response.candidates_evaluated == 3
        assert response.auto_outreach_sent == 0

    @pytest.mark.asyncio
    async def test_client_history_boosts_partner(self, session, service_request, partners, monkeypatch):
        from partnerdesk.services import load_preferred_partners, run_matching
        monkeypatch.delenv("PARTNER_SOURCE", raising=False)
        favourite = sorted(partners)[-1]
        session.add(ServiceRequest(
            client_id="client-1", category="yachts", status="completed",
            partner_id=favourite, client_rating=5.0,
        ))
        session.add(ServiceRequest(
            client_id="client-1", category="yachts", status="completed",
            partner_id=sorted(partners)[0], client_rating=3.0,
        ))
        session.commit()

        assert load_preferred_partners(session, "client-1") == {favourite: 5.0}
        response = await run_matching(session, service_request, auto_outreach=False)
        assert response.matches[0].partner_id == favourite
        assert "Previously rated 5.0★ by you" in response.matches[0].reasons

    @pytest.mark.asyncio
    async def test_rerun_keeps_order_and_rows(self, session, service_request, partners, monkeypatch):
        from partnerdesk.services import run_matching
        monkeypatch.delenv("PARTNER_SOURCE", raising=False)
        first = await run_matching(session, service_request, auto_outreach=True)
        second = await run_matching(session, service_request, auto_outreach=True)
        assert [m.partner_id for m in first.matches] == [m.partner_id for m in second.matches]
        assert first.auto_outreach_sent == 5
        recs = session.execute(select(PartnerRecommendation)).scalars().all()
        assert len(recs) == 5
