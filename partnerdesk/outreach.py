"""Outreach orchestrator: shortlist -> recommendations -> invitations -> audit log.

Every write is its own SAVEPOINT and every partner gets its own failure
boundary, so one failed write or notification never stops the rest of the
run. Recommendations are committed before any notification is sent.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from partnerdesk.llm import probe_timeout
from partnerdesk.models import (
    DiscoveryLog,
    Notification,
    OutboxMessage,
    Partner,
    PartnerRecommendation,
    ServiceRequest,
    ServiceRequestUpdate,
)
from partnerdesk.ranking import MatchResult
from partnerdesk.schemas import OutreachAttempt

log = logging.getLogger(__name__)

DEFAULT_BIDDING_WINDOW_HOURS = 48


def bidding_window() -> timedelta:
    try:
        hours = float(os.environ.get("BIDDING_WINDOW_HOURS", DEFAULT_BIDDING_WINDOW_HOURS))
    except ValueError:
        hours = DEFAULT_BIDDING_WINDOW_HOURS
    return timedelta(hours=hours)


# ---------------------------------------------------------------------------
# Notification channel
# ---------------------------------------------------------------------------


class Notifier(Protocol):
    async def notify_in_app(self, user_id: str, title: str, description: str, action_url: str) -> None: ...

    async def queue_email(
        self, recipient: str, subject: str, content: dict[str, Any], priority: str = "normal",
    ) -> None: ...


class DatabaseNotifier:
    """Writes ``notifications`` rows and queues e-mail in ``notification_outbox``."""

    def __init__(self, session: Session):
        self.session = session

    async def notify_in_app(self, user_id: str, title: str, description: str, action_url: str) -> None:
        with self.session.begin_nested():
            self.session.add(Notification(
                user_id=user_id, type="bid_invitation", title=title,
                description=description, action_url=action_url, read=False,
            ))

    async def queue_email(
        self, recipient: str, subject: str, content: dict[str, Any], priority: str = "normal",
    ) -> None:
        with self.session.begin_nested():
            self.session.add(OutboxMessage(
                channel="email", recipient=recipient, subject=subject,
                content_json=json.dumps(content), priority=priority,
            ))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def persist_recommendations(session: Session, request_id: int, matches: list[MatchResult]) -> bool:
    """Upsert one pending recommendation per (request, partner). False on failure."""
    if not matches:
        return True
    try:
        with session.begin_nested():
            existing = {
                r.partner_id: r for r in session.execute(
                    select(PartnerRecommendation).where(
                        PartnerRecommendation.service_request_id == request_id,
                        PartnerRecommendation.partner_id.in_([m.partner_id for m in matches]),
                    )
                ).scalars()
            }
            for m in matches:
                rec = existing.get(m.partner_id)
                if rec is None:
                    rec = PartnerRecommendation(service_request_id=request_id, partner_id=m.partner_id, status="pending")
                    session.add(rec)
                rec.match_score = m.score
                rec.match_reasons_json = json.dumps(m.reasons)
                rec.ai_confidence = m.ai_confidence
        session.commit()
    except SQLAlchemyError as exc:
        log.warning("Failed to persist recommendations for request %s: %s", request_id, exc)
        session.rollback()
        return False
    return True


def enable_bidding(session: Session, request: ServiceRequest) -> bool:
    """Open bidding with a fresh deadline unless it is already open."""
    if request.bidding_enabled:
        return True
    try:
        with session.begin_nested():
            request.bidding_enabled = True
            request.bidding_deadline = datetime.now(UTC) + bidding_window()
            request.auto_recommend_partners = False
    except SQLAlchemyError as exc:
        log.warning("Failed to enable bidding on request %s: %s", request.id, exc)
        return False
    return True


async def _notify_partner(
    notifier: Notifier, request: ServiceRequest, match: MatchResult, partner: Partner | None,
) -> OutreachAttempt:
    user_id = partner.user_id if partner else None
    email = partner.email if partner else None
    method = "failed"

    if user_id:
        await notifier.notify_in_app(
            user_id,
            "New Bidding Opportunity",
            f'You\'ve been matched for: "{request.title}". Match score: {match.score}%',
            f"/partner-portal?tab=opportunities&request={request.id}",
        )
        method = "in_app_notification"

    if email:
        deadline = request.bidding_deadline
        try:
            await notifier.queue_email(
                email,
                f"Exclusive Opportunity: {request.title}",
                {
                    "template": "partner_bid_invitation",
                    "data": {
                        "partner_name": partner.company_name if partner else match.company_name,
                        "request_title": request.title,
                        "match_score": match.score,
                        "deadline": deadline.isoformat() if deadline else None,
                    },
                },
                priority="high",
            )
            if method == "failed":
                method = "email"
        except Exception as exc:
            log.warning("Email queue failed for partner %s: %s", match.partner_id, exc)

    if method == "failed":
        log.warning("No notification identity for partner %s", match.partner_id)
    return OutreachAttempt(partner_id=match.partner_id, success=method != "failed", method=method)


async def notify_partners(
    notifier: Notifier,
    request: ServiceRequest,
    matches: list[MatchResult],
    partners: dict[int, Partner],
    timeout: float | None = None,
) -> list[OutreachAttempt]:
    """One bounded, isolated attempt per shortlisted partner."""
    timeout = timeout or probe_timeout()
    attempts: list[OutreachAttempt] = []
    for m in matches:
        try:
            attempt = await asyncio.wait_for(
                _notify_partner(notifier, request, m, partners.get(m.partner_id)), timeout,
            )
        except Exception as exc:
            log.warning("Outreach failed for partner %s: %s", m.partner_id, exc or type(exc).__name__)
            attempt = OutreachAttempt(partner_id=m.partner_id, success=False, method="failed")
        attempts.append(attempt)
    return attempts


def add_timeline_entry(session: Session, request: ServiceRequest, matches: list[MatchResult]) -> bool:
    try:
        with session.begin_nested():
            session.add(ServiceRequestUpdate(
                service_request_id=request.id,
                update_type="status_change",
                title="Partners Matched",
                description=(
                    f"{len(matches)} luxury partners have been identified and invited "
                    "to propose options for your request."
                ),
                updated_by_role="system",
                is_visible_to_client=True,
                metadata_json=json.dumps({
                    "partners_matched": len(matches),
                    "top_match_score": matches[0].score if matches else None,
                }),
            ))
    except SQLAlchemyError as exc:
        log.warning("Failed to add timeline entry for request %s: %s", request.id, exc)
        return False
    return True


def write_audit_log(session: Session, metadata: dict[str, Any]) -> bool:
    try:
        with session.begin_nested():
            session.add(DiscoveryLog(kind="partner_match", metadata_json=json.dumps(metadata)))
    except SQLAlchemyError as exc:
        log.warning("Failed to write match audit log: %s", exc)
        return False
    return True


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class OutreachReport:
    attempts: list[OutreachAttempt] = field(default_factory=list)
    recommendations_persisted: bool = False
    bidding_enabled: bool = False
    logged: bool = False

    @property
    def sent(self) -> int:
        return sum(1 for a in self.attempts if a.success)


async def dispatch_outreach(
    session: Session,
    request: ServiceRequest,
    matches: list[MatchResult],
    partners: dict[int, Partner],
    *,
    auto_outreach: bool = True,
    evaluated: int = 0,
    started: float | None = None,
    notifier: Notifier | None = None,
    timeout: float | None = None,
) -> OutreachReport:
    """Persist the shortlist, invite partners and record the run.

    Args:
        partners: The candidate pool by id; source of each partner's
            notification identity.
        evaluated: Eligible candidate count, for the audit record.
        started: ``time.monotonic()`` at the start of the run.
        notifier: Delivery channel; defaults to :class:`DatabaseNotifier`.
    """
    started = started if started is not None else time.monotonic()
    report = OutreachReport()
    report.recommendations_persisted = persist_recommendations(session, request.id, matches)

    if auto_outreach and matches:
        log.info("Initiating outreach to %d partners for request %s", len(matches), request.id)
        report.bidding_enabled = enable_bidding(session, request)
        report.attempts = await notify_partners(
            notifier or DatabaseNotifier(session), request, matches, partners, timeout,
        )
        add_timeline_entry(session, request, matches)

    report.logged = write_audit_log(session, {
        "service_request_id": request.id,
        "category": request.category,
        "client_id": request.client_id,
        "candidates_evaluated": evaluated,
        "matches_found": len(matches),
        "auto_outreach": auto_outreach,
        "outreach_results": [a.model_dump() for a in report.attempts],
        "processing_time_ms": int((time.monotonic() - started) * 1000),
    })
    try:
        session.commit()
    except SQLAlchemyError as exc:
        log.warning("Failed to commit outreach for request %s: %s", request.id, exc)
        session.rollback()
        report.logged = False
    return report
