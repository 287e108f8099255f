"""Partner pool data sources.

The ranking engine reads partners only through a :class:`PartnerSource`, so a
live database pool and a fixed fixture pool are interchangeable. Selection is
caller configuration (``PARTNER_SOURCE``), never a fallback inside the engine.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from partnerdesk.models import Partner
from partnerdesk.utils import company_name_from_url

log = logging.getLogger(__name__)


def _has_category(partner: Partner, category: str) -> bool:
    wanted = (category or "").strip().lower()
    return any((c or "").strip().lower() == wanted for c in partner.categories)


class PartnerSource(Protocol):
    def approved_partners(self, category: str) -> list[Partner]:
        """Approved partners declaring *category*, in a stable order."""
        ...


class DatabasePartnerSource:
    def __init__(self, session: Session):
        self.session = session

    def approved_partners(self, category: str) -> list[Partner]:
        rows = self.session.execute(
            select(Partner).where(Partner.status == "approved").order_by(Partner.id)
        ).scalars().all()
        return [p for p in rows if _has_category(p, category)]


class FixturePartnerSource:
    """In-memory partner pool, e.g. for demos and tests."""

    def __init__(self, partners: list[Partner]):
        self.partners = list(partners)

    @classmethod
    def from_json(cls, path: str | Path) -> FixturePartnerSource:
        """Load ``[{"id": 1, "company_name": ..., "categories": [...], ...}, ...]``."""
        data: list[dict[str, Any]] = json.loads(Path(path).read_text(encoding="utf-8"))
        partners = []
        for i, row in enumerate(data, 1):
            partners.append(Partner(
                id=row.get("id", i),
                user_id=row.get("user_id"),
                company_name=row.get("company_name") or company_name_from_url(row.get("website")),
                email=row.get("email", ""),
                categories_json=json.dumps(row.get("categories", [])),
                service_regions_json=json.dumps(row.get("service_regions", [])),
                rating=row.get("rating", 0.0),
                response_rate=row.get("response_rate", 0.0),
                total_bookings=row.get("total_bookings", 0),
                min_budget=row.get("min_budget"),
                max_budget=row.get("max_budget"),
                status=row.get("status", "approved"),
            ))
        log.info("Loaded %d fixture partners from %s", len(partners), path)
        return cls(partners)

    def approved_partners(self, category: str) -> list[Partner]:
        return [p for p in self.partners if p.status == "approved" and _has_category(p, category)]


def partner_source_from_env(session: Session) -> PartnerSource:
    """Pick the source named by ``PARTNER_SOURCE`` (``database`` or ``fixture``)."""
    kind = os.environ.get("PARTNER_SOURCE", "database").strip().lower()
    if kind == "fixture":
        path = os.environ.get("PARTNER_FIXTURES")
        if not path:
            raise ValueError("PARTNER_SOURCE=fixture requires PARTNER_FIXTURES")
        return FixturePartnerSource.from_json(path)
    if kind != "database":
        raise ValueError(f"Unknown PARTNER_SOURCE: {kind!r}")
    return DatabasePartnerSource(session)
