from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from partnerdesk.utils import json_parse


class Base(DeclarativeBase):
    pass


class PartnerApplication(Base):
    __tablename__ = "partner_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), nullable=False)
    website: Mapped[str] = mapped_column(String(500), default="")
    phone: Mapped[str] = mapped_column(String(50), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    categories_json: Mapped[str] = mapped_column(Text, default="[]")
    experience_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notable_clients: Mapped[str] = mapped_column(Text, default="")
    coverage_regions_json: Mapped[str] = mapped_column(Text, default="[]")
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    vetting_results: Mapped[list[VettingRecord]] = relationship(
        "VettingRecord", back_populates="application", cascade="all, delete-orphan",
    )

    @property
    def categories(self) -> list[str]:
        return json_parse(self.categories_json, [])

    @property
    def coverage_regions(self) -> list[str]:
        return json_parse(self.coverage_regions_json, [])


class VettingRecord(Base):
    """One vetting run. Never updated; a newer row supersedes older ones."""
    __tablename__ = "vetting_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, ForeignKey("partner_applications.id"), nullable=False)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)  # low | medium | high | critical
    verification_checks_json: Mapped[str] = mapped_column(Text, default="{}")
    risk_indicators_json: Mapped[str] = mapped_column(Text, default="[]")
    ai_recommendation: Mapped[str] = mapped_column(String(20), nullable=False)  # approve | manual_review | reject
    recommendation_reason: Mapped[str] = mapped_column(Text, default="")
    auto_vetting_items_json: Mapped[str] = mapped_column(Text, default="{}")
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    vetted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    application: Mapped[PartnerApplication] = relationship("PartnerApplication", back_populates="vetting_results")


class Partner(Base):
    __tablename__ = "partners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), default="")
    categories_json: Mapped[str] = mapped_column(Text, default="[]")
    service_regions_json: Mapped[str] = mapped_column(Text, default="[]")
    rating: Mapped[float] = mapped_column(Float, default=0.0)
    response_rate: Mapped[float] = mapped_column(Float, default=0.0)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    min_budget: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_budget: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(30), default="pending")  # pending | approved | suspended

    @property
    def categories(self) -> list[str]:
        return json_parse(self.categories_json, [])

    @property
    def service_regions(self) -> list[str]:
        return json_parse(self.service_regions_json, [])


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    budget_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    budget_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    preferred_location: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(30), default="pending")  # pending | in_progress | completed | cancelled
    partner_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("partners.id"), nullable=True)
    client_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    bidding_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    bidding_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    auto_recommend_partners: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    bids: Mapped[list[ServiceRequestBid]] = relationship(
        "ServiceRequestBid", back_populates="service_request", cascade="all, delete-orphan",
    )
    recommendations: Mapped[list[PartnerRecommendation]] = relationship(
        "PartnerRecommendation", back_populates="service_request", cascade="all, delete-orphan",
    )


class ServiceRequestBid(Base):
    __tablename__ = "service_request_bids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("service_requests.id"), nullable=False)
    partner_id: Mapped[int] = mapped_column(Integer, ForeignKey("partners.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | submitted | accepted | rejected | withdrawn
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)

    service_request: Mapped[ServiceRequest] = relationship("ServiceRequest", back_populates="bids")


class PartnerRecommendation(Base):
    __tablename__ = "partner_recommendations"
    __table_args__ = (UniqueConstraint("service_request_id", "partner_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("service_requests.id"), nullable=False)
    partner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    match_reasons_json: Mapped[str] = mapped_column(Text, default="[]")
    ai_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | accepted | declined
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    service_request: Mapped[ServiceRequest] = relationship("ServiceRequest", back_populates="recommendations")


class Notification(Base):
    """In-app notification shown to a user."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    action_url: Mapped[str] = mapped_column(String(500), default="")
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class OutboxMessage(Base):
    """Message queued for delivery by an external channel worker."""
    __tablename__ = "notification_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # email
    recipient: Mapped[str] = mapped_column(String(300), nullable=False)
    subject: Mapped[str] = mapped_column(String(300), default="")
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ServiceRequestUpdate(Base):
    """Timeline entry on a service request."""
    __tablename__ = "service_request_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_request_id: Mapped[int] = mapped_column(Integer, ForeignKey("service_requests.id"), nullable=False)
    update_type: Mapped[str] = mapped_column(String(30), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    updated_by_role: Mapped[str] = mapped_column(String(30), default="system")
    is_visible_to_client: Mapped[bool] = mapped_column(Boolean, default=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class DiscoveryLog(Base):
    """Audit record of one matching run, input to offline weight tuning."""
    __tablename__ = "discovery_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
