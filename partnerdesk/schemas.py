"""Pydantic request/response schemas and typed engine records."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

RiskLevel = Literal["low", "medium", "high", "critical"]
Disposition = Literal["approve", "manual_review", "reject"]
Severity = Literal["critical", "warning", "info"]


# ---------------------------------------------------------------------------
# Vetting
# ---------------------------------------------------------------------------


class VettingRequest(BaseModel):
    application_id: int
    company_name: str = ""
    email: str = ""
    website: str = ""
    phone: str = ""
    description: str = ""
    categories: list[str] = []
    experience_years: int | None = None
    notable_clients: str = ""
    coverage_regions: list[str] = []

    @field_validator("company_name", "email", "website", "phone", "description", "notable_clients")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class WebsiteAnalysis(BaseModel):
    is_accessible: bool
    has_ssl: bool
    domain_age_indicator: Literal["new", "established", "unknown"] = "unknown"
    professional_score: int = 0
    content_relevance: int = 0
    contact_info_found: bool = False
    social_presence: list[str] = []


class ContactVerification(BaseModel):
    email_format_valid: bool
    email_domain_exists: bool
    email_domain_type: Literal["personal", "disposable", "business", "invalid"]
    phone_format_valid: bool
    professional_email: bool


class FraudDetection(BaseModel):
    email_domain_match: bool
    disposable_email: bool
    suspicious_patterns: list[str]
    duplicate_application: bool
    blacklist_match: bool = False


class CategoryFit(BaseModel):
    primary_category_match: int = 50
    service_alignment: int = 50
    experience_credibility: int = 50
    market_presence: int = 50

    def average(self) -> float:
        return (
            self.primary_category_match + self.service_alignment
            + self.experience_credibility + self.market_presence
        ) / 4


class BusinessLegitimacy(BaseModel):
    company_mentioned_online: bool
    consistent_branding: bool
    address_verifiable: bool = False
    phone_format_valid: bool
    registration_indicators: list[str]


class VerificationChecks(BaseModel):
    website_analysis: WebsiteAnalysis | None
    business_legitimacy: BusinessLegitimacy
    fraud_detection: FraudDetection
    category_fit: CategoryFit
    contact_verification: ContactVerification


class RiskIndicator(BaseModel):
    type: Severity
    category: str
    description: str
    score_impact: int


class VettingResult(BaseModel):
    overall_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    verification_checks: VerificationChecks
    risk_indicators: list[RiskIndicator]
    ai_recommendation: Disposition
    recommendation_reason: str
    auto_vetting_items: dict[str, bool]


class VettingResponse(BaseModel):
    success: bool = True
    result: VettingResult
    processing_time_ms: int
    persisted: bool


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class MatchRequest(BaseModel):
    service_request_id: int
    auto_outreach: bool = True
    max_partners: int = Field(5, ge=1, le=50)


class MatchOut(BaseModel):
    partner_id: int
    company_name: str
    score: int
    reasons: list[str]
    ai_confidence: float


class MatchResponse(BaseModel):
    success: bool = True
    matches: list[MatchOut]
    candidates_evaluated: int
    auto_outreach_sent: int
    processing_time_ms: int


class OutreachAttempt(BaseModel):
    partner_id: int
    success: bool
    method: Literal["in_app_notification", "email", "failed"]


class RecommendationOut(BaseModel):
    id: int
    service_request_id: int
    partner_id: int
    match_score: int
    match_reasons: list[str]
    ai_confidence: float
    status: str
    created_at: str | None = None
