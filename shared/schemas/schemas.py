"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the admin console.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


def normalize_agent_id(value: Optional[str]) -> Optional[str]:
    """Agent identifiers arrive as free text; blank and the literal "null" mean absent."""
    if value is None:
        return None
    value = value.strip()
    if not value or value.lower() in ("null", "none", "undefined"):
        return None
    return value


# ── Users ─────────────────────────────────────────────────────

class OwnerSummary(BaseSchema):
    """Display data for an owner/verifier. `username` is "unknown" when lookup fails."""
    id: Optional[uuid.UUID] = None
    username: str = "unknown"
    email: Optional[str] = None
    full_name: Optional[str] = None


class UserResponse(BaseSchema):
    id: uuid.UUID
    username: str
    email: str
    full_name: Optional[str]
    mobile: Optional[str]
    city: Optional[str]
    is_admin: bool
    is_verified: bool
    is_active: bool
    last_login_at: Optional[datetime]
    created_at: datetime


class AdminRoleRequest(BaseSchema):
    is_admin: bool


class VerificationFlagRequest(BaseSchema):
    verified: bool


# ── Entity Submissions ────────────────────────────────────────

class EntitySubmissionResponse(BaseSchema):
    id: uuid.UUID
    kind: str
    display_kind: str
    name: str
    domain: Optional[str]
    category: Optional[str]
    city: Optional[str]
    address: Optional[str]
    description: Optional[str]
    agent_id: Optional[str]
    status: str
    review_notes: Optional[str]
    reviewed_by_id: Optional[uuid.UUID]
    reviewed_at: Optional[datetime]
    created_at: datetime
    owner: OwnerSummary = Field(default_factory=OwnerSummary)

    @field_validator("agent_id", mode="before")
    @classmethod
    def clean_agent_id(cls, v):
        return normalize_agent_id(v)


class PendingEntitiesResponse(BaseSchema):
    items: List[EntitySubmissionResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
    counts: Dict[str, int]


class EntityDecisionRequest(BaseSchema):
    status: Literal["approved", "rejected"]
    notes: Optional[str] = Field(None, max_length=2000)


# ── Payment Requests ──────────────────────────────────────────

class PaymentRequestResponse(BaseSchema):
    id: uuid.UUID
    entity_type: str
    entity_id: Optional[uuid.UUID]
    agent_id: Optional[str]
    amount: Decimal
    transaction_id: str
    bank_name: str
    account_number: str
    transaction_date: datetime
    notes: Optional[str]
    screenshot_file: Optional[str]
    screenshot_url: Optional[str] = None
    status: str
    verified_by_id: Optional[uuid.UUID]
    verified_at: Optional[datetime]
    verification_notes: Optional[str]
    created_at: datetime
    linked: bool = False
    possible_duplicate: bool = False
    user: OwnerSummary = Field(default_factory=OwnerSummary)
    verifier: Optional[OwnerSummary] = None

    @field_validator("agent_id", mode="before")
    @classmethod
    def clean_agent_id(cls, v):
        return normalize_agent_id(v)


class PaymentListResponse(BaseSchema):
    items: List[PaymentRequestResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class PaymentDecisionRequest(BaseSchema):
    status: Literal["verified", "rejected"]
    verification_notes: Optional[str] = Field(None, max_length=2000)


class PaymentReopenRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class PaymentLinkRequest(BaseSchema):
    entity_id: uuid.UUID
    notes: Optional[str] = Field(None, max_length=2000)


# ── Decisions ─────────────────────────────────────────────────

class DecisionWarning(BaseSchema):
    code: str
    detail: str
    kind: Optional[str] = None
    entity_id: Optional[str] = None


class EntityDecisionResponse(BaseSchema):
    entity: EntitySubmissionResponse
    changed: bool
    warnings: List[DecisionWarning] = []


class PaymentDecisionResponse(BaseSchema):
    payment: PaymentRequestResponse
    entity: Optional[EntitySubmissionResponse] = None
    changed: bool
    warnings: List[DecisionWarning] = []


class LinkagePreviewResponse(BaseSchema):
    payment_id: uuid.UUID
    kind: str
    domain: Optional[str]
    outcome: Literal["linked", "ambiguous", "unmatched", "not_found"]
    entity: Optional[EntitySubmissionResponse] = None
    candidate_ids: List[uuid.UUID] = []
    detail: Optional[str] = None


# ── Admin ─────────────────────────────────────────────────────

class DashboardStatsResponse(BaseSchema):
    pending_entities: Dict[str, int]
    payments_by_status: Dict[str, int]
    unlinked_verified_payments: int
    verified_amount_total: Decimal
    total_users: int
    admin_users: int


# ── Errors ──────────────────────────────────────────────────

class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    kind: Optional[str] = None
    id: Optional[str] = None
    request_id: Optional[str] = None
