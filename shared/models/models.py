"""
shared/models/models.py
All SQLAlchemy ORM models for the marketplace admin console.
UUID primary keys throughout; types stay portable across PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class EntityKind(str, PyEnum):
    INSTITUTE = "institute"
    SHOP = "shop"
    PRODUCT = "product"


class InstituteDomain(str, PyEnum):
    EDUCATION = "education"
    HEALTHCARE = "healthcare"


class ApprovalStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentEntityType(str, PyEnum):
    SHOP = "shop"
    INSTITUTE = "institute"
    HOSPITAL = "hospital"
    MARKETPLACE = "marketplace"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    COMPLETED = "completed"   # Set by external settlement, tolerated on read


# ── Mixins ────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    # Python-side defaults so values are populated on the instance after flush
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Marketplace account. Identity is immutable; admin/verified flags are not."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mobile: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_users_is_admin", "is_admin"),
    )

    def __repr__(self) -> str:
        return f"<User {self.username} admin={self.is_admin}>"


class EntitySubmission(TimestampMixin, Base):
    """
    A user-submitted business listing awaiting review.
    Single-table inheritance: `kind` selects Institute, Shop or Product.
    Status moves only pending → approved | pending → rejected; rows are never deleted.
    """
    __tablename__ = "entity_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Classification: domain for institutes, free-form type for shops/products
    domain: Mapped[Optional[InstituteDomain]] = mapped_column(
        Enum(InstituteDomain), nullable=True
    )
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Review
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus), default=ApprovalStatus.PENDING, nullable=False
    )
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __mapper_args__ = {"polymorphic_on": "kind"}

    __table_args__ = (
        Index("ix_entity_submissions_kind_status", "kind", "status"),
        Index("ix_entity_submissions_owner", "owner_id", "kind"),
    )

    @property
    def display_kind(self) -> str:
        """Label shown in the review queue. Institute overrides it to show hospitals."""
        return self.kind

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.status}>"


class Institute(EntitySubmission):
    """Education institute or hospital (domain=healthcare)."""
    __mapper_args__ = {"polymorphic_identity": EntityKind.INSTITUTE.value}

    @property
    def is_hospital(self) -> bool:
        return self.domain == InstituteDomain.HEALTHCARE

    @property
    def display_kind(self) -> str:
        return "hospital" if self.is_hospital else self.kind


class Shop(EntitySubmission):
    __mapper_args__ = {"polymorphic_identity": EntityKind.SHOP.value}


class Product(EntitySubmission):
    """Marketplace product listing."""
    __mapper_args__ = {"polymorphic_identity": EntityKind.PRODUCT.value}


ENTITY_MODELS: dict[EntityKind, type[EntitySubmission]] = {
    EntityKind.INSTITUTE: Institute,
    EntityKind.SHOP: Shop,
    EntityKind.PRODUCT: Product,
}


class PaymentRequest(TimestampMixin, Base):
    """
    Record of an off-band bank transfer submitted by a user.
    `entity_id` stays NULL until linkage to an EntitySubmission succeeds.
    """
    __tablename__ = "payment_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    entity_type: Mapped[PaymentEntityType] = mapped_column(
        Enum(PaymentEntityType), nullable=False
    )
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("entity_submissions.id"), nullable=True
    )
    agent_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Transfer details as supplied by the payer
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    screenshot_file: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Verification
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payment_requests_status", "status"),
        Index("ix_payment_requests_entity_type", "entity_type"),
        Index("ix_payment_requests_user", "user_id"),
        Index("ix_payment_requests_transaction", "transaction_id"),
        Index("ix_payment_requests_transaction_date", "transaction_date"),
    )

    @property
    def is_linked(self) -> bool:
        return self.entity_id is not None

    def __repr__(self) -> str:
        return f"<PaymentRequest {self.id} {self.entity_type} {self.status}>"


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
