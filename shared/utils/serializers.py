"""
shared/utils/serializers.py
ORM → response schema conversion, with owner/verifier display data joined in.
Enum columns are rendered by value so responses never depend on enum naming.
"""

from typing import Optional

from config.settings import settings
from shared.errors import ConsoleError
from shared.models.models import EntitySubmission, PaymentRequest, User
from shared.schemas.schemas import (
    DecisionWarning,
    EntitySubmissionResponse,
    OwnerSummary,
    PaymentRequestResponse,
)


def _value(enum_or_str) -> Optional[str]:
    if enum_or_str is None:
        return None
    return getattr(enum_or_str, "value", enum_or_str)


def owner_summary(user: Optional[User], user_id=None) -> OwnerSummary:
    if user is None:
        return OwnerSummary(id=user_id)
    return OwnerSummary(id=user.id, username=user.username, email=user.email, full_name=user.full_name)


def screenshot_url(handle: Optional[str]) -> Optional[str]:
    """Screenshot handles are opaque; a base URL only turns them into links."""
    if not handle:
        return None
    if handle.startswith(("http://", "https://")) or not settings.UPLOADS_BASE_URL:
        return handle
    return f"{settings.UPLOADS_BASE_URL.rstrip('/')}/{handle.lstrip('/')}"


def entity_response(entity: EntitySubmission, users: dict | None = None) -> EntitySubmissionResponse:
    users = users or {}
    return EntitySubmissionResponse(
        id=entity.id,
        kind=entity.kind,
        display_kind=entity.display_kind,
        name=entity.name,
        domain=_value(entity.domain),
        category=entity.category,
        city=entity.city,
        address=entity.address,
        description=entity.description,
        agent_id=entity.agent_id,
        status=_value(entity.status),
        review_notes=entity.review_notes,
        reviewed_by_id=entity.reviewed_by_id,
        reviewed_at=entity.reviewed_at,
        created_at=entity.created_at,
        owner=owner_summary(users.get(entity.owner_id), entity.owner_id),
    )


def payment_response(
    payment: PaymentRequest,
    users: dict | None = None,
    duplicates: set[str] | None = None,
) -> PaymentRequestResponse:
    users = users or {}
    verifier = None
    if payment.verified_by_id is not None:
        verifier = owner_summary(users.get(payment.verified_by_id), payment.verified_by_id)

    return PaymentRequestResponse(
        id=payment.id,
        entity_type=_value(payment.entity_type),
        entity_id=payment.entity_id,
        agent_id=payment.agent_id,
        amount=payment.amount,
        transaction_id=payment.transaction_id,
        bank_name=payment.bank_name,
        account_number=payment.account_number,
        transaction_date=payment.transaction_date,
        notes=payment.notes,
        screenshot_file=payment.screenshot_file,
        screenshot_url=screenshot_url(payment.screenshot_file),
        status=_value(payment.status),
        verified_by_id=payment.verified_by_id,
        verified_at=payment.verified_at,
        verification_notes=payment.verification_notes,
        created_at=payment.created_at,
        linked=payment.is_linked,
        possible_duplicate=payment.transaction_id in (duplicates or set()),
        user=owner_summary(users.get(payment.user_id), payment.user_id),
        verifier=verifier,
    )


def warning_response(error: ConsoleError) -> DecisionWarning:
    return DecisionWarning(**error.to_dict())
