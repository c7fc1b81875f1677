"""
services/payments/router.py
Payment verification: bank-transfer receipts submitted by users, the
verify/reject decision, and manual correction (reopen, explicit link).

Verifying a payment also approves the entity it funds when linkage finds a
unique candidate. That follow-up is best effort: its failures come back as
warnings and the payment stays verified.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.admin.audit import client_ip
from services.approval import linkage as linkage_resolver
from services.approval import orchestrator
from services.payments import ledger
from services.users.identity import lookup_users
from shared.errors import LinkageNotFound, StorageUnavailable
from shared.middleware.auth import require_admin
from shared.models.models import PaymentEntityType, PaymentRequest, PaymentStatus, User
from shared.schemas.schemas import (
    LinkagePreviewResponse,
    PaymentDecisionRequest,
    PaymentDecisionResponse,
    PaymentLinkRequest,
    PaymentListResponse,
    PaymentReopenRequest,
    PaymentRequestResponse,
)
from shared.utils.serializers import entity_response, payment_response, warning_response

router = APIRouter(prefix="/admin/payments", tags=["Payments"])
logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _render_payment(db: AsyncSession, payment: PaymentRequest) -> PaymentRequestResponse:
    users = await lookup_users(db, [payment.user_id, payment.verified_by_id])
    try:
        duplicates = await ledger.duplicate_transaction_ids(db, [payment.transaction_id])
    except StorageUnavailable as exc:
        # The decision is already committed; render it without the duplicate flag.
        logger.warning(f"Duplicate check failed for payment {payment.id}: {exc.detail}")
        duplicates = set()
    return payment_response(payment, users, duplicates)


async def _render_decision(db: AsyncSession, decision: orchestrator.PaymentDecision) -> PaymentDecisionResponse:
    entity = None
    if decision.entity is not None:
        owners = await lookup_users(db, [decision.entity.owner_id])
        entity = entity_response(decision.entity, owners)
    return PaymentDecisionResponse(
        payment=await _render_payment(db, decision.payment),
        entity=entity,
        changed=decision.changed,
        warnings=[warning_response(w) for w in decision.warnings],
    )


# ── Listing ────────────────────────────────────────────────────────────────────

@router.get("", response_model=PaymentListResponse)
async def list_payments(
    status: Optional[PaymentStatus] = Query(None),
    entity_type: Optional[PaymentEntityType] = Query(None),
    unlinked: Optional[bool] = Query(None, description="true: no entity reference yet"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.PAYMENT_PAGE_SIZE_DEFAULT, ge=1, le=settings.PAYMENT_PAGE_SIZE_MAX),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Payment requests, most recent transaction date first."""
    result = await ledger.list_by_filter(
        db, status=status, entity_type=entity_type, unlinked=unlinked, page=page, page_size=page_size
    )
    users = await lookup_users(
        db, [p.user_id for p in result.items] + [p.verified_by_id for p in result.items]
    )
    duplicates = await ledger.duplicate_transaction_ids(db, (p.transaction_id for p in result.items))

    return PaymentListResponse(
        items=[payment_response(p, users, duplicates) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.get("/{payment_id}", response_model=PaymentRequestResponse)
async def get_payment(
    payment_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payment = await ledger.get_payment(db, payment_id)
    return await _render_payment(db, payment)


@router.get("/{payment_id}/linkage", response_model=LinkagePreviewResponse)
async def preview_linkage(
    payment_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """What accepting this payment would approve. Read-only."""
    payment = await ledger.get_payment(db, payment_id)
    mapping = linkage_resolver.map_payment_type(payment.entity_type)
    domain = mapping.domain.value if mapping.domain else None

    try:
        linkage = await linkage_resolver.resolve(db, payment)
    except LinkageNotFound as exc:
        return LinkagePreviewResponse(
            payment_id=payment_id,
            kind=mapping.kind.value,
            domain=domain,
            outcome="not_found",
            detail=exc.detail,
        )

    entity = None
    detail = None
    if linkage.is_linked:
        owners = await lookup_users(db, [linkage.entity.owner_id])
        entity = entity_response(linkage.entity, owners)
    else:
        detail = linkage.ambiguity().detail

    return LinkagePreviewResponse(
        payment_id=payment_id,
        kind=mapping.kind.value,
        domain=domain,
        outcome=linkage.outcome.value,
        entity=entity,
        candidate_ids=[c.id for c in linkage.candidates],
        detail=detail,
    )


# ── Decisions ──────────────────────────────────────────────────────────────────

@router.put("/{payment_id}/status", response_model=PaymentDecisionResponse)
async def decide_payment(
    payment_id: UUID,
    data: PaymentDecisionRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Verify or reject a pending payment.
    - verified: payment is committed first, then the funded entity is approved
      when linkage is unique. Linkage/cascade problems arrive in `warnings`.
    - rejected: the entity is left pending for its own review.
    - Repeating the recorded decision returns 200 with changed=false.
    """
    if data.status == PaymentStatus.VERIFIED.value:
        decision = await orchestrator.accept_payment(
            db, payment_id, current_user, data.verification_notes, client_ip(request)
        )
    else:
        decision = await orchestrator.reject_payment(
            db, payment_id, current_user, data.verification_notes, client_ip(request)
        )
    return await _render_decision(db, decision)


@router.post("/{payment_id}/reopen", response_model=PaymentDecisionResponse)
async def reopen_payment(
    payment_id: UUID,
    data: PaymentReopenRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Undo a mistaken rejection: rejected → pending. Decide it again afterwards."""
    decision = await orchestrator.reopen_payment(
        db, payment_id, current_user, data.reason, client_ip(request)
    )
    return await _render_decision(db, decision)


@router.post("/{payment_id}/link", response_model=PaymentDecisionResponse)
async def link_payment(
    payment_id: UUID,
    data: PaymentLinkRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Link an unlinked payment to the entity it funds; approves it if the payment is verified."""
    decision = await orchestrator.link_payment(
        db, payment_id, data.entity_id, current_user, data.notes, client_ip(request)
    )
    return await _render_decision(db, decision)
