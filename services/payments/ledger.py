"""
services/payments/ledger.py
Payment Ledger: query and status-write access to bank-transfer payment requests.

Status writes are conditional on the current status (pending for decisions,
rejected for reopen), never read-modify-write, so concurrent reviewers
cannot double-process a payment.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidTransition, NotFound, StorageUnavailable
from shared.models.models import PaymentEntityType, PaymentRequest, PaymentStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (PaymentStatus.VERIFIED, PaymentStatus.REJECTED, PaymentStatus.COMPLETED)


@dataclass
class StatusChange:
    payment: PaymentRequest
    changed: bool


@dataclass
class PaymentPage:
    items: list[PaymentRequest]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size)  # ceiling division


def _storage_error(exc: Exception, payment_id: Optional[UUID] = None) -> StorageUnavailable:
    logger.error(f"Payment storage error (payment={payment_id}): {exc}")
    return StorageUnavailable("Payment storage unavailable", kind="payment", entity_id=payment_id)


async def list_by_filter(
    db: AsyncSession,
    status: Optional[PaymentStatus] = None,
    entity_type: Optional[PaymentEntityType] = None,
    unlinked: Optional[bool] = None,
    page: int = 1,
    page_size: int = 20,
) -> PaymentPage:
    """Paginated payment requests, most recent transaction date first."""
    query = select(PaymentRequest)
    if status is not None:
        query = query.where(PaymentRequest.status == status)
    if entity_type is not None:
        query = query.where(PaymentRequest.entity_type == entity_type)
    if unlinked is True:
        query = query.where(PaymentRequest.entity_id.is_(None))
    elif unlinked is False:
        query = query.where(PaymentRequest.entity_id.is_not(None))

    try:
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(PaymentRequest.transaction_date.desc(), PaymentRequest.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    except DBAPIError as exc:
        raise _storage_error(exc) from exc

    return PaymentPage(
        items=list(result.scalars().all()),
        total=total or 0,
        page=page,
        page_size=page_size,
    )


async def get_payment(db: AsyncSession, payment_id: UUID) -> PaymentRequest:
    """Fetch one payment request. Always re-reads from storage."""
    try:
        result = await db.execute(
            select(PaymentRequest)
            .where(PaymentRequest.id == payment_id)
            .execution_options(populate_existing=True)
        )
    except DBAPIError as exc:
        raise _storage_error(exc, payment_id) from exc

    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound(f"No payment request with id {payment_id}", kind="payment", entity_id=payment_id)
    return payment


async def set_status(
    db: AsyncSession,
    payment_id: UUID,
    status: PaymentStatus,
    verifier_id: Optional[UUID],
    notes: Optional[str],
) -> StatusChange:
    """
    Move a pending payment to a terminal status, stamping verifier and time.

    Retrying the same status on an already-terminal payment is a no-op
    (changed=False); any other change from a terminal status raises
    InvalidTransition. Does not commit.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Unsupported payment status: {status}")

    try:
        result = await db.execute(
            update(PaymentRequest)
            .where(
                PaymentRequest.id == payment_id,
                PaymentRequest.status == PaymentStatus.PENDING,
            )
            .values(
                status=status,
                verified_by_id=verifier_id,
                verified_at=datetime.now(timezone.utc),
                verification_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
    except DBAPIError as exc:
        raise _storage_error(exc, payment_id) from exc

    payment = await get_payment(db, payment_id)
    if result.rowcount == 1:
        logger.info(f"Payment {payment_id} → {status.value}")
        return StatusChange(payment=payment, changed=True)

    if payment.status == status:
        return StatusChange(payment=payment, changed=False)

    raise InvalidTransition(
        f"Payment is already {payment.status.value}; cannot change to {status.value}",
        kind="payment",
        entity_id=payment_id,
    )


async def reopen(
    db: AsyncSession,
    payment_id: UUID,
    notes: Optional[str],
) -> StatusChange:
    """
    First step of correcting a mistaken rejection: rejected → pending.
    Verifier stamps are cleared; the payment can then be decided again.
    Reopening a pending payment is a no-op. Does not commit.
    """
    try:
        result = await db.execute(
            update(PaymentRequest)
            .where(
                PaymentRequest.id == payment_id,
                PaymentRequest.status == PaymentStatus.REJECTED,
            )
            .values(
                status=PaymentStatus.PENDING,
                verified_by_id=None,
                verified_at=None,
                verification_notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
    except DBAPIError as exc:
        raise _storage_error(exc, payment_id) from exc

    payment = await get_payment(db, payment_id)
    if result.rowcount == 1:
        logger.info(f"Payment {payment_id} reopened (rejected → pending)")
        return StatusChange(payment=payment, changed=True)

    if payment.status == PaymentStatus.PENDING:
        return StatusChange(payment=payment, changed=False)

    raise InvalidTransition(
        f"Only rejected payments can be reopened; payment is {payment.status.value}",
        kind="payment",
        entity_id=payment_id,
    )


async def attach_entity(db: AsyncSession, payment_id: UUID, entity_id: UUID) -> bool:
    """
    Record the linked entity on a payment that has none yet.
    Returns False (and writes nothing) if the payment is already linked. Does not commit.
    """
    try:
        result = await db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == payment_id, PaymentRequest.entity_id.is_(None))
            .values(entity_id=entity_id)
            .execution_options(synchronize_session=False)
        )
    except DBAPIError as exc:
        raise _storage_error(exc, payment_id) from exc
    return result.rowcount == 1


async def list_unlinked_verified(db: AsyncSession, limit: int) -> list[PaymentRequest]:
    """Verified payments whose linkage never succeeded, oldest verification first."""
    try:
        result = await db.execute(
            select(PaymentRequest)
            .where(
                PaymentRequest.status == PaymentStatus.VERIFIED,
                PaymentRequest.entity_id.is_(None),
            )
            .order_by(PaymentRequest.verified_at.asc())
            .limit(limit)
        )
    except DBAPIError as exc:
        raise _storage_error(exc) from exc
    return list(result.scalars().all())


async def duplicate_transaction_ids(db: AsyncSession, transaction_ids: Iterable[str]) -> set[str]:
    """
    Transaction ids (from the given set) shared by more than one payment request.
    Duplicates are flagged for the reviewer, never rejected.
    """
    ids = {t for t in transaction_ids if t}
    if not ids:
        return set()
    try:
        result = await db.execute(
            select(PaymentRequest.transaction_id)
            .where(PaymentRequest.transaction_id.in_(ids))
            .group_by(PaymentRequest.transaction_id)
            .having(func.count() > 1)
        )
    except DBAPIError as exc:
        raise _storage_error(exc) from exc
    return set(result.scalars().all())
