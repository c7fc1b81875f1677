"""
services/approval/orchestrator.py
Approval Orchestrator: the reviewer actions that move entity and payment
statuses, and the cascade between them.

Accept payment:
    1. Ledger: pending → verified. Committed on its own. If this write fails,
       the action fails with PaymentUpdateFailed and nothing else runs.
    2. Cascade: resolve linkage; approve the unique candidate and record the
       link. Runs in a separate transaction after step 1 has committed. Any
       failure here becomes a warning on the response; the verified payment
       is never rolled back.

Reject payment and direct entity decisions never cascade.

Callers pass the request's session; every action commits its own writes.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import record_admin_action
from services.approval import linkage as linkage_resolver
from services.entities import registry
from services.payments import ledger
from shared.errors import (
    ConsoleError,
    InvalidTransition,
    LinkageNotFound,
    NotFound,
    PaymentUpdateFailed,
    StorageUnavailable,
)
from shared.models.models import (
    ApprovalStatus,
    EntityKind,
    EntitySubmission,
    PaymentRequest,
    PaymentStatus,
    User,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCEPT_NOTES = "Payment verified and entity approved"
DEFAULT_REJECT_NOTES = "Payment rejected"


@dataclass
class EntityDecision:
    entity: EntitySubmission
    changed: bool
    warnings: list[ConsoleError] = field(default_factory=list)


@dataclass
class PaymentDecision:
    payment: PaymentRequest
    changed: bool
    entity: Optional[EntitySubmission] = None
    warnings: list[ConsoleError] = field(default_factory=list)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _commit(db: AsyncSession, *, kind: str, entity_id: UUID) -> None:
    try:
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        logger.error(f"Commit failed for {kind} {entity_id}: {exc}")
        raise StorageUnavailable("Storage unavailable; nothing was saved", kind=kind, entity_id=entity_id) from exc


def _already(kind: str, entity_id: UUID, status: str) -> InvalidTransition:
    return InvalidTransition(f"{kind} is already {status}; nothing changed", kind=kind, entity_id=entity_id)


async def _reload_payment(db: AsyncSession, snapshot: PaymentRequest) -> PaymentRequest:
    """Fresh copy of a payment; falls back to the detached snapshot if storage is gone."""
    try:
        return await ledger.get_payment(db, snapshot.id)
    except StorageUnavailable:
        logger.warning(f"Could not reload payment {snapshot.id}; returning last committed snapshot")
        return snapshot


async def _linked_entity(db: AsyncSession, payment: PaymentRequest) -> Optional[EntitySubmission]:
    if payment.entity_id is None:
        return None
    mapping = linkage_resolver.map_payment_type(payment.entity_type)
    try:
        return await registry.get_entity(db, mapping.kind, payment.entity_id)
    except (NotFound, StorageUnavailable):
        return None


async def _cascade(
    db: AsyncSession,
    payment: PaymentRequest,
    actor_id: Optional[UUID],
    notes: Optional[str],
    action: str,
    ip_address: Optional[str] = None,
) -> tuple[Optional[EntitySubmission], list[ConsoleError]]:
    """
    Approve the entity a verified payment funds, and link it.
    Never raises for linkage or storage problems: they come back as warnings.
    `payment` must be detached from the session (rollback would expire it).
    """
    try:
        linkage = await linkage_resolver.resolve(db, payment)
    except (LinkageNotFound, StorageUnavailable) as exc:
        return None, [exc]

    if not linkage.is_linked:
        return None, [linkage.ambiguity()]

    candidate_id = linkage.entity.id
    try:
        approval = await registry.set_approval(
            db, linkage.kind, candidate_id, ApprovalStatus.APPROVED, notes, actor_id
        )
        if payment.entity_id is None:
            await ledger.attach_entity(db, payment.id, candidate_id)
        if actor_id is not None:
            await record_admin_action(
                db, actor_id, action, linkage.kind.value, str(candidate_id),
                {"payment_id": str(payment.id), "changed": approval.changed},
                ip_address,
            )
        await db.commit()
    except (InvalidTransition, NotFound) as exc:
        await db.rollback()
        return None, [exc]
    except (StorageUnavailable, DBAPIError) as exc:
        await db.rollback()
        logger.error(f"Cascade write failed for payment {payment.id} → {linkage.kind.value} {candidate_id}: {exc}")
        return None, [StorageUnavailable(
            "Payment is verified but the entity approval could not be saved; retry or approve manually",
            kind=linkage.kind.value,
            entity_id=candidate_id,
        )]

    return approval.entity, []


def _log_warnings(payment_id: UUID, warnings: list[ConsoleError]) -> None:
    for warning in warnings:
        logger.warning(f"Payment {payment_id}: {warning.code}: {warning.detail}")


# ── Entity Decisions ───────────────────────────────────────────────────────────

async def decide_entity(
    db: AsyncSession,
    kind: EntityKind,
    entity_id: UUID,
    decision: ApprovalStatus,
    reviewer: User,
    notes: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> EntityDecision:
    """
    Approve or reject a submission directly. Payments are not touched:
    approving an entity is not a payment verification.
    """
    result = await registry.set_approval(db, kind, entity_id, decision, notes, reviewer.id)
    warnings: list[ConsoleError] = []

    if result.changed:
        action = "APPROVE_ENTITY" if decision == ApprovalStatus.APPROVED else "REJECT_ENTITY"
        await record_admin_action(
            db, reviewer.id, action, kind.value, str(entity_id), {"notes": notes}, ip_address
        )
        await _commit(db, kind=kind.value, entity_id=entity_id)
    else:
        warnings.append(_already(kind.value, entity_id, result.entity.status.value))

    return EntityDecision(entity=result.entity, changed=result.changed, warnings=warnings)


# ── Payment Decisions ──────────────────────────────────────────────────────────

async def accept_payment(
    db: AsyncSession,
    payment_id: UUID,
    reviewer: User,
    notes: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> PaymentDecision:
    """Verify a payment, then approve and link the entity it funds (best effort)."""
    notes = notes or DEFAULT_ACCEPT_NOTES

    try:
        change = await ledger.set_status(db, payment_id, PaymentStatus.VERIFIED, reviewer.id, notes)
        if change.changed:
            await record_admin_action(
                db, reviewer.id, "VERIFY_PAYMENT", "payment", str(payment_id),
                {"notes": notes}, ip_address,
            )
        await db.commit()
    except (StorageUnavailable, DBAPIError) as exc:
        await db.rollback()
        raise PaymentUpdateFailed(
            "Payment could not be verified; nothing was changed",
            kind="payment",
            entity_id=payment_id,
        ) from exc

    payment = change.payment
    warnings: list[ConsoleError] = []
    if not change.changed:
        warnings.append(_already("payment", payment_id, payment.status.value))
        linked = await _linked_entity(db, payment) if payment.is_linked else None
        if payment.is_linked and (linked is None or linked.status != ApprovalStatus.PENDING):
            return PaymentDecision(payment=payment, changed=False, entity=linked, warnings=warnings)
        # A retried accept re-attempts the cascade while the funded entity is still pending.

    db.expunge(payment)
    entity, cascade_warnings = await _cascade(
        db, payment, reviewer.id, notes, "CASCADE_APPROVE_ENTITY", ip_address
    )
    warnings.extend(cascade_warnings)
    _log_warnings(payment_id, cascade_warnings)

    return PaymentDecision(
        payment=await _reload_payment(db, payment),
        changed=change.changed,
        entity=entity,
        warnings=warnings,
    )


async def reject_payment(
    db: AsyncSession,
    payment_id: UUID,
    reviewer: User,
    notes: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> PaymentDecision:
    """Reject a payment. The entity it funds stays pending until reviewed on its own."""
    notes = notes or DEFAULT_REJECT_NOTES
    change = await ledger.set_status(db, payment_id, PaymentStatus.REJECTED, reviewer.id, notes)
    warnings: list[ConsoleError] = []

    if change.changed:
        await record_admin_action(
            db, reviewer.id, "REJECT_PAYMENT", "payment", str(payment_id), {"notes": notes}, ip_address
        )
        await _commit(db, kind="payment", entity_id=payment_id)
    else:
        warnings.append(_already("payment", payment_id, change.payment.status.value))

    return PaymentDecision(payment=change.payment, changed=change.changed, warnings=warnings)


async def reopen_payment(
    db: AsyncSession,
    payment_id: UUID,
    reviewer: User,
    reason: str,
    ip_address: Optional[str] = None,
) -> PaymentDecision:
    """Return a rejected payment to pending so it can be decided again."""
    change = await ledger.reopen(db, payment_id, f"Reopened: {reason}")
    warnings: list[ConsoleError] = []

    if change.changed:
        await record_admin_action(
            db, reviewer.id, "REOPEN_PAYMENT", "payment", str(payment_id), {"reason": reason}, ip_address
        )
        await _commit(db, kind="payment", entity_id=payment_id)
    else:
        warnings.append(_already("payment", payment_id, change.payment.status.value))

    return PaymentDecision(payment=change.payment, changed=change.changed, warnings=warnings)


async def link_payment(
    db: AsyncSession,
    payment_id: UUID,
    entity_id: UUID,
    reviewer: User,
    notes: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> PaymentDecision:
    """
    Manually link a payment to an entity (after an ambiguous-linkage warning).
    If the payment is already verified, the entity is approved as in accept.
    """
    payment = await ledger.get_payment(db, payment_id)

    if payment.entity_id is not None:
        if payment.entity_id != entity_id:
            raise InvalidTransition(
                f"Payment is already linked to {payment.entity_id}",
                kind="payment",
                entity_id=payment_id,
            )
        return PaymentDecision(
            payment=payment,
            changed=False,
            entity=await _linked_entity(db, payment),
            warnings=[_already("payment", payment_id, "linked to this entity")],
        )

    if payment.status == PaymentStatus.REJECTED:
        raise InvalidTransition(
            "A rejected payment cannot be linked; reopen it first",
            kind="payment",
            entity_id=payment_id,
        )

    entity = await linkage_resolver.resolve_explicit(db, payment, entity_id)
    if not await ledger.attach_entity(db, payment_id, entity_id):
        raise InvalidTransition("Payment was linked concurrently", kind="payment", entity_id=payment_id)
    await record_admin_action(
        db, reviewer.id, "LINK_PAYMENT", "payment", str(payment_id),
        {"entity_id": str(entity_id), "kind": entity.kind}, ip_address,
    )
    await _commit(db, kind="payment", entity_id=payment_id)

    payment = await ledger.get_payment(db, payment_id)
    if payment.status not in (PaymentStatus.VERIFIED, PaymentStatus.COMPLETED):
        return PaymentDecision(payment=payment, changed=True, entity=entity)

    db.expunge(payment)
    approved, warnings = await _cascade(
        db, payment, reviewer.id, notes or DEFAULT_ACCEPT_NOTES, "CASCADE_APPROVE_ENTITY", ip_address
    )
    _log_warnings(payment_id, warnings)
    return PaymentDecision(
        payment=await _reload_payment(db, payment),
        changed=True,
        entity=approved,
        warnings=warnings,
    )


async def relink_unlinked_payments(db: AsyncSession, limit: int = 100) -> dict[str, int]:
    """
    Reconciliation sweep: retry linkage for verified payments that never got linked.
    Only acts when a unique candidate now exists. Payment status is never changed.
    """
    payments = await ledger.list_unlinked_verified(db, limit)
    for payment in payments:
        db.expunge(payment)

    stats = {"examined": len(payments), "linked": 0, "unresolved": 0, "failed": 0}
    for payment in payments:
        entity, warnings = await _cascade(
            db, payment, payment.verified_by_id,
            "Approved by reconciliation after payment verification", "RELINK_PAYMENT",
        )
        if entity is not None:
            stats["linked"] += 1
        elif any(isinstance(w, (StorageUnavailable, InvalidTransition)) for w in warnings):
            stats["failed"] += 1
            _log_warnings(payment.id, warnings)
        else:
            stats["unresolved"] += 1

    logger.info(f"Relink sweep: {stats}")
    return stats


# ── User Flags ─────────────────────────────────────────────────────────────────

async def _get_user(db: AsyncSession, user_id: UUID) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound(f"No user with id {user_id}", kind="user", entity_id=user_id)
    return user


async def set_admin_role(
    db: AsyncSession,
    user_id: UUID,
    is_admin: bool,
    actor: User,
    ip_address: Optional[str] = None,
) -> tuple[User, bool]:
    """Grant or revoke the admin flag. Admins cannot revoke their own."""
    if user_id == actor.id and not is_admin:
        raise InvalidTransition("Admins cannot revoke their own admin role", kind="user", entity_id=user_id)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.is_admin == (not is_admin))
        .values(is_admin=is_admin)
        .execution_options(synchronize_session=False)
    )
    user = await _get_user(db, user_id)
    if result.rowcount == 0:
        return user, False

    await record_admin_action(
        db, actor.id, "GRANT_ADMIN" if is_admin else "REVOKE_ADMIN", "user", str(user_id), {}, ip_address
    )
    await _commit(db, kind="user", entity_id=user_id)
    return user, True


async def set_user_verified(
    db: AsyncSession,
    user_id: UUID,
    verified: bool,
    actor: User,
    ip_address: Optional[str] = None,
) -> tuple[User, bool]:
    """Set or clear a user's verified flag."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.is_verified == (not verified))
        .values(is_verified=verified)
        .execution_options(synchronize_session=False)
    )
    user = await _get_user(db, user_id)
    if result.rowcount == 0:
        return user, False

    await record_admin_action(
        db, actor.id, "VERIFY_USER" if verified else "UNVERIFY_USER", "user", str(user_id), {}, ip_address
    )
    await _commit(db, kind="user", entity_id=user_id)
    return user, True
