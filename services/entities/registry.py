"""
services/entities/registry.py
Entity Registry: query and status-write access to entity submissions
(institutes/hospitals, shops, marketplace products).

Every status write is a single conditional UPDATE guarded on
status = pending, so two reviewers acting at once cannot both decide
the same submission.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidTransition, NotFound, StorageUnavailable
from shared.models.models import (
    ApprovalStatus,
    EntityKind,
    EntitySubmission,
    InstituteDomain,
)

logger = logging.getLogger(__name__)

DECISIONS = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


@dataclass
class ApprovalResult:
    entity: EntitySubmission
    changed: bool


@dataclass
class PendingPage:
    items: list[EntitySubmission]
    total: int
    counts: dict[str, int]


def _pending_query(kind: Optional[EntityKind], domain: Optional[InstituteDomain]):
    query = select(EntitySubmission).where(EntitySubmission.status == ApprovalStatus.PENDING)
    if kind is not None:
        query = query.where(EntitySubmission.kind == kind.value)
    if domain is not None:
        query = query.where(EntitySubmission.domain == domain)
    return query


async def list_pending(
    db: AsyncSession,
    kind: Optional[EntityKind] = None,
    domain: Optional[InstituteDomain] = None,
    page: int = 1,
    page_size: int = 50,
) -> PendingPage:
    """
    Pending submissions, oldest first (FIFO review queue).
    Without `kind` all three kinds are merged; each row carries its own kind.
    """
    query = _pending_query(kind, domain)
    try:
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(EntitySubmission.created_at.asc(), EntitySubmission.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list(result.scalars().all())
        counts_result = await db.execute(
            select(EntitySubmission.kind, func.count())
            .where(EntitySubmission.status == ApprovalStatus.PENDING)
            .group_by(EntitySubmission.kind)
        )
    except DBAPIError as exc:
        logger.error(f"list_pending failed: {exc}")
        raise StorageUnavailable("Entity storage unavailable") from exc

    counts = {k.value: 0 for k in EntityKind}
    for row_kind, count in counts_result.all():
        counts[row_kind] = count

    return PendingPage(items=items, total=total or 0, counts=counts)


async def get_entity(db: AsyncSession, kind: EntityKind, entity_id: UUID) -> EntitySubmission:
    """Fetch one submission by (kind, id). Always re-reads from storage."""
    try:
        result = await db.execute(
            select(EntitySubmission)
            .where(EntitySubmission.id == entity_id, EntitySubmission.kind == kind.value)
            .execution_options(populate_existing=True)
        )
    except DBAPIError as exc:
        raise StorageUnavailable(
            "Entity storage unavailable", kind=kind.value, entity_id=entity_id
        ) from exc

    entity = result.scalar_one_or_none()
    if entity is None:
        raise NotFound(f"No {kind.value} with id {entity_id}", kind=kind.value, entity_id=entity_id)
    return entity


async def find_pending_for_owner(
    db: AsyncSession,
    kind: EntityKind,
    owner_id: UUID,
    domain: Optional[InstituteDomain] = None,
) -> list[EntitySubmission]:
    """Pending submissions of one kind owned by one user. Read-only."""
    query = _pending_query(kind, domain).where(EntitySubmission.owner_id == owner_id)
    try:
        result = await db.execute(
            query.order_by(EntitySubmission.created_at.asc(), EntitySubmission.id.asc())
        )
    except DBAPIError as exc:
        raise StorageUnavailable("Entity storage unavailable", kind=kind.value) from exc
    return list(result.scalars().all())


async def set_approval(
    db: AsyncSession,
    kind: EntityKind,
    entity_id: UUID,
    status: ApprovalStatus,
    notes: Optional[str],
    reviewer_id: Optional[UUID],
) -> ApprovalResult:
    """
    Decide a pending submission.

    - NotFound if no submission exists for (kind, id).
    - Same decision on an already-decided submission: no-op, changed=False.
    - Different decision on an already-decided submission: InvalidTransition.

    Does not commit; the caller owns the transaction.
    """
    if status not in DECISIONS:
        raise ValueError(f"Unsupported approval status: {status}")

    try:
        result = await db.execute(
            update(EntitySubmission)
            .where(
                EntitySubmission.id == entity_id,
                EntitySubmission.kind == kind.value,
                EntitySubmission.status == ApprovalStatus.PENDING,
            )
            .values(
                status=status,
                review_notes=notes,
                reviewed_by_id=reviewer_id,
                reviewed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
    except DBAPIError as exc:
        logger.error(f"set_approval write failed for {kind.value} {entity_id}: {exc}")
        raise StorageUnavailable(
            "Entity storage unavailable", kind=kind.value, entity_id=entity_id
        ) from exc

    entity = await get_entity(db, kind, entity_id)
    if result.rowcount == 1:
        logger.info(f"{kind.value} {entity_id} → {status.value}")
        return ApprovalResult(entity=entity, changed=True)

    if entity.status == status:
        return ApprovalResult(entity=entity, changed=False)

    logger.warning(
        f"Refused re-decision of {kind.value} {entity_id}: "
        f"already {entity.status.value}, requested {status.value}"
    )
    raise InvalidTransition(
        f"{kind.value} is already {entity.status.value}; cannot change to {status.value}",
        kind=kind.value,
        entity_id=entity_id,
    )
