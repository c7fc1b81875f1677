"""
services/admin/router.py
Console overview: review-queue dashboard and the immutable audit log.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    ApprovalStatus,
    EntityKind,
    EntitySubmission,
    PaymentRequest,
    PaymentStatus,
    User,
)
from shared.schemas.schemas import DashboardStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

DASHBOARD_CACHE_KEY = "admin:dashboard"


async def _dashboard_stats(db: AsyncSession) -> DashboardStatsResponse:
    pending_rows = await db.execute(
        select(EntitySubmission.kind, func.count())
        .where(EntitySubmission.status == ApprovalStatus.PENDING)
        .group_by(EntitySubmission.kind)
    )
    pending = {k.value: 0 for k in EntityKind}
    for kind, count in pending_rows.all():
        pending[kind] = count

    payment_rows = await db.execute(
        select(PaymentRequest.status, func.count()).group_by(PaymentRequest.status)
    )
    by_status = {s.value: 0 for s in PaymentStatus}
    for status, count in payment_rows.all():
        by_status[PaymentStatus(status).value] = count

    unlinked = await db.scalar(
        select(func.count(PaymentRequest.id)).where(
            PaymentRequest.status == PaymentStatus.VERIFIED,
            PaymentRequest.entity_id.is_(None),
        )
    )
    verified_total = await db.scalar(
        select(func.sum(PaymentRequest.amount)).where(
            PaymentRequest.status.in_([PaymentStatus.VERIFIED, PaymentStatus.COMPLETED])
        )
    )
    total_users = await db.scalar(select(func.count(User.id)))
    admin_users = await db.scalar(select(func.count(User.id)).where(User.is_admin == True))  # noqa: E712

    return DashboardStatsResponse(
        pending_entities=pending,
        payments_by_status=by_status,
        unlinked_verified_payments=unlinked or 0,
        verified_amount_total=Decimal(str(verified_total or 0)),
        total_users=total_users or 0,
        admin_users=admin_users or 0,
    )


@router.get("/dashboard", response_model=DashboardStatsResponse)
async def get_dashboard(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Queue sizes and payment totals. Cached briefly; a Redis outage only skips the cache."""
    cache = RedisCache(redis)
    try:
        cached = await cache.get(DASHBOARD_CACHE_KEY)
    except RedisError as exc:
        logger.warning(f"Dashboard cache read failed: {exc}")
        cached = None
    if cached:
        return DashboardStatsResponse(**cached)

    stats = await _dashboard_stats(db)
    try:
        await cache.set(DASHBOARD_CACHE_KEY, stats.model_dump(mode="json"), ttl=settings.DASHBOARD_CACHE_TTL)
    except RedisError as exc:
        logger.warning(f"Dashboard cache write failed: {exc}")
    return stats


@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action e.g. VERIFY_PAYMENT"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, newest first."""
    filters = []
    if action:
        filters.append(AdminAuditLog.action == action.upper())
    if entity_type:
        filters.append(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count(AdminAuditLog.id)).where(*filters))
    query = (
        select(AdminAuditLog, User)
        .outerjoin(User, User.id == AdminAuditLog.admin_id)
        .where(*filters)
        .order_by(AdminAuditLog.created_at.desc())
    )
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    rows = result.all()

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_id": str(log.admin_id),
                "admin_username": admin.username if admin else "unknown",
                "admin_email": admin.email if admin else None,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in rows
        ],
        "total": total or 0,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-(total or 0) // page_size),
    }
