"""
services/users/identity.py
Display lookups for owners and verifiers shown next to submissions and payments.
A failed lookup never blocks review: callers fall back to "unknown".
"""

import logging
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import StorageUnavailable
from shared.models.models import User

logger = logging.getLogger(__name__)


async def lookup_users(db: AsyncSession, user_ids: Iterable[Optional[UUID]]) -> dict[UUID, User]:
    """Batch-load users by id. Missing ids are simply absent from the result."""
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return {}
    try:
        result = await db.execute(select(User).where(User.id.in_(ids)))
    except SQLAlchemyError as exc:
        logger.warning(f"User lookup failed for {len(ids)} ids: {exc}")
        return {}
    return {user.id: user for user in result.scalars().all()}


async def search_users(
    db: AsyncSession,
    search: Optional[str] = None,
    is_admin: Optional[bool] = None,
    is_verified: Optional[bool] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[User], int]:
    """Newest accounts first; `search` matches username, email or full name."""
    query = select(User)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.where(or_(
            func.lower(User.username).like(pattern),
            func.lower(User.email).like(pattern),
            func.lower(User.full_name).like(pattern),
        ))
    if is_admin is not None:
        query = query.where(User.is_admin == is_admin)
    if is_verified is not None:
        query = query.where(User.is_verified == is_verified)

    try:
        total = await db.scalar(select(func.count()).select_from(query.subquery()))
        result = await db.execute(
            query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        )
    except SQLAlchemyError as exc:
        logger.error(f"User search failed: {exc}")
        raise StorageUnavailable("User storage unavailable", kind="user") from exc
    return list(result.scalars().all()), total or 0
