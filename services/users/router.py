"""
services/users/router.py
User administration: searchable account list and the two mutable flags
(admin role, verified).
"""

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import client_ip
from services.approval import orchestrator
from services.users.identity import search_users
from shared.middleware.auth import require_admin
from shared.models.models import User
from shared.schemas.schemas import AdminRoleRequest, UserResponse, VerificationFlagRequest

router = APIRouter(prefix="/admin/users", tags=["Users"])


@router.get("")
async def list_users(
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[Literal["admin", "user"]] = Query(None),
    verified: Optional[Literal["verified", "unverified"]] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    users, total = await search_users(
        db,
        search=search,
        is_admin=None if role is None else role == "admin",
        is_verified=None if verified is None else verified == "verified",
        page=page,
        page_size=page_size,
    )
    return {
        "items": [UserResponse.model_validate(u).model_dump(mode="json") for u in users],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }


@router.put("/{user_id}/admin-role", response_model=UserResponse)
async def set_admin_role(
    user_id: UUID,
    data: AdminRoleRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Grant or revoke console access. You cannot revoke your own."""
    user, _ = await orchestrator.set_admin_role(
        db, user_id, data.is_admin, current_user, client_ip(request)
    )
    return user


@router.put("/{user_id}/verification", response_model=UserResponse)
async def set_verification(
    user_id: UUID,
    data: VerificationFlagRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user, _ = await orchestrator.set_user_verified(
        db, user_id, data.verified, current_user, client_ip(request)
    )
    return user
