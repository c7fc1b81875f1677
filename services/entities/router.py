"""
services/entities/router.py
Entity review queue: pending institutes/hospitals, shops and marketplace
products, and the direct approve/reject decision.

Direct decisions never touch payments.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.admin.audit import client_ip
from services.approval import orchestrator
from services.entities import registry
from services.users.identity import lookup_users
from shared.middleware.auth import require_admin
from shared.models.models import ApprovalStatus, EntityKind, InstituteDomain, User
from shared.schemas.schemas import (
    EntityDecisionRequest,
    EntityDecisionResponse,
    EntitySubmissionResponse,
    PendingEntitiesResponse,
)
from shared.utils.serializers import entity_response, warning_response

router = APIRouter(prefix="/admin/entities", tags=["Entities"])


@router.get("/pending", response_model=PendingEntitiesResponse)
async def list_pending_entities(
    kind: Optional[EntityKind] = Query(None, description="institute | shop | product; omit for all"),
    domain: Optional[InstituteDomain] = Query(None, description="Institutes only: education | healthcare"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=settings.ENTITY_PAGE_SIZE_MAX),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Submissions awaiting review, oldest first (FIFO queue).
    `counts` always covers every kind so the console can badge its tabs.
    """
    result = await registry.list_pending(db, kind=kind, domain=domain, page=page, page_size=page_size)
    users = await lookup_users(db, (e.owner_id for e in result.items))

    return PendingEntitiesResponse(
        items=[entity_response(e, users) for e in result.items],
        total=result.total,
        page=page,
        page_size=page_size,
        total_pages=-(-result.total // page_size),  # ceiling division
        counts=result.counts,
    )


@router.get("/{kind}/{entity_id}", response_model=EntitySubmissionResponse)
async def get_entity(
    kind: EntityKind,
    entity_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entity = await registry.get_entity(db, kind, entity_id)
    users = await lookup_users(db, [entity.owner_id])
    return entity_response(entity, users)


@router.put("/{kind}/{entity_id}/approval", response_model=EntityDecisionResponse)
async def decide_entity(
    kind: EntityKind,
    entity_id: UUID,
    data: EntityDecisionRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve or reject a pending submission.
    - Repeating the decision already recorded: 200 with changed=false.
    - A different decision on a decided submission: 409 InvalidTransition.
    """
    decision = await orchestrator.decide_entity(
        db,
        kind,
        entity_id,
        ApprovalStatus(data.status),
        current_user,
        notes=data.notes,
        ip_address=client_ip(request),
    )
    users = await lookup_users(db, [decision.entity.owner_id])
    return EntityDecisionResponse(
        entity=entity_response(decision.entity, users),
        changed=decision.changed,
        warnings=[warning_response(w) for w in decision.warnings],
    )
