"""
services/admin/audit.py
Append-only admin audit trail. Entries are added to the caller's session,
so an entry commits (or rolls back) together with the write it describes.
"""

from typing import Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAuditLog


def client_ip(request: Optional[Request]) -> Optional[str]:
    return request.client.host if request and request.client else None


async def record_admin_action(
    db: AsyncSession,
    admin_id: UUID,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    ip_address: Optional[str] = None,
):
    """Append an immutable record to AdminAuditLog."""
    db.add(AdminAuditLog(
        admin_id=admin_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=ip_address,
    ))
