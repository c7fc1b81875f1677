"""
tasks/linkage_tasks.py
Celery tasks for payment/entity reconciliation.

A verified payment whose cascade failed (ambiguous owner, storage outage)
stays verified and unlinked. This sweep retries linkage and approves the
entity once a unique candidate exists. Idempotent: payment status is
never changed, and already-linked payments are not selected.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import settings
from shared.errors import StorageUnavailable
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_sweep(limit: int) -> dict:
    from services.approval.orchestrator import relink_unlinked_payments

    # One engine per run: each task gets its own event loop, pooled
    # connections cannot be shared across loops.
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as db:
            return await relink_unlinked_payments(db, limit=limit)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def relink_unlinked_payments(self, limit: int | None = None):
    """Periodic: link and approve entities for verified-but-unlinked payments."""
    try:
        return asyncio.run(_run_sweep(limit or settings.RELINK_SWEEP_BATCH_SIZE))
    except (StorageUnavailable, OSError) as exc:
        logger.error(f"Relink sweep could not reach storage: {exc}")
        raise self.retry(exc=exc)
