"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "marketplace_admin",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.linkage_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the sweep
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_routes={
        "tasks.linkage_tasks.*": {"queue": "reconciliation"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Retry linkage for verified payments whose entity approval never happened
    "relink-unlinked-payments": {
        "task": "tasks.linkage_tasks.relink_unlinked_payments",
        "schedule": settings.RELINK_SWEEP_INTERVAL_SECONDS,
    },
}
