"""
Celery configuration
====================
Durable task queue for long-running lifecycle work (provisioning, backup,
restore) and the periodic sweeps driven by beat.
"""

from celery import Celery
from celery.signals import setup_logging

from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.logging import configure_logging

settings = get_settings()

celery_app = Celery("tenant_lifecycle")

celery_app.conf.update(
    broker_url=settings.broker_url,
    result_backend=settings.result_backend,

    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,

    result_expires=3600,
    task_track_started=True,
    task_time_limit=2 * 60 * 60,  # Dumps of large tenants take a while
    task_soft_time_limit=110 * 60,

    # At-least-once delivery; handlers are idempotent via the job ledger
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,

    beat_schedule={
        "process-scheduled-maintenance": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.process_scheduled_maintenance",
            "schedule": settings.SCHEDULER_INTERVAL_SECONDS,
        },
        "run-scheduled-backups": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.run_scheduled_backups",
            "schedule": 300.0,
        },
        "cleanup-expired-backups": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.cleanup_expired_backups",
            "schedule": 3600.0,
        },
        "reconcile-stuck-operations": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.reconcile_stuck_operations",
            "schedule": 900.0,
        },
        "verify-pending-domains": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.verify_pending_domains",
            "schedule": 1800.0,
        },
        "purge-expired-tenants": {
            "task": "tenant_lifecycle.tasks.periodic_tasks.purge_expired_tenants",
            "schedule": 24 * 3600.0,
        },
    },
)

celery_app.autodiscover_tasks(["tenant_lifecycle.tasks"], related_name="lifecycle_tasks")
celery_app.autodiscover_tasks(["tenant_lifecycle.tasks"], related_name="periodic_tasks")


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
