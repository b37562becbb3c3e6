"""
Lifecycle Tasks
===============
Queued long-running work: tenant provisioning, backup and restore.

Every task goes through the job ledger, so a redelivered message for work
that already finished is a no-op.
"""

from typing import Any, Dict, Optional
import uuid

from celery import shared_task
import structlog

from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.database import session_scope
from tenant_lifecycle.core.errors import TransientInfrastructureError
from tenant_lifecycle.models.lifecycle_job import JobOperation
from tenant_lifecycle.services.factory import build_services

logger = structlog.get_logger(__name__)
settings = get_settings()


def run_lifecycle_job(
    operation: JobOperation,
    tenant_id: str,
    subject_id: Optional[str] = None,
    final_attempt: bool = True
) -> Dict[str, Any]:
    with session_scope() as session:
        services = build_services(session)
        return services.runner.run(
            operation,
            uuid.UUID(tenant_id),
            uuid.UUID(subject_id) if subject_id else None,
            final_attempt,
        )


def retry_countdown(retries: int) -> int:
    backoff = settings.TASK_RETRY_BACKOFF
    return backoff[min(retries, len(backoff) - 1)]


def _execute(task, operation: JobOperation, tenant_id: str, subject_id: Optional[str] = None) -> Dict[str, Any]:
    final_attempt = task.request.retries >= task.max_retries
    try:
        return run_lifecycle_job(operation, tenant_id, subject_id, final_attempt)
    except TransientInfrastructureError as e:
        if final_attempt:
            raise
        countdown = retry_countdown(task.request.retries)
        logger.warning(
            "Retrying lifecycle task",
            operation=operation.value,
            tenant_id=tenant_id,
            retry=task.request.retries + 1,
            countdown=countdown,
            error=str(e),
        )
        raise task.retry(exc=e, countdown=countdown)


@shared_task(bind=True, max_retries=settings.TASK_MAX_RETRIES)
def provision_tenant(self, tenant_id: str):
    """Create, migrate, seed and verify the tenant database, then activate the tenant."""
    return _execute(self, JobOperation.PROVISION_TENANT, tenant_id)


@shared_task(bind=True, max_retries=settings.TASK_MAX_RETRIES)
def execute_backup(self, tenant_id: str, backup_id: str):
    return _execute(self, JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)


@shared_task(bind=True, max_retries=settings.TASK_MAX_RETRIES)
def execute_restore(self, tenant_id: str, restore_id: str):
    return _execute(self, JobOperation.EXECUTE_RESTORE, tenant_id, restore_id)
