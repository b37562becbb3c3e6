"""
Hand-off of long-running work to a worker
"""

from typing import Dict, Optional
import uuid

from sqlmodel import Session
import structlog

from tenant_lifecycle.models.lifecycle_job import JobOperation
from tenant_lifecycle.services.jobs import JobLedger, JobRunner

logger = structlog.get_logger(__name__)

TASK_NAMES: Dict[JobOperation, str] = {
    JobOperation.PROVISION_TENANT: "tenant_lifecycle.tasks.lifecycle_tasks.provision_tenant",
    JobOperation.EXECUTE_BACKUP: "tenant_lifecycle.tasks.lifecycle_tasks.execute_backup",
    JobOperation.EXECUTE_RESTORE: "tenant_lifecycle.tasks.lifecycle_tasks.execute_restore",
}


class TaskDispatcher:
    """Records the job in the ledger, then hands it to an executor"""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = JobLedger(session)

    def dispatch(self, operation: JobOperation, tenant_id: uuid.UUID, subject_id: Optional[uuid.UUID] = None) -> Dict:
        job = self.ledger.get_or_create(operation, tenant_id, subject_id)
        if job.is_finished():
            logger.info("Job already finished, not dispatching", job_id=str(job.id), status=job.status.value)
            return {"job_id": str(job.id), "status": job.status.value, "dispatched": False}
        result = self._send(operation, tenant_id, subject_id)
        self.session.refresh(job)
        return {"job_id": str(job.id), "status": job.status.value, "dispatched": True, **result}

    def _send(self, operation: JobOperation, tenant_id: uuid.UUID, subject_id: Optional[uuid.UUID]) -> Dict:
        raise NotImplementedError

    def provision_tenant(self, tenant_id: uuid.UUID) -> Dict:
        return self.dispatch(JobOperation.PROVISION_TENANT, tenant_id)

    def execute_backup(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> Dict:
        return self.dispatch(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)

    def execute_restore(self, tenant_id: uuid.UUID, restore_id: uuid.UUID) -> Dict:
        return self.dispatch(JobOperation.EXECUTE_RESTORE, tenant_id, restore_id)


class CeleryDispatcher(TaskDispatcher):
    """Production dispatcher: publishes to the Celery broker"""

    def __init__(self, session: Session, app=None):
        super().__init__(session)
        if app is None:
            from tenant_lifecycle.core.celery import celery_app
            app = celery_app
        self.app = app

    def _send(self, operation, tenant_id, subject_id):
        args = [str(tenant_id)] + ([str(subject_id)] if subject_id else [])
        async_result = self.app.send_task(TASK_NAMES[operation], args=args)
        logger.info("Task queued", operation=operation.value, tenant_id=str(tenant_id), task_id=async_result.id)
        return {"task_id": async_result.id}


class InlineDispatcher(TaskDispatcher):
    """Runs the job in-process, single attempt (tests, single-process deployments)"""

    def __init__(self, session: Session, runner: Optional[JobRunner] = None):
        super().__init__(session)
        self.runner = runner

    def bind(self, runner: JobRunner) -> None:
        self.runner = runner

    def _send(self, operation, tenant_id, subject_id):
        outcome = self.runner.run(operation, tenant_id, subject_id, final_attempt=True)
        return {"result": outcome.get("result")}
