"""
Idempotent execution of queued lifecycle work

Every queued handler call is keyed by (operation, tenant, subject) in the
`lifecycle_jobs` ledger. Redelivered messages find the existing row: a job
that already succeeded is a no-op, a job that failed permanently stays
failed.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.errors import TransientInfrastructureError
from tenant_lifecycle.models.lifecycle_job import (
    JobOperation, JobStatus, LifecycleJob, make_idempotency_key
)

logger = structlog.get_logger(__name__)

# handler(tenant_id, subject_id, final_attempt)
JobHandler = Callable[[uuid.UUID, Optional[uuid.UUID], bool], Any]


class JobLedger:
    """Read/write access to the lifecycle_jobs table"""

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    def find(self, operation: JobOperation, tenant_id: uuid.UUID, subject_id: Optional[uuid.UUID] = None) -> Optional[LifecycleJob]:
        key = make_idempotency_key(operation.value, tenant_id, subject_id)
        return self.session.exec(select(LifecycleJob).where(LifecycleJob.idempotency_key == key)).first()

    def get_or_create(
        self,
        operation: JobOperation,
        tenant_id: uuid.UUID,
        subject_id: Optional[uuid.UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: int = 1
    ) -> LifecycleJob:
        job = self.find(operation, tenant_id, subject_id)
        if job is not None:
            return job

        job = LifecycleJob(
            tenant_id=tenant_id,
            operation=operation,
            subject_id=subject_id,
            idempotency_key=make_idempotency_key(operation.value, tenant_id, subject_id),
            payload=payload or {},
            max_attempts=max_attempts,
            created_at=self.clock(),
        )
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            # Another worker created it first
            self.session.rollback()
            job = self.find(operation, tenant_id, subject_id)
        return job

    def reset(self, job: LifecycleJob) -> LifecycleJob:
        """Allow a permanently failed job to run again (explicit operator retry)"""
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.last_error = None
        job.finished_at = None
        job.updated_at = self.clock()
        self.session.add(job)
        self.session.commit()
        return job


class JobRunner:
    """Runs a registered handler under the job ledger"""

    def __init__(self, session: Session, handlers: Dict[JobOperation, JobHandler], clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.handlers = handlers
        self.clock = clock
        self.ledger = JobLedger(session, clock)

    def run(
        self,
        operation: JobOperation,
        tenant_id: uuid.UUID,
        subject_id: Optional[uuid.UUID] = None,
        final_attempt: bool = True
    ) -> Dict[str, Any]:
        """Execute once. Transient errors on a non-final attempt are re-raised for the queue to retry."""
        job = self.ledger.get_or_create(operation, tenant_id, subject_id)
        log = logger.bind(job_id=str(job.id), operation=operation.value, tenant_id=str(tenant_id))

        if job.is_finished():
            log.info("Job already finished, skipping redelivery", status=job.status.value)
            return {"job_id": str(job.id), "status": job.status.value, "skipped": True}

        job.transition_to_running(self.clock())
        self.session.add(job)
        self.session.commit()
        log.info("Job started", attempt=job.attempts)

        handler = self.handlers[operation]
        try:
            result = handler(tenant_id, subject_id, final_attempt)
        except TransientInfrastructureError as e:
            self.session.rollback()
            if final_attempt:
                self._fail(job, e)
            else:
                job.transition_to_retrying(str(e), self.clock())
                self.session.add(job)
                self.session.commit()
                log.warning("Job hit transient error, will retry", attempt=job.attempts, error=str(e))
            raise
        except Exception as e:
            self.session.rollback()
            self._fail(job, e)
            raise

        job.transition_to_succeeded(self.clock())
        self.session.add(job)
        self.session.commit()
        log.info("Job succeeded", attempt=job.attempts)
        return {"job_id": str(job.id), "status": job.status.value, "skipped": False, "result": result}

    def _fail(self, job: LifecycleJob, error: Exception) -> None:
        job.transition_to_failed(str(error), self.clock())
        self.session.add(job)
        self.session.commit()
        logger.error(
            "Job failed permanently",
            job_id=str(job.id),
            operation=job.operation.value,
            tenant_id=str(job.tenant_id),
            attempts=job.attempts,
            error=str(error),
        )
