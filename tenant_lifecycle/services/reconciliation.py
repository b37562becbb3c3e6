"""
Reconciliation of stuck lifecycle records

A worker that dies mid-task leaves its record in a non-terminal status.
This sweep fails such records after a threshold so operators see them and
retries can be issued explicitly.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.models.backup import BackupRecord, BackupStatus, RestoreRecord, RestoreStatus
from tenant_lifecycle.models.lifecycle_job import JobStatus, LifecycleJob
from tenant_lifecycle.models.tenant import Tenant, TenantStatus

logger = structlog.get_logger(__name__)


class LifecycleReconciler:
    """Fails backups, restores, provisioning runs and jobs that stopped making progress"""

    def __init__(
        self,
        session: Session,
        clock: Callable[[], datetime] = utcnow,
        backup_stuck_after_minutes: Optional[int] = None,
        provisioning_stuck_after_minutes: Optional[int] = None
    ):
        settings = get_settings()
        self.session = session
        self.clock = clock
        self.backup_threshold = timedelta(minutes=backup_stuck_after_minutes or settings.BACKUP_STUCK_AFTER_MINUTES)
        self.provisioning_threshold = timedelta(
            minutes=provisioning_stuck_after_minutes or settings.PROVISIONING_STUCK_AFTER_MINUTES
        )

    def reconcile(self) -> Dict[str, int]:
        now = self.clock()
        result = {
            "backups": self._backups(now),
            "restores": self._restores(now),
            "tenants": self._tenants(now),
            "jobs": self._jobs(now),
        }
        if any(result.values()):
            logger.warning("Stuck lifecycle records failed", **result)
        else:
            logger.info("Reconciliation found nothing stuck")
        return result

    def _settle(self, record, still_stuck: Callable[[Any], bool], fail: Callable[[Any], None]) -> bool:
        """Fail one record in its own commit; a worker that got there first wins"""
        if not still_stuck(record):
            return False
        fail(record)
        self.session.add(record)
        try:
            self.session.commit()
        except StaleDataError:
            self.session.rollback()
            logger.info(
                "Stuck record changed concurrently, leaving it alone",
                record=type(record).__name__, record_id=str(record.id),
            )
            return False
        return True

    def _backups(self, now: datetime) -> int:
        cutoff = now - self.backup_threshold
        active = (BackupStatus.PENDING, BackupStatus.IN_PROGRESS)
        stuck = self.session.exec(
            select(BackupRecord)
            .where(BackupRecord.status.in_(active))
            .where(func.coalesce(BackupRecord.started_at, BackupRecord.created_at) <= cutoff)
        ).all()
        failed = 0
        for backup in stuck:
            if self._settle(
                backup,
                lambda b: b.status in active,
                lambda b: b.transition_to_failed(
                    f"Backup stuck in {b.status.value} for more than {self.backup_threshold}", now
                ),
            ):
                failed += 1
                logger.error("Stuck backup failed", tenant_id=str(backup.tenant_id), backup_id=str(backup.id))
        return failed

    def _restores(self, now: datetime) -> int:
        cutoff = now - self.backup_threshold
        active = (RestoreStatus.PENDING, RestoreStatus.IN_PROGRESS)
        stuck = self.session.exec(
            select(RestoreRecord)
            .where(RestoreRecord.status.in_(active))
            .where(func.coalesce(RestoreRecord.started_at, RestoreRecord.created_at) <= cutoff)
        ).all()
        failed = 0
        for restore in stuck:
            if self._settle(
                restore,
                lambda r: r.status in active,
                lambda r: r.transition_to_failed(
                    f"Restore stuck in {r.status.value} for more than {self.backup_threshold}", now
                ),
            ):
                failed += 1
                logger.error("Stuck restore failed", tenant_id=str(restore.tenant_id), restore_id=str(restore.id))
        return failed

    def _tenants(self, now: datetime) -> int:
        cutoff = now - self.provisioning_threshold
        stuck = self.session.exec(
            select(Tenant)
            .where(Tenant.status == TenantStatus.PROVISIONING)
            .where(func.coalesce(Tenant.updated_at, Tenant.created_at) <= cutoff)
        ).all()
        failed = 0
        for tenant in stuck:
            step = tenant.provisioning_step
            if self._settle(
                tenant,
                lambda t: t.status == TenantStatus.PROVISIONING,
                lambda t: t.mark_provisioning_failed(
                    f"Provisioning stuck at step {step} for more than {self.provisioning_threshold}"
                ),
            ):
                failed += 1
                logger.error("Stuck provisioning failed", tenant_id=str(tenant.id), step=step)
        return failed

    def _jobs(self, now: datetime) -> int:
        cutoff = now - max(self.backup_threshold, self.provisioning_threshold)
        stuck = self.session.exec(
            select(LifecycleJob)
            .where(LifecycleJob.status == JobStatus.RUNNING)
            .where(LifecycleJob.started_at <= cutoff)
        ).all()
        failed = 0
        for job in stuck:
            if self._settle(
                job,
                lambda j: j.status == JobStatus.RUNNING,
                lambda j: j.transition_to_failed("Job stopped reporting progress", now),
            ):
                failed += 1
                logger.error("Stuck job failed", job_id=str(job.id), operation=job.operation.value)
        return failed
