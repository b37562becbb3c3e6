"""
Tests for failing stuck lifecycle records
"""

import pytest
from datetime import timedelta
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session
import uuid

from tenant_lifecycle.models.backup import BackupRecord, BackupStatus, RestoreRecord, RestoreStatus
from tenant_lifecycle.models.lifecycle_job import JobOperation, JobStatus, LifecycleJob, make_idempotency_key
from tenant_lifecycle.models.tenant import Tenant, TenantStatus
from tenant_lifecycle.services.reconciliation import LifecycleReconciler


@pytest.fixture
def reconciler(db, clock):
    return LifecycleReconciler(db, clock, backup_stuck_after_minutes=120, provisioning_stuck_after_minutes=60)


def sweep_from_another_session(db, now):
    """Run the sweep the way the periodic task does, on its own session"""
    with Session(db.get_bind()) as other:
        reconciler = LifecycleReconciler(
            other, lambda: now, backup_stuck_after_minutes=120, provisioning_stuck_after_minutes=600
        )
        return reconciler.reconcile()


def running_job(tenant_id, started_at):
    subject_id = uuid.uuid4()
    return LifecycleJob(
        tenant_id=tenant_id,
        operation=JobOperation.EXECUTE_BACKUP,
        subject_id=subject_id,
        idempotency_key=make_idempotency_key("execute_backup", tenant_id, subject_id),
        status=JobStatus.RUNNING,
        attempts=1,
        started_at=started_at,
    )


class TestReconciliation:
    """Test the stuck-record sweep"""

    def test_nothing_stuck(self, reconciler, active_tenant):
        assert reconciler.reconcile() == {"backups": 0, "restores": 0, "tenants": 0, "jobs": 0}

    def test_stuck_backup_failed(self, db, reconciler, register, clock):
        tenant = register()
        stuck = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS,
                             started_at=clock() - timedelta(hours=3))
        fresh = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS,
                             started_at=clock() - timedelta(minutes=10))
        db.add_all([stuck, fresh])
        db.commit()

        result = reconciler.reconcile()

        db.refresh(stuck)
        db.refresh(fresh)
        assert result["backups"] == 1
        assert stuck.status == BackupStatus.FAILED
        assert "stuck in in_progress" in stuck.errors[0]
        assert fresh.status == BackupStatus.IN_PROGRESS

    def test_pending_backup_uses_created_at(self, db, reconciler, register, clock):
        tenant = register()
        stuck = BackupRecord(tenant_id=tenant.id, status=BackupStatus.PENDING,
                             created_at=clock() - timedelta(hours=3))
        db.add(stuck)
        db.commit()

        assert reconciler.reconcile()["backups"] == 1

    def test_stuck_restore_failed(self, db, reconciler, register, clock):
        tenant = register()
        restore = RestoreRecord(tenant_id=tenant.id, backup_id=uuid.uuid4(), status=RestoreStatus.IN_PROGRESS,
                                started_at=clock() - timedelta(hours=3))
        db.add(restore)
        db.commit()

        result = reconciler.reconcile()

        db.refresh(restore)
        assert result["restores"] == 1
        assert restore.status == RestoreStatus.FAILED

    def test_stuck_provisioning_failed(self, db, reconciler, register, clock):
        tenant = register()
        tenant.status = TenantStatus.PROVISIONING
        tenant.updated_at = clock() - timedelta(hours=2)
        db.add(tenant)
        db.commit()

        result = reconciler.reconcile()

        db.refresh(tenant)
        assert result["tenants"] == 1
        assert tenant.status == TenantStatus.FAILED

    def test_stuck_job_failed(self, db, reconciler, clock):
        stuck = running_job(uuid.uuid4(), clock() - timedelta(hours=3))
        fresh = running_job(uuid.uuid4(), clock() - timedelta(minutes=5))
        db.add_all([stuck, fresh])
        db.commit()

        result = reconciler.reconcile()

        db.refresh(stuck)
        db.refresh(fresh)
        assert result["jobs"] == 1
        assert stuck.status == JobStatus.FAILED
        assert stuck.last_error == "Job stopped reporting progress"
        assert fresh.status == JobStatus.RUNNING


class TestConcurrentWriters:
    """Test that a sweep and a worker holding the same record never overwrite each other"""

    def test_worker_cannot_complete_a_backup_the_sweep_failed(self, db, register, clock):
        tenant = register()
        backup = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS, started_at=clock())
        db.add(backup)
        db.commit()
        db.refresh(backup)

        assert sweep_from_another_session(db, clock() + timedelta(hours=3))["backups"] == 1

        backup.finish(clock() + timedelta(hours=3))
        db.add(backup)
        with pytest.raises(StaleDataError):
            db.commit()
        db.rollback()
        db.refresh(backup)
        assert backup.status == BackupStatus.FAILED
        assert "stuck in in_progress" in backup.errors[0]

    def test_sweep_leaves_a_backup_the_worker_finished(self, db, reconciler, register, clock, monkeypatch):
        tenant = register()
        backup = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS,
                              started_at=clock() - timedelta(hours=3))
        db.add(backup)
        db.commit()
        backup_id = backup.id
        transition_to_failed = BackupRecord.transition_to_failed

        def worker_finishes_first(record, error, now):
            with Session(db.get_bind()) as worker:
                current = worker.get(BackupRecord, backup_id)
                current.finish(clock())
                worker.add(current)
                worker.commit()
            transition_to_failed(record, error, now)

        monkeypatch.setattr(BackupRecord, "transition_to_failed", worker_finishes_first)

        result = reconciler.reconcile()

        backup = db.get(BackupRecord, backup_id)
        assert result["backups"] == 0
        assert backup.status == BackupStatus.COMPLETED
        assert backup.errors == []

    def test_sweep_leaves_a_tenant_the_worker_activated(self, db, reconciler, register, clock, monkeypatch):
        tenant = register()
        tenant.status = TenantStatus.PROVISIONING
        tenant.updated_at = clock() - timedelta(hours=2)
        db.add(tenant)
        db.commit()
        tenant_id = tenant.id
        mark_provisioning_failed = Tenant.mark_provisioning_failed

        def worker_activates_first(record, reason=None):
            with Session(db.get_bind()) as worker:
                current = worker.get(Tenant, tenant_id)
                current.activate()
                worker.add(current)
                worker.commit()
            mark_provisioning_failed(record, reason)

        monkeypatch.setattr(Tenant, "mark_provisioning_failed", worker_activates_first)

        result = reconciler.reconcile()

        assert result["tenants"] == 0
        assert db.get(Tenant, tenant_id).status == TenantStatus.ACTIVE

    def test_one_conflict_does_not_stop_the_sweep(self, db, reconciler, register, clock, monkeypatch):
        tenant = register()
        raced = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS,
                             started_at=clock() - timedelta(hours=4))
        abandoned = BackupRecord(tenant_id=tenant.id, status=BackupStatus.IN_PROGRESS,
                                 started_at=clock() - timedelta(hours=3))
        db.add_all([raced, abandoned])
        db.commit()
        raced_id, abandoned_id = raced.id, abandoned.id
        transition_to_failed = BackupRecord.transition_to_failed

        def worker_finishes_raced(record, error, now):
            if record.id == raced_id:
                with Session(db.get_bind()) as worker:
                    current = worker.get(BackupRecord, raced_id)
                    current.finish(clock())
                    worker.add(current)
                    worker.commit()
            transition_to_failed(record, error, now)

        monkeypatch.setattr(BackupRecord, "transition_to_failed", worker_finishes_raced)

        result = reconciler.reconcile()

        assert result["backups"] == 1
        assert db.get(BackupRecord, raced_id).status == BackupStatus.COMPLETED
        assert db.get(BackupRecord, abandoned_id).status == BackupStatus.FAILED
