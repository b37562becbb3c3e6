"""
Tests for the tenant lease lock and the job ledger
"""

import pytest
import uuid

from tenant_lifecycle.core.errors import TenantBusyError, TransientInfrastructureError
from tenant_lifecycle.core.locks import acquire_tenant_lock, tenant_lock
from tenant_lifecycle.models.lifecycle_job import JobOperation, JobStatus, make_idempotency_key
from tenant_lifecycle.models.tenant_lock import TenantLock
from tenant_lifecycle.services.jobs import JobRunner


class TestTenantLock:
    """Test lease acquisition, expiry and release"""

    def test_second_acquire_is_busy(self, db, clock):
        tenant_id = uuid.uuid4()
        acquire_tenant_lock(db, tenant_id, "purge", ttl_seconds=60, clock=clock)

        with pytest.raises(TenantBusyError) as exc_info:
            acquire_tenant_lock(db, tenant_id, "restore", clock=clock)

        assert exc_info.value.context["held_by"] == "purge"

    def test_expired_lease_is_taken_over(self, db, clock):
        tenant_id = uuid.uuid4()
        acquire_tenant_lock(db, tenant_id, "purge", ttl_seconds=60, clock=clock)
        clock.advance(seconds=61)

        lock = acquire_tenant_lock(db, tenant_id, "restore", clock=clock)

        assert lock.operation == "restore"
        assert db.get(TenantLock, tenant_id).operation == "restore"

    def test_context_manager_releases(self, db, clock):
        tenant_id = uuid.uuid4()

        with tenant_lock(db, tenant_id, "maintenance", clock=clock):
            assert db.get(TenantLock, tenant_id) is not None

        assert db.get(TenantLock, tenant_id) is None

    def test_released_on_error(self, db, clock):
        tenant_id = uuid.uuid4()

        with pytest.raises(RuntimeError):
            with tenant_lock(db, tenant_id, "maintenance", clock=clock):
                raise RuntimeError("boom")

        assert db.get(TenantLock, tenant_id) is None

    def test_locks_are_per_tenant(self, db, clock):
        acquire_tenant_lock(db, uuid.uuid4(), "purge", clock=clock)

        lock = acquire_tenant_lock(db, uuid.uuid4(), "purge", clock=clock)

        assert lock is not None


class TestJobRunner:
    """Test idempotent execution under the job ledger"""

    @pytest.fixture
    def calls(self):
        return []

    def make_runner(self, db, clock, handler):
        return JobRunner(db, {JobOperation.EXECUTE_BACKUP: handler}, clock)

    def test_idempotency_key(self):
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()

        assert make_idempotency_key("execute_backup", tenant_id, backup_id) == f"execute_backup:{tenant_id}:{backup_id}"
        assert make_idempotency_key("provision_tenant", tenant_id) == f"provision_tenant:{tenant_id}:{tenant_id}"

    def test_success_then_redelivery_is_noop(self, db, clock, calls):
        def handler(tenant_id, subject_id, final):
            calls.append(subject_id)
            return {"ok": True}

        runner = self.make_runner(db, clock, handler)
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()

        first = runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)
        second = runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)

        assert first["status"] == JobStatus.SUCCEEDED.value
        assert first["result"] == {"ok": True}
        assert second["skipped"] is True
        assert calls == [backup_id]

    def test_transient_error_waits_for_retry(self, db, clock, calls):
        def handler(tenant_id, subject_id, final):
            calls.append(final)
            if not final:
                raise TransientInfrastructureError("storage unavailable")
            return "done"

        runner = self.make_runner(db, clock, handler)
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()

        with pytest.raises(TransientInfrastructureError):
            runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id, final_attempt=False)

        job = runner.ledger.find(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)
        assert job.status == JobStatus.PENDING
        assert job.last_error == "storage unavailable"

        outcome = runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id, final_attempt=True)

        db.refresh(job)
        assert outcome["result"] == "done"
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 2
        assert calls == [False, True]

    def test_transient_error_on_final_attempt_fails(self, db, clock):
        def handler(tenant_id, subject_id, final):
            raise TransientInfrastructureError("still unavailable")

        runner = self.make_runner(db, clock, handler)
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()

        with pytest.raises(TransientInfrastructureError):
            runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id, final_attempt=True)

        job = runner.ledger.find(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)
        assert job.status == JobStatus.FAILED

    def test_permanent_failure_stays_failed(self, db, clock, calls):
        def handler(tenant_id, subject_id, final):
            calls.append(1)
            raise ValueError("corrupt input")

        runner = self.make_runner(db, clock, handler)
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()

        with pytest.raises(ValueError):
            runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id, final_attempt=False)

        redelivered = runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)

        assert redelivered == {
            "job_id": redelivered["job_id"],
            "status": JobStatus.FAILED.value,
            "skipped": True,
        }
        assert calls == [1]

    def test_reset_allows_rerun(self, db, clock):
        def handler(tenant_id, subject_id, final):
            raise ValueError("corrupt input")

        runner = self.make_runner(db, clock, handler)
        tenant_id, backup_id = uuid.uuid4(), uuid.uuid4()
        with pytest.raises(ValueError):
            runner.run(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id)

        job = runner.ledger.reset(runner.ledger.find(JobOperation.EXECUTE_BACKUP, tenant_id, backup_id))

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.last_error is None
