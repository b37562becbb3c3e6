"""
Tests for soft delete, restore and irreversible purge
"""

import pytest
from datetime import timedelta
from sqlmodel import select

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.errors import (
    NotFoundError, PreconditionError, ResourcePostconditionError, RetentionNotExpiredError,
    TenantBusyError, TenantNotArchivedError
)
from tenant_lifecycle.core.locks import acquire_tenant_lock
from tenant_lifecycle.models.backup import BackupRecord
from tenant_lifecycle.models.domain import Domain
from tenant_lifecycle.models.tenant import Tenant, TenantStatus
from tenant_lifecycle.scripts.purge_expired_tenants import purge_expired_tenants


class TestArchive:
    """Test moving tenants into and out of retention"""

    def test_archive_soft_deletes(self, db, services, active_tenant, clock, events, notifications):
        result = services.archiver.archive(active_tenant.id, "closing", "ops@example.com")

        db.refresh(active_tenant)
        assert active_tenant.status == TenantStatus.ARCHIVED
        assert active_tenant.deleted_at == clock()
        assert active_tenant.data["archived_reason"] == "closing"
        assert active_tenant.data["archived_by"] == "ops@example.com"
        assert result["retention_expires_at"] == (clock() + timedelta(days=30)).isoformat()
        assert any(e.__class__.__name__ == "TenantArchived" for e in events)
        assert "tenant_archived" in notifications.types()

    def test_archive_twice_rejected(self, services, active_tenant):
        services.archiver.archive(active_tenant.id)

        with pytest.raises(PreconditionError):
            services.archiver.archive(active_tenant.id)

    def test_restore_inside_retention(self, db, services, active_tenant, clock):
        services.archiver.archive(active_tenant.id)
        clock.advance(days=29)

        result = services.archiver.restore(active_tenant.id, "ops@example.com")

        db.refresh(active_tenant)
        assert result["status"] == TenantStatus.ACTIVE.value
        assert active_tenant.deleted_at is None
        assert active_tenant.data["restored_by"] == "ops@example.com"

    def test_restore_after_retention_rejected(self, services, active_tenant, clock):
        services.archiver.archive(active_tenant.id)
        clock.advance(days=30)

        with pytest.raises(PreconditionError) as exc_info:
            services.archiver.restore(active_tenant.id)

        assert "Retention period expired" in exc_info.value.message

    def test_restore_requires_archived_tenant(self, services, active_tenant):
        with pytest.raises(PreconditionError):
            services.archiver.restore(active_tenant.id)

    def test_archive_waits_for_tenant_lock(self, db, services, active_tenant, clock):
        acquire_tenant_lock(db, active_tenant.id, "restore", clock=clock)

        with pytest.raises(TenantBusyError):
            services.archiver.archive(active_tenant.id)


class TestPurge:
    """Test hard delete preconditions, ordering and sweeps"""

    @pytest.fixture
    def expired_tenant(self, services, active_tenant, clock):
        services.archiver.archive(active_tenant.id, "closing")
        clock.advance(days=31)
        return active_tenant

    def test_purge_requires_archive(self, services, active_tenant):
        with pytest.raises(TenantNotArchivedError):
            services.purge.purge(active_tenant.id)

    def test_purge_requires_expired_retention(self, services, active_tenant, clock):
        services.archiver.archive(active_tenant.id)
        clock.advance(days=10)

        with pytest.raises(RetentionNotExpiredError) as exc_info:
            services.purge.purge(active_tenant.id)

        assert exc_info.value.eligible_at == clock() + timedelta(days=20)
        assert exc_info.value.to_dict()["error_type"] == "retention_not_expired"

    def test_purge_removes_database_then_metadata(self, db, services, databases, storage, active_tenant, clock, events):
        tenant_id = active_tenant.id
        name = databases.database_name(active_tenant)
        services.backups.create_backup(tenant_id, "database")
        services.archiver.archive(tenant_id)
        clock.advance(days=30)

        result = services.purge.purge(tenant_id)

        assert result == {"success": True, "tenant_id": str(tenant_id), "database": name}
        assert not databases.exists(name)
        assert not (storage.root / str(tenant_id)).exists()
        assert db.get(Tenant, tenant_id) is None
        assert db.exec(select(Domain).where(Domain.tenant_id == tenant_id)).all() == []
        assert db.exec(select(BackupRecord).where(BackupRecord.tenant_id == tenant_id)).all() == []
        assert any(e.__class__.__name__ == "TenantPurged" for e in events)

    def test_database_still_present_blocks_purge(self, db, services, databases, expired_tenant, monkeypatch):
        monkeypatch.setattr(databases, "drop", lambda name: None)

        with pytest.raises(ResourcePostconditionError):
            services.purge.purge(expired_tenant.id)

        tenant = db.get(Tenant, expired_tenant.id)
        assert tenant is not None
        assert tenant.data["purge_blocked"] is True
        assert "still exists" in tenant.data["purge_error"]

    def test_sweep_skips_blocked_tenants(self, db, services, databases, expired_tenant, monkeypatch):
        monkeypatch.setattr(databases, "drop", lambda name: None)
        with pytest.raises(ResourcePostconditionError):
            services.purge.purge(expired_tenant.id)
        monkeypatch.undo()

        result = services.purge.purge_expired()

        assert result["skipped"] == 1
        assert result["success"] == 0
        assert db.get(Tenant, expired_tenant.id) is not None

    def test_batch_purge_collects_failures(self, services, register, expired_tenant):
        pending = register("second")

        result = services.purge.batch_purge([expired_tenant.id, pending.id])

        assert result["success"] == 1
        assert result["failed"] == 1
        assert result["errors"][0]["tenant_id"] == str(pending.id)
        assert result["errors"][0]["error_type"] == "tenant_not_archived"

    def test_batch_purge_isolates_drop_failure(self, db, services, databases, register, clock, monkeypatch):
        tenants = []
        for subdomain in ("first", "second", "third"):
            tenant = register(subdomain)
            services.provisioner.dispatch_provisioning(tenant)
            services.archiver.archive(tenant.id)
            tenants.append(tenant.id)
        clock.advance(days=30)
        stuck = databases.database_name(db.get(Tenant, tenants[1]))
        real_drop = databases.drop
        monkeypatch.setattr(databases, "drop", lambda name: None if name == stuck else real_drop(name))

        result = services.purge.batch_purge(tenants)

        assert result["success"] == 2
        assert result["failed"] == 1
        assert [e["tenant_id"] for e in result["errors"]] == [str(tenants[1])]
        assert db.get(Tenant, tenants[0]) is None
        assert db.get(Tenant, tenants[2]) is None
        assert db.get(Tenant, tenants[1]) is not None
        assert databases.exists(stuck)

    def test_purge_twice_is_not_found(self, services, expired_tenant):
        tenant_id = expired_tenant.id
        services.purge.purge(tenant_id)

        with pytest.raises(NotFoundError):
            services.purge.purge(tenant_id)

    def test_sweep_purges_eligible(self, services, expired_tenant):
        result = services.purge.purge_expired()

        assert result["success"] == 1
        assert result["failed"] == 0

    def test_purge_notices(self, services, active_tenant, clock, notifications):
        services.archiver.archive(active_tenant.id)
        clock.advance(days=25)

        sent = services.purge.send_purge_notices()

        assert sent == 1
        assert "tenant_purge_scheduled" in notifications.types()


class TestPurgeScript:
    """Test the cron entry point"""

    def test_dry_run_lists_eligible(self, db):
        now = utcnow()
        db.add_all([
            Tenant(name="old", subdomain="old", email="old@example.com",
                   status=TenantStatus.ARCHIVED, deleted_at=now - timedelta(days=45)),
            Tenant(name="new", subdomain="new", email="new@example.com",
                   status=TenantStatus.ARCHIVED, deleted_at=now - timedelta(days=2)),
        ])
        db.commit()

        result = purge_expired_tenants(db, dry_run=True)

        assert result == {"eligible": 1, "dry_run": True}
