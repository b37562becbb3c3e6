"""
Tests for tenant backups, restores, expiry and schedules
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy import select as sa_select
from sqlmodel import Session, select
import uuid

from tenant_lifecycle.core.errors import NotFoundError, TenantBusyError, ValidationError
from tenant_lifecycle.core.locks import acquire_tenant_lock
from tenant_lifecycle.models.backup import BackupRecord, BackupStatus, RestoreRecord, RestoreStatus
from tenant_lifecycle.models.backup_key import BackupKey
from tenant_lifecycle.models.backup_schedule import BackupFrequency, BackupSchedule
from tenant_lifecycle.services.backup import compute_checksum
from tenant_lifecycle.services.reconciliation import LifecycleReconciler
from tenant_lifecycle.services.tenant_database import users_table


@pytest.fixture
def tenant_files(services, active_tenant):
    """A couple of files in the tenant's file storage"""
    root = services.backups.tenant_files_dir(active_tenant.id)
    (root / "uploads").mkdir(parents=True)
    (root / "uploads" / "logo.png").write_bytes(b"\x89PNG fake image")
    (root / "notes.txt").write_text("original notes")
    return root


def user_emails(databases, tenant):
    engine = databases.engine_for(databases.database_name(tenant))
    try:
        with engine.connect() as conn:
            return sorted(conn.execute(sa_select(users_table.c.email)).scalars())
    finally:
        engine.dispose()


def break_database_dump(monkeypatch, databases):
    def broken_dump(name, stream):
        raise OSError("disk full")

    monkeypatch.setattr(databases, "dump", broken_dump)


class TestCreateBackup:
    """Test the backup pipeline and its record"""

    def test_full_backup_completes(self, services, storage, active_tenant, tenant_files, events):
        result = services.backups.create_backup(active_tenant.id, "full", {"reason": "manual"})

        backup = result["backup"]
        assert result["success"] is True
        assert backup["status"] == BackupStatus.COMPLETED.value
        assert backup["errors"] == []
        assert len(backup["files"]) == 2
        assert backup["details"]["files"]["file_count"] == 2
        assert backup["total_size_bytes"] > 0
        assert backup["reason"] == "manual"
        assert all(storage.exists(path) for path in backup["files"])
        assert storage.exists(backup["manifest_path"])
        assert any(e.__class__.__name__ == "BackupFinished" for e in events)

    def test_checksum_covers_artifacts(self, db, services, storage, active_tenant, tenant_files):
        result = services.backups.create_backup(active_tenant.id, "full")

        record = db.get(BackupRecord, uuid.UUID(result["backup_id"]))
        artifacts = [{"path": path, "sha256": storage.sha256(path)} for path in record.files]
        assert compute_checksum(artifacts) == record.checksum
        assert services.backups.verify_backup(record) is None

    def test_database_only_backup(self, services, active_tenant, tenant_files):
        result = services.backups.create_backup(active_tenant.id, "database", {"compression": "none"})

        backup = result["backup"]
        assert backup["include_files"] is False
        assert list(backup["details"].keys()) == ["database"]
        assert backup["files"][0].endswith("database.sql")

    def test_failed_step_fails_backup(self, services, databases, active_tenant, tenant_files, monkeypatch):
        break_database_dump(monkeypatch, databases)

        result = services.backups.create_backup(active_tenant.id, "full")

        backup = result["backup"]
        assert result["success"] is False
        assert backup["status"] == BackupStatus.FAILED.value
        assert backup["errors"] == ["database: disk full"]
        # Remaining steps still ran
        assert backup["details"]["files"]["file_count"] == 2
        assert backup["manifest_path"]

    def test_backup_failed_by_sweep_mid_run_stays_failed(
        self, db, services, databases, storage, active_tenant, clock, events, monkeypatch
    ):
        dump = databases.dump

        def dump_while_sweep_runs(name, stream):
            dump(name, stream)
            with Session(db.get_bind()) as other:
                LifecycleReconciler(
                    other, lambda: clock() + timedelta(hours=3),
                    backup_stuck_after_minutes=120, provisioning_stuck_after_minutes=600,
                ).reconcile()

        monkeypatch.setattr(databases, "dump", dump_while_sweep_runs)

        result = services.backups.create_backup(active_tenant.id, "database")

        backup_id = uuid.UUID(result["backup_id"])
        assert result["success"] is False
        assert result["status"] == BackupStatus.FAILED.value
        assert "stuck in in_progress" in result["backup"]["errors"][0]
        assert not (storage.root / storage.backup_prefix(active_tenant.id, backup_id)).exists()
        assert not any(e.__class__.__name__ == "BackupFinished" for e in events)

    def test_encrypted_backup_uses_vault_key(self, db, services, active_tenant, tenant_files):
        result = services.backups.create_backup(active_tenant.id, "full", {"encryption": True})

        backup = result["backup"]
        assert backup["status"] == BackupStatus.COMPLETED.value
        assert all(path.endswith(".gz.enc") for path in backup["files"])
        assert db.get(BackupKey, uuid.UUID(backup["encryption_key_id"])) is not None

    @pytest.mark.parametrize("options", [
        {"compression": "zip"},
        {"retention_days": 0},
        {"include_database": False, "include_files": False},
    ])
    def test_invalid_options_rejected(self, services, active_tenant, options):
        with pytest.raises(ValidationError):
            services.backups.create_backup(active_tenant.id, "full", options)

    def test_unknown_type_rejected(self, services, active_tenant):
        with pytest.raises(ValidationError):
            services.backups.create_backup(active_tenant.id, "snapshot")

    def test_unknown_tenant(self, services):
        with pytest.raises(NotFoundError):
            services.backups.create_backup(uuid.uuid4(), "full")


class TestRestore:
    """Test restoring a completed backup"""

    def test_restore_brings_back_files_and_database(self, services, databases, active_tenant, tenant_files, events):
        backup = services.backups.create_backup(active_tenant.id, "full")
        (tenant_files / "notes.txt").write_text("changed after backup")
        (tenant_files / "extra.txt").write_text("new file")
        engine = databases.engine_for(databases.database_name(active_tenant))
        with engine.begin() as conn:
            conn.execute(users_table.delete())
        engine.dispose()

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        assert result["success"] is True
        assert result["status"] == RestoreStatus.COMPLETED.value
        assert result["pre_restore_backup_id"] is not None
        assert (tenant_files / "notes.txt").read_text() == "original notes"
        assert not (tenant_files / "extra.txt").exists()
        assert user_emails(databases, active_tenant) == ["admin@acme.example.com"]
        assert any(e.__class__.__name__ == "RestoreFinished" for e in events)

    def test_pre_restore_backup_is_kept_briefly(self, db, services, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full")

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        pre = db.get(BackupRecord, uuid.UUID(result["pre_restore_backup_id"]))
        assert pre.status == BackupStatus.COMPLETED
        assert pre.retention_days == 7
        assert pre.reason == f"pre_restore:{result['restore_id']}"

    def test_pre_restore_backup_can_be_skipped(self, services, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full")

        result = services.backups.restore(
            active_tenant.id, uuid.UUID(backup["backup_id"]), {"create_backup_before": False}
        )

        assert result["success"] is True
        assert result["pre_restore_backup_id"] is None

    def test_restore_encrypted_backup(self, services, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full", {"encryption": True})
        (tenant_files / "notes.txt").write_text("changed")

        result = services.backups.restore(
            active_tenant.id, uuid.UUID(backup["backup_id"]), {"create_backup_before": False}
        )

        assert result["success"] is True
        assert (tenant_files / "notes.txt").read_text() == "original notes"

    def test_tampered_backup_is_not_restored(self, services, storage, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full")
        files_artifact = [p for p in backup["backup"]["files"] if "files.tar" in p][0]
        (storage.root / files_artifact).write_bytes(b"tampered")
        (tenant_files / "notes.txt").write_text("current")

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        assert result["success"] is False
        assert result["status"] == RestoreStatus.FAILED.value
        assert result["error"] == "Backup checksum mismatch"
        assert result["pre_restore_backup_id"] is None
        assert (tenant_files / "notes.txt").read_text() == "current"

    def test_failed_backup_is_not_restorable(self, services, databases, active_tenant, monkeypatch):
        break_database_dump(monkeypatch, databases)
        backup = services.backups.create_backup(active_tenant.id, "database")

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        assert result == {"success": False, "error": "Backup is not restorable (status: failed)"}

    def test_restore_recreates_lost_database(self, db, services, databases, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full")
        name = databases.database_name(active_tenant)
        databases.drop(name)

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        assert result["success"] is True
        assert result["status"] == RestoreStatus.COMPLETED.value
        assert result["warnings"] == [f"Pre-restore backup skipped the database: {name} does not exist"]
        assert databases.exists(name)
        assert user_emails(databases, active_tenant) == ["admin@acme.example.com"]
        pre = db.get(BackupRecord, uuid.UUID(result["pre_restore_backup_id"]))
        assert pre.status == BackupStatus.COMPLETED
        assert pre.include_database is False
        assert pre.include_files is True

    def test_pre_restore_dump_failure_aborts(self, services, databases, active_tenant, tenant_files, monkeypatch):
        backup = services.backups.create_backup(active_tenant.id, "full")
        (tenant_files / "notes.txt").write_text("current")
        break_database_dump(monkeypatch, databases)

        result = services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        assert result["success"] is False
        assert result["status"] == RestoreStatus.FAILED.value
        assert result["error"] == "Pre-restore backup failed: database: disk full"
        assert result["warnings"] == []
        assert (tenant_files / "notes.txt").read_text() == "current"

    def test_busy_tenant_fails_the_restore(self, db, services, active_tenant, clock, events):
        backup = services.backups.create_backup(active_tenant.id, "database")
        acquire_tenant_lock(db, active_tenant.id, "purge", clock=clock)

        with pytest.raises(TenantBusyError):
            services.backups.restore(active_tenant.id, uuid.UUID(backup["backup_id"]))

        restore = db.exec(select(RestoreRecord).where(RestoreRecord.tenant_id == active_tenant.id)).one()
        assert restore.status == RestoreStatus.FAILED
        assert "locked by 'purge'" in restore.error
        assert any(e.__class__.__name__ == "RestoreFinished" for e in events)

    def test_get_restore(self, services, active_tenant, tenant_files):
        backup = services.backups.create_backup(active_tenant.id, "full")
        result = services.backups.restore(
            active_tenant.id, uuid.UUID(backup["backup_id"]), {"create_backup_before": False}
        )

        restore = services.backups.get_restore(active_tenant.id, uuid.UUID(result["restore_id"]))

        assert restore["status"] == RestoreStatus.COMPLETED.value
        assert restore["duration_seconds"] is not None


class TestBackupQueries:
    """Test listing, usage and deletion"""

    def test_list_is_paginated_newest_first(self, services, active_tenant, clock):
        ids = []
        for _ in range(3):
            ids.append(services.backups.create_backup(active_tenant.id, "database")["backup_id"])
            clock.advance(minutes=1)

        page = services.backups.list_backups(active_tenant.id, page=1, per_page=2)

        assert page["total"] == 3
        assert page["last_page"] == 2
        assert [b["id"] for b in page["data"]] == [ids[2], ids[1]]

    def test_list_filters_by_status(self, services, databases, active_tenant, monkeypatch):
        services.backups.create_backup(active_tenant.id, "database")
        break_database_dump(monkeypatch, databases)
        services.backups.create_backup(active_tenant.id, "database")

        failed = services.backups.list_backups(active_tenant.id, status="failed")

        assert failed["total"] == 1
        assert failed["data"][0]["status"] == "failed"

    def test_list_rejects_unknown_status(self, services, active_tenant):
        with pytest.raises(ValidationError):
            services.backups.list_backups(active_tenant.id, status="bogus")

    def test_storage_usage_counts_completed(self, services, active_tenant):
        first = services.backups.create_backup(active_tenant.id, "database")
        second = services.backups.create_backup(active_tenant.id, "database")

        usage = services.backups.get_storage_usage(active_tenant.id)

        assert usage["backup_count"] == 2
        assert usage["total_size_bytes"] == (
            first["backup"]["total_size_bytes"] + second["backup"]["total_size_bytes"]
        )

    def test_delete_removes_artifacts_then_record(self, db, services, storage, active_tenant):
        backup = services.backups.create_backup(active_tenant.id, "database", {"encryption": True})
        backup_id = uuid.UUID(backup["backup_id"])
        key_id = uuid.UUID(backup["backup"]["encryption_key_id"])

        result = services.backups.delete_backup(active_tenant.id, backup_id)

        assert result == {"success": True, "backup_id": str(backup_id)}
        assert not (storage.root / storage.backup_prefix(active_tenant.id, backup_id)).exists()
        assert db.get(BackupRecord, backup_id) is None
        assert db.get(BackupKey, key_id) is None

    def test_in_progress_backup_cannot_be_deleted(self, db, services, active_tenant, clock):
        record = BackupRecord(tenant_id=active_tenant.id, status=BackupStatus.IN_PROGRESS, started_at=clock())
        db.add(record)
        db.commit()

        result = services.backups.delete_backup(active_tenant.id, record.id)

        assert result == {"success": False, "error": "Backup is in progress"}

    def test_other_tenants_backup_not_found(self, services, active_tenant, register):
        backup = services.backups.create_backup(active_tenant.id, "database")
        other = register("other")

        with pytest.raises(NotFoundError):
            services.backups.get_backup(other.id, uuid.UUID(backup["backup_id"]))

    def test_cleanup_expired(self, db, services, active_tenant, clock):
        short = services.backups.create_backup(active_tenant.id, "database", {"retention_days": 1})
        long = services.backups.create_backup(active_tenant.id, "database", {"retention_days": 30})
        clock.advance(days=2)

        result = services.backups.cleanup_expired()

        assert result == {"deleted": 1, "failed": 0, "errors": []}
        assert db.get(BackupRecord, uuid.UUID(short["backup_id"])) is None
        assert db.get(BackupRecord, uuid.UUID(long["backup_id"])) is not None


class TestBackupSchedules:
    """Test schedule configuration and the scheduler sweep"""

    def test_daily_schedule_next_run(self, services, active_tenant):
        result = services.backups.schedule_backups(active_tenant.id, {"frequency": "daily", "time": "2:00"})

        schedule = result["schedule"]
        assert schedule["time"] == "02:00"
        assert schedule["next_run_at"] == "2026-01-16T02:00:00"

    def test_weekly_schedule_next_run(self, services, active_tenant):
        result = services.backups.schedule_backups(
            active_tenant.id, {"frequency": "weekly", "time": "02:00", "day_of_week": 0}
        )

        # 2026-01-15 is a Thursday; next Monday
        assert result["schedule"]["next_run_at"] == "2026-01-19T02:00:00"

    def test_replacing_schedule_keeps_one_row(self, db, services, active_tenant):
        services.backups.schedule_backups(active_tenant.id, {"frequency": "daily"})
        services.backups.schedule_backups(active_tenant.id, {"frequency": "weekly", "enabled": False})

        schedules = db.exec(select(BackupSchedule).where(BackupSchedule.tenant_id == active_tenant.id)).all()
        assert len(schedules) == 1
        assert schedules[0].frequency == BackupFrequency.WEEKLY
        assert schedules[0].next_run_at is None
        assert schedules[0].version == 2

    @pytest.mark.parametrize("config", [
        {"time": "25:00"},
        {"time": "noon"},
        {"frequency": "hourly"},
        {"frequency": "weekly", "day_of_week": 7},
        {"frequency": "monthly", "day_of_month": 0},
    ])
    def test_invalid_schedule_rejected(self, services, active_tenant, config):
        with pytest.raises(ValidationError):
            services.backups.schedule_backups(active_tenant.id, config)

    def test_monthly_schedule_clamps_to_month_end(self):
        schedule = BackupSchedule(
            tenant_id=uuid.uuid4(), frequency=BackupFrequency.MONTHLY, time="02:00", day_of_month=31
        )

        assert schedule.compute_next_run(datetime(2026, 2, 10, 12, 0)) == datetime(2026, 2, 28, 2, 0)
        assert schedule.compute_next_run(datetime(2026, 1, 31, 3, 0)) == datetime(2026, 2, 28, 2, 0)

    def test_scheduler_runs_due_backups_and_prunes(self, db, services, active_tenant, clock, notifications):
        services.backups.schedule_backups(active_tenant.id, {
            "frequency": "daily",
            "time": "02:00",
            "type": "database",
            "max_backups": 1,
            "notify_on_success": True,
        })

        assert services.backups.run_scheduled_backups()["started"] == 0

        clock.now = datetime(2026, 1, 16, 2, 0)
        first = services.backups.run_scheduled_backups()
        clock.now = datetime(2026, 1, 17, 2, 0)
        second = services.backups.run_scheduled_backups()

        assert first["started"] == 1
        assert second["started"] == 1
        assert second["pruned"] == 1
        remaining = db.exec(select(BackupRecord).where(BackupRecord.tenant_id == active_tenant.id)).all()
        assert len(remaining) == 1
        assert remaining[0].initiated_by == "scheduler"
        assert notifications.types().count("scheduled_backup_completed") == 2
