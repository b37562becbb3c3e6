"""
Tenant backup and restore

Backup state machine: pending -> in_progress -> completed | failed.
The pending record is committed before any work starts so that a backup
is auditable even if the worker dies. Each step (database dump, files
archive, manifest) records its own error; the backup fails if any step
failed, but the manifest is written regardless.

Artifact pipeline: raw stream -> gzip (optional) -> Fernet (optional).
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional
import gzip
import hashlib
import io
import json
import math
import shutil
import tarfile
import tempfile
import uuid

from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import (
    LifecycleError, NotFoundError, PreconditionError, TenantBusyError,
    TransientInfrastructureError, ValidationError
)
from tenant_lifecycle.core.events import BackupFinished, EventBus, RestoreFinished, event_bus
from tenant_lifecycle.core.locks import tenant_lock
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.backup import (
    BackupRecord, BackupStatus, BackupType, RestoreRecord, RestoreStatus
)
from tenant_lifecycle.models.backup_schedule import BackupFrequency, BackupSchedule
from tenant_lifecycle.models.tenant import Tenant
from tenant_lifecycle.services.key_vault import BackupKeyVault
from tenant_lifecycle.services.storage import LocalBackupStorage
from tenant_lifecycle.services.tenant_database import TenantDatabaseManager

logger = structlog.get_logger(__name__)

DATABASE_ARTIFACT = "database.sql"
FILES_ARTIFACT = "files.tar"
MANIFEST_ARTIFACT = "manifest.json"

COMPRESSIONS = ("gzip", "none")
MAX_PER_PAGE = 100

# Inclusion flags implied by each backup type
TYPE_INCLUDES = {
    BackupType.FULL: (True, True),
    BackupType.DATABASE: (True, False),
    BackupType.FILES: (False, True),
    BackupType.INCREMENTAL: (True, True),
}


def compute_checksum(artifacts: List[Dict[str, Any]]) -> str:
    """Checksum over every artifact path and its content digest"""
    digest = hashlib.sha256()
    for artifact in sorted(artifacts, key=lambda a: a["path"]):
        digest.update(f"{artifact['path']}:{artifact['sha256']}\n".encode("utf-8"))
    return digest.hexdigest()


class _TransientStepFailure(Exception):
    """Carries a transient step error out of the step loop"""

    def __init__(self, error: TransientInfrastructureError):
        super().__init__(str(error))
        self.error = error


class TenantBackupService:
    """Creates, lists, restores and expires tenant backups"""

    def __init__(
        self,
        session: Session,
        databases: TenantDatabaseManager,
        storage: LocalBackupStorage,
        key_vault: BackupKeyVault,
        dispatcher=None,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        files_root: Optional[str] = None
    ):
        settings = get_settings()
        self.session = session
        self.databases = databases
        self.storage = storage
        self.key_vault = key_vault
        self.dispatcher = dispatcher
        self.notifier = notifier or Notifier()
        self.bus = bus or event_bus
        self.clock = clock
        self.files_root = Path(files_root or settings.TENANT_FILES_ROOT)
        self.default_retention_days = settings.BACKUP_RETENTION_DAYS
        self.pre_restore_retention_days = settings.PRE_RESTORE_BACKUP_RETENTION_DAYS

    # Lookups

    def _get_tenant(self, tenant_id: uuid.UUID) -> Tenant:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation="backup")
        return tenant

    def _get_record(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> BackupRecord:
        record = self.session.get(BackupRecord, backup_id)
        if record is None or record.tenant_id != tenant_id:
            raise NotFoundError("Backup not found", tenant_id=tenant_id, operation="backup", context={"backup_id": str(backup_id)})
        return record

    def tenant_files_dir(self, tenant_id: uuid.UUID) -> Path:
        return self.files_root / str(tenant_id)

    # Create

    def create_backup(self, tenant_id: uuid.UUID, type: str = BackupType.FULL.value, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Persist a pending backup, then execute it (inline or via the worker)"""
        tenant = self._get_tenant(tenant_id)
        record = self._create_record(tenant, type, options or {})

        if self.dispatcher is not None:
            self.dispatcher.execute_backup(tenant.id, record.id)
        else:
            self.execute_backup(record.id)

        self.session.refresh(record)
        return {
            "success": record.status != BackupStatus.FAILED,
            "backup_id": str(record.id),
            "status": record.status.value,
            "backup": record.to_dict(),
        }

    def _create_record(self, tenant: Tenant, type: str, options: Dict[str, Any]) -> BackupRecord:
        try:
            backup_type = BackupType(type)
        except ValueError:
            raise ValidationError(f"Unknown backup type: {type}", tenant_id=tenant.id, operation="create_backup")

        include_database, include_files = TYPE_INCLUDES[backup_type]
        if backup_type in (BackupType.FULL, BackupType.INCREMENTAL):
            include_database = options.get("include_database", include_database)
            include_files = options.get("include_files", include_files)
        if not include_database and not include_files:
            raise ValidationError("Backup must include the database or files", tenant_id=tenant.id, operation="create_backup")

        compression = options.get("compression", "gzip")
        if compression not in COMPRESSIONS:
            raise ValidationError(f"Unknown compression: {compression}", tenant_id=tenant.id, operation="create_backup")

        retention_days = int(options.get("retention_days", self.default_retention_days))
        if retention_days < 1:
            raise ValidationError("retention_days must be at least 1", tenant_id=tenant.id, operation="create_backup")

        now = self.clock()
        record = BackupRecord(
            tenant_id=tenant.id,
            type=backup_type,
            status=BackupStatus.PENDING,
            include_database=include_database,
            include_files=include_files,
            compression=compression,
            encryption=bool(options.get("encryption", False)),
            retention_days=retention_days,
            expires_at=now + timedelta(days=retention_days),
            initiated_by=options.get("initiated_by"),
            reason=options.get("reason"),
            schedule_id=options.get("schedule_id"),
            created_at=now,
        )
        self.session.add(record)
        self.session.commit()

        if record.encryption:
            record.encryption_key_id = self.key_vault.issue(tenant.id, record.id)
            self.session.add(record)
            self.session.commit()

        logger.info(
            "Backup created",
            tenant_id=str(tenant.id),
            backup_id=str(record.id),
            type=backup_type.value,
            encryption=record.encryption,
        )
        return record

    # Execute

    def execute_backup(self, backup_id: uuid.UUID, final_attempt: bool = True) -> Dict[str, Any]:
        """Run the backup steps; safe to call again for the same backup"""
        record = self.session.get(BackupRecord, backup_id)
        if record is None:
            raise NotFoundError("Backup not found", operation="execute_backup", context={"backup_id": str(backup_id)})
        if record.status in (BackupStatus.COMPLETED, BackupStatus.FAILED, BackupStatus.EXPIRED):
            return record.to_dict()

        now = self.clock()
        if record.status == BackupStatus.IN_PROGRESS:
            logger.warning("Resuming interrupted backup", backup_id=str(record.id), tenant_id=str(record.tenant_id))
            self.storage.delete_backup(record.tenant_id, record.id)
            record.started_at = now
            record.version += 1
        else:
            record.transition_to_in_progress(now)
        record.files = []
        record.errors = []
        record.details = {}
        self.session.add(record)
        if not self._commit_or_reload(record):
            return record.to_dict()

        try:
            self._run_steps(record, final_attempt)
        except _TransientStepFailure as failure:
            # Leave the record pending for the next delivery
            self.storage.delete_backup(record.tenant_id, record.id)
            record.status = BackupStatus.PENDING
            record.details = {"last_transient_error": str(failure.error)}
            record.files = []
            record.version += 1
            self.session.add(record)
            self._commit_or_reload(record)
            raise failure.error
        except Exception as e:
            self.session.rollback()
            if record.status != BackupStatus.IN_PROGRESS:
                return self._superseded_backup(record)
            record.errors = [*(record.errors or []), f"backup: {e}"]
            logger.error("Backup aborted", backup_id=str(record.id), error=str(e), exc_info=True)

        record.finish(self.clock())
        self.session.add(record)
        if not self._commit_or_reload(record):
            return self._superseded_backup(record)

        log = logger.info if record.status == BackupStatus.COMPLETED else logger.error
        log(
            "Backup finished",
            tenant_id=str(record.tenant_id),
            backup_id=str(record.id),
            status=record.status.value,
            errors=record.errors,
            size=record.total_size_bytes,
        )
        self.bus.publish(BackupFinished(record.tenant_id, record.id, record.status.value, list(record.errors)))
        self._notify_schedule_outcome(record)
        return record.to_dict()

    def _commit_or_reload(self, record) -> bool:
        """Commit a status change; on a version conflict reload the stored row and return False"""
        try:
            self.session.commit()
            return True
        except StaleDataError:
            self.session.rollback()
            self.session.refresh(record)
            logger.warning(
                "Record changed concurrently, keeping stored state",
                record=type(record).__name__,
                record_id=str(record.id),
                status=record.status.value,
                version=record.version,
            )
            return False

    def _superseded_backup(self, record: BackupRecord) -> Dict[str, Any]:
        """Another writer (usually reconciliation) settled this backup while it ran"""
        if record.status != BackupStatus.COMPLETED:
            self.storage.delete_backup(record.tenant_id, record.id)
        logger.error(
            "Backup result discarded, record was settled elsewhere",
            tenant_id=str(record.tenant_id),
            backup_id=str(record.id),
            status=record.status.value,
        )
        return record.to_dict()

    def _run_steps(self, record: BackupRecord, final_attempt: bool) -> None:
        tenant = self.session.get(Tenant, record.tenant_id)
        prefix = self.storage.backup_prefix(record.tenant_id, record.id)
        fernet = self.key_vault.fernet_for(record.encryption_key_id) if record.encryption else None

        files: List[str] = []
        errors: List[str] = []
        details: Dict[str, Any] = {}

        def step(name: str, action: Callable[[], Dict[str, Any]]) -> None:
            try:
                result = action()
                files.append(result["path"])
                details[name] = result
            except TransientInfrastructureError as e:
                if not final_attempt:
                    raise _TransientStepFailure(e)
                errors.append(f"{name}: {e}")
                logger.error("Backup step failed", backup_id=str(record.id), step=name, error=str(e))
            except Exception as e:
                errors.append(f"{name}: {e}")
                logger.error("Backup step failed", backup_id=str(record.id), step=name, error=str(e), exc_info=True)

        if record.include_database:
            name = self.databases.database_name(tenant)
            step("database", lambda: self._write_artifact(
                f"{prefix}/{DATABASE_ARTIFACT}", record, fernet,
                lambda stream: self.databases.dump(name, stream),
            ))

        if record.include_files:
            since = self._incremental_since(record) if record.type == BackupType.INCREMENTAL else None
            step("files", lambda: self._write_files_artifact(prefix, record, fernet, since))

        record.files = files
        record.errors = errors
        record.details = details
        record.total_size_bytes = sum(d.get("size", 0) for d in details.values())

        try:
            self._write_manifest(prefix, record)
        except Exception as e:
            record.errors = [*record.errors, f"manifest: {e}"]
            logger.error("Backup manifest failed", backup_id=str(record.id), error=str(e), exc_info=True)

    def _artifact_suffix(self, record: BackupRecord) -> str:
        suffix = ".gz" if record.compression == "gzip" else ""
        return suffix + (".enc" if record.encryption else "")

    def _write_artifact(self, base_path: str, record: BackupRecord, fernet, producer: Callable[[BinaryIO], Any]) -> Dict[str, Any]:
        path = base_path + self._artifact_suffix(record)

        def produce(out: BinaryIO) -> Any:
            if record.compression == "gzip":
                with gzip.GzipFile(fileobj=out, mode="wb") as compressed:
                    return producer(compressed)
            return producer(out)

        if fernet is None:
            with self.storage.open_write(path) as out:
                extra = produce(out)
        else:
            # Fernet tokens are not streamable; stage the plaintext first
            with tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024) as staging:
                extra = produce(staging)
                staging.seek(0)
                token = fernet.encrypt(staging.read())
            with self.storage.open_write(path) as out:
                out.write(token)

        result = {"path": path, "size": self.storage.size(path), "sha256": self.storage.sha256(path)}
        if isinstance(extra, dict):
            result.update(extra)
        return result

    @contextmanager
    def _read_artifact(self, path: str, record: BackupRecord) -> Iterator[BinaryIO]:
        with self.storage.open_read(path) as raw:
            stream: BinaryIO = raw
            if record.encryption:
                fernet = self.key_vault.fernet_for(record.encryption_key_id)
                stream = io.BytesIO(fernet.decrypt(raw.read()))
            if record.compression == "gzip":
                with gzip.GzipFile(fileobj=stream, mode="rb") as decompressed:
                    yield decompressed
            else:
                yield stream

    def _incremental_since(self, record: BackupRecord) -> Optional[datetime]:
        previous = self.session.exec(
            select(BackupRecord)
            .where(BackupRecord.tenant_id == record.tenant_id)
            .where(BackupRecord.status == BackupStatus.COMPLETED)
            .where(BackupRecord.include_files == True)  # noqa: E712
            .where(BackupRecord.id != record.id)
            .order_by(BackupRecord.started_at.desc())
        ).first()
        return previous.started_at if previous else None

    def _write_files_artifact(self, prefix: str, record: BackupRecord, fernet, since: Optional[datetime]) -> Dict[str, Any]:
        source = self.tenant_files_dir(record.tenant_id)
        cutoff = since.replace(tzinfo=timezone.utc).timestamp() if since else None

        def archive(stream: BinaryIO) -> Dict[str, Any]:
            count = 0
            with tarfile.open(fileobj=stream, mode="w|") as tar:
                if source.exists():
                    for path in sorted(p for p in source.rglob("*") if p.is_file()):
                        if cutoff is not None and path.stat().st_mtime <= cutoff:
                            continue
                        tar.add(str(path), arcname=str(path.relative_to(source)))
                        count += 1
            return {"file_count": count, "since": since.isoformat() if since else None}

        return self._write_artifact(f"{prefix}/{FILES_ARTIFACT}", record, fernet, archive)

    def _write_manifest(self, prefix: str, record: BackupRecord) -> None:
        artifacts = [
            {"path": d["path"], "size": d["size"], "sha256": d["sha256"]}
            for d in record.details.values() if "path" in d
        ]
        checksum = compute_checksum(artifacts)
        manifest = {
            "backup_id": str(record.id),
            "tenant_id": str(record.tenant_id),
            "type": record.type.value,
            "created_at": record.created_at.isoformat(),
            "compression": record.compression,
            "encrypted": record.encryption,
            "artifacts": artifacts,
            "errors": record.errors,
            "checksum": checksum,
        }
        path = f"{prefix}/{MANIFEST_ARTIFACT}"
        with self.storage.open_write(path) as out:
            out.write(json.dumps(manifest, indent=2).encode("utf-8"))
        record.manifest_path = path
        record.checksum = checksum

    def verify_backup(self, record: BackupRecord) -> Optional[str]:
        """Recompute the checksum from stored artifacts; returns an error message or None"""
        artifacts = []
        for name, detail in (record.details or {}).items():
            path = detail.get("path")
            if not path:
                continue
            if not self.storage.exists(path):
                return f"Artifact missing: {path}"
            artifacts.append({"path": path, "sha256": self.storage.sha256(path)})
        if compute_checksum(artifacts) != record.checksum:
            return "Backup checksum mismatch"
        return None

    def _notify_schedule_outcome(self, record: BackupRecord) -> None:
        if record.schedule_id is None:
            return
        schedule = self.session.get(BackupSchedule, record.schedule_id)
        if schedule is None:
            return
        completed = record.status == BackupStatus.COMPLETED
        if completed and schedule.notify_on_success:
            event_type = "scheduled_backup_completed"
        elif not completed and schedule.notify_on_failure:
            event_type = "scheduled_backup_failed"
        else:
            return
        self.notifier.notify_users(record.tenant_id, event_type, {
            "backup_id": str(record.id),
            "status": record.status.value,
            "errors": record.errors,
            "emails": schedule.notification_emails,
        })

    # Restore

    def restore(self, tenant_id: uuid.UUID, backup_id: uuid.UUID, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Restore a completed backup, protected by a pre-restore backup by default"""
        options = options or {}
        tenant = self._get_tenant(tenant_id)
        backup = self._get_record(tenant_id, backup_id)

        if not backup.is_restorable():
            return {"success": False, "error": f"Backup is not restorable (status: {backup.status.value})"}
        if tenant.is_archived():
            return {"success": False, "error": "Tenant is archived; restore the tenant first"}

        restore = RestoreRecord(
            tenant_id=tenant_id,
            backup_id=backup_id,
            restore_database=bool(options.get("restore_database", backup.include_database)),
            restore_files=bool(options.get("restore_files", backup.include_files)),
            create_backup_before=bool(options.get("create_backup_before", True)),
            initiated_by=options.get("initiated_by"),
            created_at=self.clock(),
        )
        self.session.add(restore)
        self.session.commit()
        logger.info("Restore requested", tenant_id=str(tenant_id), backup_id=str(backup_id), restore_id=str(restore.id))

        if self.dispatcher is not None:
            self.dispatcher.execute_restore(tenant_id, restore.id)
        else:
            self.execute_restore(restore.id)

        self.session.refresh(restore)
        return {
            "success": restore.status != RestoreStatus.FAILED,
            "restore_id": str(restore.id),
            "backup_id": str(backup_id),
            "pre_restore_backup_id": str(restore.pre_restore_backup_id) if restore.pre_restore_backup_id else None,
            "status": restore.status.value,
            "error": restore.error,
            "warnings": list(restore.warnings or []),
        }

    def execute_restore(self, restore_id: uuid.UUID, final_attempt: bool = True) -> Dict[str, Any]:
        restore = self.session.get(RestoreRecord, restore_id)
        if restore is None:
            raise NotFoundError("Restore not found", operation="execute_restore", context={"restore_id": str(restore_id)})
        if restore.status in (RestoreStatus.COMPLETED, RestoreStatus.FAILED):
            return restore.to_dict()

        try:
            with tenant_lock(self.session, restore.tenant_id, "restore", clock=self.clock):
                self._run_restore(restore, final_attempt)
        except TenantBusyError as e:
            # Nothing ran; settle the record instead of leaving it pending
            self.session.rollback()
            self._fail_restore(restore, e.message)
            raise
        return restore.to_dict()

    def _run_restore(self, restore: RestoreRecord, final_attempt: bool) -> None:
        tenant_id = restore.tenant_id
        self.session.refresh(restore)
        if restore.status == RestoreStatus.PENDING:
            restore.transition_to_in_progress(self.clock())
            self.session.add(restore)
            if not self._commit_or_reload(restore):
                return
        if restore.status != RestoreStatus.IN_PROGRESS:
            return

        try:
            self._apply_restore(restore)
        except TransientInfrastructureError as e:
            self.session.rollback()
            if not final_attempt:
                restore.status = RestoreStatus.PENDING
                restore.error = str(e)
                restore.version += 1
                self.session.add(restore)
                self._commit_or_reload(restore)
                logger.warning("Restore will be retried", restore_id=str(restore.id), error=str(e))
                raise
            self._fail_restore(restore, str(e))
        except Exception as e:
            self.session.rollback()
            self._fail_restore(restore, str(e))
        else:
            restore.transition_to_completed(self.clock())
            self.session.add(restore)
            if not self._commit_or_reload(restore):
                logger.error(
                    "Restore was applied after its record was failed elsewhere",
                    tenant_id=str(tenant_id), restore_id=str(restore.id), backup_id=str(restore.backup_id),
                )
                return
            logger.info(
                "Restore completed",
                tenant_id=str(tenant_id), restore_id=str(restore.id), backup_id=str(restore.backup_id),
            )
            self.notifier.notify_users(tenant_id, "restore_completed", {"restore_id": str(restore.id)})
            self.bus.publish(RestoreFinished(tenant_id, restore.id, restore.backup_id, restore.status.value))

    def _apply_restore(self, restore: RestoreRecord) -> None:
        backup = self.session.get(BackupRecord, restore.backup_id)
        if backup is None or not backup.is_restorable():
            raise PreconditionError("Backup is no longer restorable", tenant_id=restore.tenant_id, operation="restore")

        problem = self.verify_backup(backup)
        if problem:
            raise PreconditionError(problem, tenant_id=restore.tenant_id, operation="restore")

        if restore.create_backup_before and not self._pre_restore_backup_ok(restore):
            tenant = self._get_tenant(restore.tenant_id)
            backup_type = BackupType.FULL
            database = self.databases.database_name(tenant)
            if not self.databases.exists(database):
                # A lost database is what the restore is for; protect the files only
                backup_type = BackupType.FILES
                restore.warnings = [
                    *(restore.warnings or []),
                    f"Pre-restore backup skipped the database: {database} does not exist",
                ]
                logger.warning(
                    "Tenant database missing, pre-restore backup covers files only",
                    tenant_id=str(tenant.id), restore_id=str(restore.id), database=database,
                )
            pre = self._create_record(tenant, backup_type.value, {
                "retention_days": self.pre_restore_retention_days,
                "initiated_by": restore.initiated_by,
                "reason": f"pre_restore:{restore.id}",
            })
            restore.pre_restore_backup_id = pre.id
            self.session.add(restore)
            self.session.commit()
            self.execute_backup(pre.id)
            self.session.refresh(pre)
            if pre.status != BackupStatus.COMPLETED:
                raise PreconditionError(
                    "Pre-restore backup failed: " + "; ".join(pre.errors or []),
                    tenant_id=restore.tenant_id, operation="restore",
                )

        tenant = self._get_tenant(restore.tenant_id)
        if restore.restore_database:
            detail = (backup.details or {}).get("database")
            if detail:
                with self._read_artifact(detail["path"], backup) as stream:
                    self.databases.load(self.databases.database_name(tenant), stream)
                logger.info("Database restored", tenant_id=str(tenant.id), backup_id=str(backup.id))

        if restore.restore_files:
            detail = (backup.details or {}).get("files")
            if detail:
                self._restore_files(tenant.id, backup, detail["path"])

    def _pre_restore_backup_ok(self, restore: RestoreRecord) -> bool:
        if restore.pre_restore_backup_id is None:
            return False
        pre = self.session.get(BackupRecord, restore.pre_restore_backup_id)
        return pre is not None and pre.status == BackupStatus.COMPLETED

    def _restore_files(self, tenant_id: uuid.UUID, backup: BackupRecord, path: str) -> None:
        target = self.tenant_files_dir(tenant_id)
        # Incremental archives only carry changed files; apply them on top
        if backup.type != BackupType.INCREMENTAL and target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True, exist_ok=True)
        with self._read_artifact(path, backup) as stream:
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                tar.extractall(str(target), filter="data")
        logger.info("Files restored", tenant_id=str(tenant_id), backup_id=str(backup.id))

    def _fail_restore(self, restore: RestoreRecord, error: str) -> None:
        restore.transition_to_failed(error, self.clock())
        self.session.add(restore)
        if not self._commit_or_reload(restore):
            return
        logger.error("Restore failed", tenant_id=str(restore.tenant_id), restore_id=str(restore.id), error=error)
        self.notifier.notify_users(restore.tenant_id, "restore_failed", {"restore_id": str(restore.id), "error": error})
        self.bus.publish(RestoreFinished(restore.tenant_id, restore.id, restore.backup_id, restore.status.value, error))

    # Queries

    def get_backup(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> Dict[str, Any]:
        return self._get_record(tenant_id, backup_id).to_dict()

    def get_restore(self, tenant_id: uuid.UUID, restore_id: uuid.UUID) -> Dict[str, Any]:
        restore = self.session.get(RestoreRecord, restore_id)
        if restore is None or restore.tenant_id != tenant_id:
            raise NotFoundError("Restore not found", tenant_id=tenant_id, operation="restore")
        return restore.to_dict()

    def list_backups(
        self,
        tenant_id: uuid.UUID,
        status: Optional[str] = None,
        type: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        per_page: int = 20
    ) -> Dict[str, Any]:
        """Filtered, paginated, newest first"""
        page = max(page, 1)
        per_page = min(max(per_page, 1), MAX_PER_PAGE)

        conditions = [BackupRecord.tenant_id == tenant_id]
        try:
            if status:
                conditions.append(BackupRecord.status == BackupStatus(status))
            if type:
                conditions.append(BackupRecord.type == BackupType(type))
        except ValueError as e:
            raise ValidationError(str(e), tenant_id=tenant_id, operation="list_backups")
        if date_from:
            conditions.append(BackupRecord.created_at >= date_from)
        if date_to:
            conditions.append(BackupRecord.created_at <= date_to)

        total = self.session.exec(select(func.count()).select_from(BackupRecord).where(*conditions)).one()
        records = self.session.exec(
            select(BackupRecord)
            .where(*conditions)
            .order_by(BackupRecord.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return {
            "data": [r.to_dict() for r in records],
            "total": total,
            "page": page,
            "per_page": per_page,
            "last_page": max(math.ceil(total / per_page), 1),
        }

    def get_storage_usage(self, tenant_id: uuid.UUID) -> Dict[str, Any]:
        count, total = self.session.exec(
            select(func.count(), func.coalesce(func.sum(BackupRecord.total_size_bytes), 0))
            .where(BackupRecord.tenant_id == tenant_id)
            .where(BackupRecord.status == BackupStatus.COMPLETED)
        ).one()
        return {"tenant_id": str(tenant_id), "backup_count": count, "total_size_bytes": int(total)}

    # Delete / expiry

    def delete_backup(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> Dict[str, Any]:
        """Artifacts first; metadata is only removed once they are gone"""
        record = self._get_record(tenant_id, backup_id)
        if record.status == BackupStatus.IN_PROGRESS:
            return {"success": False, "error": "Backup is in progress"}
        return self._delete_record(record)

    def _delete_record(self, record: BackupRecord) -> Dict[str, Any]:
        try:
            self.storage.delete_backup(record.tenant_id, record.id)
        except OSError as e:
            logger.error("Failed to delete backup artifacts", backup_id=str(record.id), error=str(e))
            return {"success": False, "backup_id": str(record.id), "error": f"Failed to delete artifacts: {e}"}

        if record.encryption_key_id:
            self.key_vault.destroy(record.encryption_key_id)
        self.session.delete(record)
        self.session.commit()
        logger.info("Backup deleted", tenant_id=str(record.tenant_id), backup_id=str(record.id))
        return {"success": True, "backup_id": str(record.id)}

    def cleanup_expired(self) -> Dict[str, Any]:
        """Remove every backup past expires_at; per-backup failures are collected"""
        now = self.clock()
        expired = self.session.exec(
            select(BackupRecord)
            .where(BackupRecord.expires_at != None)  # noqa: E711
            .where(BackupRecord.expires_at <= now)
            .where(BackupRecord.status.in_([BackupStatus.COMPLETED, BackupStatus.FAILED, BackupStatus.EXPIRED]))
        ).all()

        result: Dict[str, Any] = {"deleted": 0, "failed": 0, "errors": []}
        for record in expired:
            backup_id, tenant_id = record.id, record.tenant_id
            try:
                if record.status != BackupStatus.EXPIRED:
                    record.transition_to_expired()
                    self.session.add(record)
                    self.session.commit()
                outcome = self._delete_record(record)
            except Exception as e:
                self.session.rollback()
                outcome = {"success": False, "error": str(e)}
            if outcome["success"]:
                result["deleted"] += 1
            else:
                result["failed"] += 1
                result["errors"].append({"tenant_id": str(tenant_id), "backup_id": str(backup_id), "error": outcome["error"]})

        logger.info("Expired backup cleanup complete", deleted=result["deleted"], failed=result["failed"])
        return result

    # Schedules

    def schedule_backups(self, tenant_id: uuid.UUID, config: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace the tenant's backup schedule (last write wins)"""
        self._get_tenant(tenant_id)
        now = self.clock()

        try:
            frequency = BackupFrequency(config.get("frequency", BackupFrequency.DAILY.value))
            backup_type = BackupType(config.get("type", BackupType.FULL.value))
        except ValueError as e:
            raise ValidationError(str(e), tenant_id=tenant_id, operation="schedule_backups")

        time_value = str(config.get("time", "02:00"))
        parts = time_value.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts) \
                or not (0 <= int(parts[0]) < 24 and 0 <= int(parts[1]) < 60):
            raise ValidationError(f"Invalid time: {time_value} (expected HH:MM)", tenant_id=tenant_id, operation="schedule_backups")

        day_of_week = int(config.get("day_of_week", 0))
        day_of_month = int(config.get("day_of_month", 1))
        if not 0 <= day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 and 6", tenant_id=tenant_id, operation="schedule_backups")
        if not 1 <= day_of_month <= 31:
            raise ValidationError("day_of_month must be between 1 and 31", tenant_id=tenant_id, operation="schedule_backups")

        schedule = self.session.exec(select(BackupSchedule).where(BackupSchedule.tenant_id == tenant_id)).first()
        if schedule is None:
            schedule = BackupSchedule(tenant_id=tenant_id, created_at=now)
        else:
            schedule.version += 1

        schedule.enabled = bool(config.get("enabled", True))
        schedule.frequency = frequency
        schedule.time = f"{int(parts[0]):02d}:{int(parts[1]):02d}"
        schedule.day_of_week = day_of_week
        schedule.day_of_month = day_of_month
        schedule.type = backup_type
        schedule.retention_days = int(config.get("retention_days", self.default_retention_days))
        schedule.max_backups = int(config.get("max_backups", 10))
        schedule.notify_on_success = bool(config.get("notify_on_success", False))
        schedule.notify_on_failure = bool(config.get("notify_on_failure", True))
        schedule.notification_emails = list(config.get("notification_emails") or [])
        schedule.next_run_at = schedule.compute_next_run(now) if schedule.enabled else None
        schedule.updated_at = now

        self.session.add(schedule)
        self.session.commit()
        logger.info("Backup schedule saved", tenant_id=str(tenant_id), frequency=frequency.value, next_run_at=str(schedule.next_run_at))
        return {"success": True, "schedule": schedule.to_dict()}

    def get_schedule(self, tenant_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        schedule = self.session.exec(select(BackupSchedule).where(BackupSchedule.tenant_id == tenant_id)).first()
        return schedule.to_dict() if schedule else None

    def scheduled_backups_due(self, now: Optional[datetime] = None) -> List[BackupSchedule]:
        now = now or self.clock()
        return list(self.session.exec(
            select(BackupSchedule)
            .where(BackupSchedule.enabled == True)  # noqa: E712
            .where(BackupSchedule.next_run_at != None)  # noqa: E711
            .where(BackupSchedule.next_run_at <= now)
        ).all())

    def run_scheduled_backups(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        result: Dict[str, Any] = {"started": 0, "failed": 0, "pruned": 0, "errors": []}

        for schedule in self.scheduled_backups_due(now):
            tenant_id = schedule.tenant_id
            try:
                tenant = self.session.get(Tenant, tenant_id)
                if tenant is None or tenant.is_archived():
                    schedule.next_run_at = schedule.compute_next_run(now)
                    self.session.add(schedule)
                    self.session.commit()
                    continue

                schedule.last_run_at = now
                schedule.next_run_at = schedule.compute_next_run(now)
                self.session.add(schedule)
                self.session.commit()

                self.create_backup(tenant_id, schedule.type.value, {
                    "retention_days": schedule.retention_days,
                    "initiated_by": "scheduler",
                    "reason": "scheduled",
                    "schedule_id": schedule.id,
                })
                result["started"] += 1
                result["pruned"] += self._prune_scheduled(schedule)
            except LifecycleError as e:
                self.session.rollback()
                result["failed"] += 1
                result["errors"].append({"tenant_id": str(tenant_id), **e.to_dict()})
                logger.error("Scheduled backup failed", tenant_id=str(tenant_id), error=e.message)
            except Exception as e:
                self.session.rollback()
                result["failed"] += 1
                result["errors"].append({"tenant_id": str(tenant_id), "error": str(e)})
                logger.error("Scheduled backup failed", tenant_id=str(tenant_id), error=str(e), exc_info=True)

        return result

    def _prune_scheduled(self, schedule: BackupSchedule) -> int:
        """Drop the oldest completed scheduled backups beyond max_backups"""
        completed = self.session.exec(
            select(BackupRecord)
            .where(BackupRecord.tenant_id == schedule.tenant_id)
            .where(BackupRecord.schedule_id == schedule.id)
            .where(BackupRecord.status == BackupStatus.COMPLETED)
            .order_by(BackupRecord.created_at.desc())
        ).all()
        pruned = 0
        for record in completed[schedule.max_backups:]:
            if self._delete_record(record)["success"]:
                pruned += 1
        return pruned
