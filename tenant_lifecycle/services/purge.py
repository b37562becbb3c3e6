"""
Tenant purge - irreversible hard delete

Order matters: the tenant database is dropped (and verified gone) before any
central metadata is removed. A crash in between leaves a tenant record with
no database, which the next purge run detects and finishes. The opposite
order could leave a live database nobody owns.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Union
import uuid

from sqlalchemy import delete
from sqlmodel import Session
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.errors import (
    LifecycleError, NotFoundError, ResourcePostconditionError,
    RetentionNotExpiredError, TenantNotArchivedError
)
from tenant_lifecycle.core.events import EventBus, TenantPurged, event_bus
from tenant_lifecycle.core.locks import tenant_lock
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.backup import BackupRecord, RestoreRecord
from tenant_lifecycle.models.backup_key import BackupKey
from tenant_lifecycle.models.backup_schedule import BackupSchedule
from tenant_lifecycle.models.domain import Domain
from tenant_lifecycle.models.lifecycle_job import LifecycleJob
from tenant_lifecycle.models.maintenance import MaintenanceNotification, MaintenanceWindow
from tenant_lifecycle.models.plan import Subscription
from tenant_lifecycle.models.tenant import Tenant
from tenant_lifecycle.services.retention import TenantRetentionService
from tenant_lifecycle.services.storage import LocalBackupStorage
from tenant_lifecycle.services.tenant_database import TenantDatabaseManager

logger = structlog.get_logger(__name__)

# Dependents of a tenant, deleted children first
DEPENDENT_MODELS = [
    MaintenanceNotification,
    MaintenanceWindow,
    BackupKey,
    RestoreRecord,
    BackupRecord,
    BackupSchedule,
    LifecycleJob,
    Domain,
    Subscription,
]


class TenantPurgeService:
    """Hard-deletes archived tenants whose retention window has expired"""

    def __init__(
        self,
        session: Session,
        retention: TenantRetentionService,
        databases: TenantDatabaseManager,
        storage: LocalBackupStorage,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.retention = retention
        self.databases = databases
        self.storage = storage
        self.notifier = notifier or Notifier()
        self.bus = bus or event_bus
        self.clock = clock

    def _load(self, tenant: Union[Tenant, uuid.UUID]) -> Tenant:
        tenant_id = tenant.id if isinstance(tenant, Tenant) else tenant
        found = self.session.get(Tenant, tenant_id)
        if found is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation="purge")
        return found

    def _check_preconditions(self, tenant: Tenant) -> None:
        if not tenant.is_archived():
            raise TenantNotArchivedError(
                "Tenant must be archived before purging",
                tenant_id=tenant.id,
                operation="purge",
            )
        if not self.retention.can_purge(tenant):
            eligible_at = self.retention.get_retention_expires_at(tenant)
            raise RetentionNotExpiredError(
                f"Retention period not expired, eligible for purge at {eligible_at.isoformat()}",
                eligible_at=eligible_at,
                tenant_id=tenant.id,
                operation="purge",
            )

    def purge(self, tenant: Union[Tenant, uuid.UUID]) -> Dict[str, Any]:
        """Drop the tenant database, then delete all of its metadata. IRREVERSIBLE."""
        tenant = self._load(tenant)
        tenant_id = tenant.id
        self._check_preconditions(tenant)

        try:
            with tenant_lock(self.session, tenant_id, "purge", clock=self.clock):
                # Re-read under the lock; a restore may have raced us
                self.session.refresh(tenant)
                self._check_preconditions(tenant)
                database = self._drop_database(tenant)
                self._delete_artifacts(tenant)
                self._delete_metadata(tenant)
        except ResourcePostconditionError as e:
            self._block_automatic_purge(tenant_id, e)
            raise

        logger.info("Tenant purged", tenant_id=str(tenant_id), database=database)
        self.bus.publish(TenantPurged(tenant_id, database))
        return {"success": True, "tenant_id": str(tenant_id), "database": database}

    def _drop_database(self, tenant: Tenant) -> str:
        name = self.databases.database_name(tenant)
        try:
            self.databases.drop(name)
        except LifecycleError as e:
            raise ResourcePostconditionError(
                f"Failed to drop tenant database {name}: {e.message}",
                tenant_id=tenant.id, operation="purge", cause=e,
            )
        if self.databases.exists(name):
            raise ResourcePostconditionError(
                f"Tenant database {name} still exists after drop",
                tenant_id=tenant.id,
                operation="purge",
                context={"database": name},
            )
        return name

    def _delete_artifacts(self, tenant: Tenant) -> None:
        try:
            self.storage.delete_tenant(tenant.id)
        except OSError as e:
            raise ResourcePostconditionError(
                f"Failed to delete backup artifacts: {e}",
                tenant_id=tenant.id, operation="purge", cause=e,
            )

    def _delete_metadata(self, tenant: Tenant) -> None:
        for model in DEPENDENT_MODELS:
            self.session.exec(delete(model).where(model.tenant_id == tenant.id))
        self.session.exec(delete(Tenant).where(Tenant.id == tenant.id))
        self.session.commit()

    def _block_automatic_purge(self, tenant_id: uuid.UUID, error: ResourcePostconditionError) -> None:
        """Postcondition failures need an operator; the sweep must not retry them"""
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            return
        tenant.merge_data({
            "purge_blocked": True,
            "purge_error": error.message,
            "purge_failed_at": self.clock().isoformat(),
        })
        tenant.touch(self.clock())
        self.session.add(tenant)
        self.session.commit()
        logger.error("Tenant purge blocked, operator action required", tenant_id=str(tenant_id), error=error.message)

    def batch_purge(self, tenants: Iterable[Union[Tenant, uuid.UUID]]) -> Dict[str, Any]:
        """Purge each tenant independently; failures are collected, not raised"""
        result: Dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        for tenant in tenants:
            tenant_id = tenant.id if isinstance(tenant, Tenant) else tenant
            try:
                self.purge(tenant_id)
                result["success"] += 1
            except LifecycleError as e:
                self.session.rollback()
                result["failed"] += 1
                result["errors"].append({"tenant_id": str(tenant_id), **e.to_dict()})
                logger.error("Tenant purge failed", tenant_id=str(tenant_id), error=e.message, error_type=e.error_type)
            except Exception as e:
                self.session.rollback()
                result["failed"] += 1
                result["errors"].append({
                    "tenant_id": str(tenant_id),
                    "error": str(e),
                    "error_type": e.__class__.__name__,
                })
                logger.error("Unexpected error purging tenant", tenant_id=str(tenant_id), error=str(e), exc_info=True)
        return result

    def purge_expired(self) -> Dict[str, Any]:
        """Sweep: purge every eligible tenant not blocked by an earlier postcondition failure"""
        eligible = self.retention.tenants_eligible_for_purge(self.session)
        blocked = [t for t in eligible if (t.data or {}).get("purge_blocked")]
        to_purge = [t.id for t in eligible if not (t.data or {}).get("purge_blocked")]
        for tenant in blocked:
            logger.warning("Skipping blocked tenant in purge sweep", tenant_id=str(tenant.id))

        result = self.batch_purge(to_purge)
        result["skipped"] = len(blocked)
        logger.info("Purge sweep complete", **{k: v for k, v in result.items() if k != "errors"})
        return result

    def send_purge_notices(self) -> int:
        """Warn owners of archived tenants that are about to be purged"""
        tenants = self.retention.tenants_nearing_purge(self.session)
        for tenant in tenants:
            expires_at = self.retention.get_retention_expires_at(tenant)
            self.notifier.notify_users(tenant.id, "tenant_purge_scheduled", {
                "tenant_name": tenant.name,
                "purge_at": expires_at.isoformat(),
                "days_until_purge": self.retention.get_days_until_purge(tenant),
            })
        return len(tenants)
