"""
Soft delete and restore of tenants
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import uuid

from sqlmodel import Session
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.errors import NotFoundError, PreconditionError
from tenant_lifecycle.core.events import EventBus, TenantArchived, TenantRestored, event_bus
from tenant_lifecycle.core.locks import tenant_lock
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.tenant import Tenant
from tenant_lifecycle.services.retention import TenantRetentionService

logger = structlog.get_logger(__name__)


class TenantArchiver:
    """Moves tenants into and out of the retention window"""

    def __init__(
        self,
        session: Session,
        retention: TenantRetentionService,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.retention = retention
        self.notifier = notifier or Notifier()
        self.bus = bus or event_bus
        self.clock = clock

    def _get(self, tenant_id: uuid.UUID, operation: str) -> Tenant:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation=operation)
        return tenant

    def archive(
        self,
        tenant_id: uuid.UUID,
        reason: Optional[str] = None,
        archived_by: Optional[str] = None
    ) -> Dict[str, Any]:
        tenant = self._get(tenant_id, "archive")
        if tenant.is_archived():
            raise PreconditionError("Tenant is already archived", tenant_id=tenant_id, operation="archive")

        with tenant_lock(self.session, tenant_id, "archive", clock=self.clock):
            self.session.refresh(tenant)
            tenant.archive(self.clock(), reason, archived_by)
            self.session.add(tenant)
            self.session.commit()
            self.session.refresh(tenant)

        expires_at = self.retention.get_retention_expires_at(tenant)
        logger.info("Tenant archived", tenant_id=str(tenant_id), reason=reason, retention_expires_at=expires_at.isoformat())
        self.notifier.notify_users(tenant_id, "tenant_archived", {
            "reason": reason,
            "retention_expires_at": expires_at.isoformat(),
        })
        self.bus.publish(TenantArchived(tenant_id, expires_at))
        return {
            "tenant_id": str(tenant_id),
            "retention_expires_at": expires_at.isoformat(),
            "retention_days": self.retention.retention_days,
        }

    def restore(self, tenant_id: uuid.UUID, restored_by: Optional[str] = None) -> Dict[str, Any]:
        tenant = self._get(tenant_id, "restore")
        if not tenant.is_archived():
            raise PreconditionError("Tenant is not archived", tenant_id=tenant_id, operation="restore")
        if not self.retention.can_restore(tenant):
            raise PreconditionError(
                "Retention period expired, tenant can no longer be restored",
                tenant_id=tenant_id,
                operation="restore",
                context={"retention_expires_at": self.retention.get_retention_expires_at(tenant).isoformat()},
            )

        with tenant_lock(self.session, tenant_id, "restore_tenant", clock=self.clock):
            self.session.refresh(tenant)
            tenant.restore(self.clock(), restored_by)
            self.session.add(tenant)
            self.session.commit()

        logger.info("Tenant restored", tenant_id=str(tenant_id), restored_by=restored_by)
        self.notifier.notify_users(tenant_id, "tenant_restored", {"restored_by": restored_by})
        self.bus.publish(TenantRestored(tenant_id))
        return {"tenant_id": str(tenant_id), "status": tenant.status.value}
