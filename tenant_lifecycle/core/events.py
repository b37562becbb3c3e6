"""
Domain events system

Domain events represent important lifecycle transitions that can be published
and subscribed to by other parts of the platform (notification delivery,
audit log, billing).
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import uuid
import structlog

from tenant_lifecycle.core.clock import utcnow

logger = structlog.get_logger(__name__)


class DomainEvent:
    """Base class for domain events"""

    def __init__(self, event_id: uuid.UUID = None):
        self.event_id = event_id or uuid.uuid4()
        self.occurred_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary"""
        return {
            "event_id": str(self.event_id),
            "occurred_at": self.occurred_at.isoformat(),
            "event_type": self.__class__.__name__
        }


class TenantEvent(DomainEvent):
    """Event scoped to a single tenant"""

    def __init__(self, tenant_id: uuid.UUID, event_id: uuid.UUID = None):
        super().__init__(event_id)
        self.tenant_id = tenant_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["tenant_id"] = str(self.tenant_id)
        return data


class TenantRegistered(TenantEvent):
    """Event fired when a registration creates or resumes a pending tenant"""

    def __init__(self, tenant_id: uuid.UUID, subdomain: str, resumed: bool, event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.subdomain = subdomain
        self.resumed = resumed

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"subdomain": self.subdomain, "resumed": self.resumed})
        return data


class TenantProvisioned(TenantEvent):
    """Event fired when the tenant database is ready and the tenant is active"""

    def __init__(self, tenant_id: uuid.UUID, database: str, event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.database = database

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["database"] = self.database
        return data


class TenantProvisioningFailed(TenantEvent):
    """Event fired when async provisioning gives up"""

    def __init__(self, tenant_id: uuid.UUID, step: Optional[str], error: str, event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.step = step
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"step": self.step, "error": self.error})
        return data


class TenantArchived(TenantEvent):
    """Event fired when a tenant is soft-deleted"""

    def __init__(self, tenant_id: uuid.UUID, retention_expires_at: datetime, event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.retention_expires_at = retention_expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retention_expires_at"] = self.retention_expires_at.isoformat()
        return data


class TenantRestored(TenantEvent):
    """Event fired when an archived tenant is brought back"""


class TenantPurged(TenantEvent):
    """Event fired after a tenant and its database are irreversibly removed"""

    def __init__(self, tenant_id: uuid.UUID, database: str, event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.database = database

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["database"] = self.database
        return data


class BackupFinished(TenantEvent):
    """Event fired when a backup reaches a terminal status"""

    def __init__(
        self,
        tenant_id: uuid.UUID,
        backup_id: uuid.UUID,
        status: str,
        errors: List[str],
        event_id: uuid.UUID = None
    ):
        super().__init__(tenant_id, event_id)
        self.backup_id = backup_id
        self.status = status
        self.errors = errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "backup_id": str(self.backup_id),
            "status": self.status,
            "errors": self.errors
        })
        return data


class RestoreFinished(TenantEvent):
    """Event fired when a restore reaches a terminal status"""

    def __init__(
        self,
        tenant_id: uuid.UUID,
        restore_id: uuid.UUID,
        backup_id: uuid.UUID,
        status: str,
        error: Optional[str] = None,
        event_id: uuid.UUID = None
    ):
        super().__init__(tenant_id, event_id)
        self.restore_id = restore_id
        self.backup_id = backup_id
        self.status = status
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "restore_id": str(self.restore_id),
            "backup_id": str(self.backup_id),
            "status": self.status,
            "error": self.error
        })
        return data


class TenantNotification(TenantEvent):
    """User-facing notification request (email/SMS/webhook delivery is external)"""

    def __init__(self, tenant_id: uuid.UUID, event_type: str, data: Dict[str, Any], event_id: uuid.UUID = None):
        super().__init__(tenant_id, event_id)
        self.event_type = event_type
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"notification_type": self.event_type, "data": self.data})
        return data


class EventBus:
    """Simple in-memory event bus for publishing domain events"""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, handler: Callable):
        """Subscribe to a specific event type"""
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler to event type: {event_type}")

    def publish(self, event: DomainEvent):
        """Publish an event to all subscribers.

        Delivery is fire-and-forget: a failing handler is logged and the
        remaining handlers still run.
        """
        event_type = event.__class__.__name__
        handlers = self._subscribers.get(event_type, []) + self._subscribers.get("*", [])

        if not handlers:
            logger.debug(f"No subscribers for event type: {event_type}")
            return

        logger.info(f"Publishing event {event_type}: {event.event_id}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {event_type}: {e}", exc_info=True)


# Global event bus instance
event_bus = EventBus()
