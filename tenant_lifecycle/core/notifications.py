"""
Outbound notification seam
"""

from typing import Any, Dict, Optional
import uuid
import structlog

from tenant_lifecycle.core.events import EventBus, TenantNotification, event_bus

logger = structlog.get_logger(__name__)


class Notifier:
    """Fire-and-forget user notifications, published on the event bus"""

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or event_bus

    def notify_users(self, tenant_id: uuid.UUID, event_type: str, data: Dict[str, Any]) -> None:
        logger.info("Tenant notification", tenant_id=str(tenant_id), event_type=event_type)
        self.bus.publish(TenantNotification(tenant_id, event_type, data))
