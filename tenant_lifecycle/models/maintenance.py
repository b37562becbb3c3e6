"""
Maintenance window models
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.models.versioning import versioned_mapper_args


class MaintenanceStatus(str, Enum):
    """
    Window state machine:
    active -> completed
    scheduled -> active -> completed
    scheduled -> cancelled
    """
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MaintenanceType(str, Enum):
    PLANNED = "planned"
    EMERGENCY = "emergency"
    UPGRADE = "upgrade"
    MIGRATION = "migration"


DEFAULT_MAINTENANCE_MESSAGE = "We are currently performing scheduled maintenance. Please check back soon."


class MaintenanceWindow(SQLModel, table=True):
    """Scheduled or active maintenance for a tenant"""

    __tablename__ = "maintenance_windows"
    __mapper_args__ = versioned_mapper_args

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", index=True)
    status: MaintenanceStatus = Field(index=True)
    type: MaintenanceType = Field(default=MaintenanceType.PLANNED)
    message: str = Field(default=DEFAULT_MAINTENANCE_MESSAGE)

    # Bypass rules
    bypass_token: Optional[str] = None
    bypass_ips: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    bypass_users: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    allowed_routes: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Planned window
    starts_at: datetime = Field(index=True)
    ends_at: Optional[datetime] = Field(default=None, description="Estimated end")
    duration_minutes: Optional[int] = None
    notify_users: bool = Field(default=True)

    # Actual run
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[int] = None
    expires_at: Optional[datetime] = Field(default=None, index=True, description="Safety TTL for active windows")

    enabled_by: Optional[str] = None
    disabled_by: Optional[str] = None
    window_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON, nullable=False))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    version: int = Field(default=1)

    class Config:
        indexes = [
            {"name": "idx_maintenance_tenant_status", "columns": ["tenant_id", "status"]},
        ]

    def is_active(self) -> bool:
        return self.status == MaintenanceStatus.ACTIVE

    def has_elapsed(self, now: datetime) -> bool:
        return self.ends_at is not None and self.ends_at <= now

    def can_activate(self, now: datetime) -> bool:
        return self.status == MaintenanceStatus.SCHEDULED and self.starts_at <= now and not self.has_elapsed(now)

    def transition_to_active(self, now: datetime, ttl: timedelta, token: Optional[str] = None) -> None:
        if self.status != MaintenanceStatus.SCHEDULED:
            raise ValueError(f"Cannot activate window in {self.status.value} status")
        self.status = MaintenanceStatus.ACTIVE
        self.started_at = now
        self.expires_at = now + ttl
        if token and not self.bypass_token:
            self.bypass_token = token
        self.updated_at = now
        self.version += 1

    def transition_to_completed(self, now: datetime, disabled_by: Optional[str] = None) -> None:
        if self.status != MaintenanceStatus.ACTIVE:
            raise ValueError(f"Cannot complete window in {self.status.value} status")
        started = self.started_at or self.starts_at
        self.status = MaintenanceStatus.COMPLETED
        self.completed_at = now
        self.actual_duration_minutes = int((now - started).total_seconds() // 60)
        self.disabled_by = disabled_by
        self.updated_at = now
        self.version += 1

    def transition_to_cancelled(self, now: datetime, cancelled_by: Optional[str] = None, reason: Optional[str] = None) -> None:
        if self.status != MaintenanceStatus.SCHEDULED:
            raise ValueError(f"Cannot cancel window in {self.status.value} status")
        self.status = MaintenanceStatus.CANCELLED
        self.completed_at = now
        self.window_metadata = {
            **(self.window_metadata or {}),
            "cancelled_by": cancelled_by,
            "cancel_reason": reason,
        }
        self.updated_at = now
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"window_metadata"})
        data["metadata"] = self.window_metadata or {}
        return data


class MaintenanceNotification(SQLModel, table=True):
    """Ledger of pre-start reminders, one row per (window, offset)"""

    __tablename__ = "maintenance_notifications"
    __table_args__ = (
        UniqueConstraint("window_id", "offset_minutes", name="uq_maintenance_notification_offset"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    window_id: uuid.UUID = Field(foreign_key="maintenance_windows.id", index=True)
    tenant_id: uuid.UUID = Field(index=True)
    offset_minutes: int
    skipped: bool = Field(default=False)
    sent_at: datetime = Field(default_factory=utcnow)
