"""
Backup schedule - one per tenant, overwritten on reconfiguration
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar
import uuid

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.models.versioning import versioned_mapper_args
from tenant_lifecycle.models.backup import BackupType


class BackupFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BackupSchedule(SQLModel, table=True):
    """Cron-like backup configuration for a tenant"""

    __tablename__ = "backup_schedules"
    __mapper_args__ = versioned_mapper_args

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", unique=True, index=True)
    enabled: bool = Field(default=True)

    frequency: BackupFrequency = Field(default=BackupFrequency.DAILY)
    time: str = Field(default="02:00", description="HH:MM, UTC")
    day_of_week: int = Field(default=0, description="0 = Monday")
    day_of_month: int = Field(default=1)

    type: BackupType = Field(default=BackupType.FULL)
    retention_days: int = Field(default=30)
    max_backups: int = Field(default=10)

    notify_on_success: bool = Field(default=False)
    notify_on_failure: bool = Field(default=True)
    notification_emails: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    version: int = Field(default=1)

    def _time_parts(self):
        hour, minute = self.time.split(":")
        return int(hour), int(minute)

    def compute_next_run(self, after: datetime) -> datetime:
        """First run time strictly after `after`"""
        hour, minute = self._time_parts()
        candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)

        if self.frequency == BackupFrequency.DAILY:
            if candidate <= after:
                candidate += timedelta(days=1)
            return candidate

        if self.frequency == BackupFrequency.WEEKLY:
            candidate += timedelta(days=(self.day_of_week - candidate.weekday()) % 7)
            if candidate <= after:
                candidate += timedelta(days=7)
            return candidate

        # Monthly: clamp day to the month's length
        year, month = candidate.year, candidate.month
        for _ in range(2):
            day = min(self.day_of_month, calendar.monthrange(year, month)[1])
            candidate = candidate.replace(year=year, month=month, day=day)
            if candidate > after:
                return candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return candidate

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run_at is not None and self.next_run_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
