"""
Backup and restore records
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.models.versioning import versioned_mapper_args


class BackupType(str, Enum):
    FULL = "full"
    DATABASE = "database"
    FILES = "files"
    INCREMENTAL = "incremental"


class BackupStatus(str, Enum):
    """Backup state machine: pending -> in_progress -> completed | failed"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"  # Past expires_at, artifacts being removed


class RestoreStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupRecord(SQLModel, table=True):
    """Tenant backup with its artifact list and manifest checksum"""

    __tablename__ = "backups"
    __mapper_args__ = versioned_mapper_args

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", index=True)
    type: BackupType = Field(default=BackupType.FULL, index=True)
    status: BackupStatus = Field(default=BackupStatus.PENDING, index=True)

    include_database: bool = Field(default=True)
    include_files: bool = Field(default=True)
    compression: str = Field(default="gzip")
    encryption: bool = Field(default=False)
    encryption_key_id: Optional[uuid.UUID] = Field(default=None, description="Reference into the backup key vault")

    retention_days: int = Field(default=30)
    expires_at: Optional[datetime] = Field(default=None, index=True)

    files: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    errors: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    total_size_bytes: int = Field(default=0)
    manifest_path: Optional[str] = None
    checksum: Optional[str] = None

    initiated_by: Optional[str] = None
    reason: Optional[str] = None
    schedule_id: Optional[uuid.UUID] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    version: int = Field(default=1)

    class Config:
        indexes = [
            {"name": "idx_backup_tenant_status", "columns": ["tenant_id", "status"]},
            {"name": "idx_backup_expires_at", "columns": ["expires_at"]},
        ]

    def can_start(self) -> bool:
        return self.status == BackupStatus.PENDING

    def is_restorable(self) -> bool:
        return self.status == BackupStatus.COMPLETED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def transition_to_in_progress(self, now: datetime) -> None:
        if not self.can_start():
            raise ValueError(f"Cannot start backup in {self.status.value} status")
        self.status = BackupStatus.IN_PROGRESS
        self.started_at = now
        self.version += 1

    def finish(self, now: datetime) -> None:
        """Terminal transition; any recorded step error fails the backup"""
        if self.status != BackupStatus.IN_PROGRESS:
            raise ValueError(f"Cannot finish backup in {self.status.value} status")
        self.status = BackupStatus.FAILED if self.errors else BackupStatus.COMPLETED
        self.completed_at = now
        if self.started_at:
            self.duration_seconds = (now - self.started_at).total_seconds()
        self.version += 1

    def transition_to_failed(self, error: str, now: datetime) -> None:
        self.errors = [*(self.errors or []), error]
        self.status = BackupStatus.FAILED
        self.completed_at = now
        self.version += 1

    def transition_to_expired(self) -> None:
        self.status = BackupStatus.EXPIRED
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RestoreRecord(SQLModel, table=True):
    """A restore run, tracked independently from the backup it applies"""

    __tablename__ = "restores"
    __mapper_args__ = versioned_mapper_args

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", index=True)
    backup_id: uuid.UUID = Field(index=True)
    status: RestoreStatus = Field(default=RestoreStatus.PENDING, index=True)

    restore_database: bool = Field(default=True)
    restore_files: bool = Field(default=True)
    create_backup_before: bool = Field(default=True)
    pre_restore_backup_id: Optional[uuid.UUID] = None

    initiated_by: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    version: int = Field(default=1)

    def transition_to_in_progress(self, now: datetime) -> None:
        if self.status != RestoreStatus.PENDING:
            raise ValueError(f"Cannot start restore in {self.status.value} status")
        self.status = RestoreStatus.IN_PROGRESS
        self.started_at = now
        self.version += 1

    def transition_to_completed(self, now: datetime) -> None:
        self.status = RestoreStatus.COMPLETED
        self.completed_at = now
        if self.started_at:
            self.duration_seconds = (now - self.started_at).total_seconds()
        self.version += 1

    def transition_to_failed(self, error: str, now: datetime) -> None:
        self.status = RestoreStatus.FAILED
        self.error = error
        self.completed_at = now
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
