"""
LifecycleJob - idempotency ledger for queued long-running work
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow


class JobOperation(str, Enum):
    PROVISION_TENANT = "provision_tenant"
    EXECUTE_BACKUP = "execute_backup"
    EXECUTE_RESTORE = "execute_restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def make_idempotency_key(operation: str, tenant_id: uuid.UUID, subject_id: Optional[uuid.UUID] = None) -> str:
    return f"{operation}:{tenant_id}:{subject_id or tenant_id}"


class LifecycleJob(SQLModel, table=True):
    """One row per (operation, tenant, subject); redelivery reuses the row"""

    __tablename__ = "lifecycle_jobs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(index=True)
    operation: JobOperation = Field(index=True)
    subject_id: Optional[uuid.UUID] = None
    idempotency_key: str = Field(unique=True, index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)

    attempts: int = Field(default=0)
    max_attempts: int = Field(default=4)
    last_error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_finished(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED)

    def transition_to_running(self, now: datetime) -> None:
        if self.status == JobStatus.SUCCEEDED:
            raise ValueError("Job already succeeded")
        self.status = JobStatus.RUNNING
        self.attempts += 1
        self.started_at = now
        self.updated_at = now

    def transition_to_succeeded(self, now: datetime) -> None:
        self.status = JobStatus.SUCCEEDED
        self.last_error = None
        self.finished_at = now
        self.updated_at = now

    def transition_to_retrying(self, error: str, now: datetime) -> None:
        """Back to pending, waiting for the next delivery"""
        self.status = JobStatus.PENDING
        self.last_error = error
        self.updated_at = now

    def transition_to_failed(self, error: str, now: datetime) -> None:
        self.status = JobStatus.FAILED
        self.last_error = error
        self.finished_at = now
        self.updated_at = now
