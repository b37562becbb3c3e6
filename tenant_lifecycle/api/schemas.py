"""
API schemas for tenant registration, backups, maintenance and domains
"""

from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import uuid

from tenant_lifecycle.models.backup import BackupType
from tenant_lifecycle.models.backup_schedule import BackupFrequency
from tenant_lifecycle.models.domain import DomainStatus, SslStatus
from tenant_lifecycle.models.maintenance import MaintenanceType
from tenant_lifecycle.models.tenant import TenantStatus, TenantType

# ============================================================================
# Tenant Schemas
# ============================================================================

class TenantRegistration(SQLModel):
    account: Dict[str, Any] = Field(default_factory=dict)
    details: Dict[str, Any]
    plan: Dict[str, Any] = Field(default_factory=dict)
    trial: Optional[Union[bool, Dict[str, Any]]] = None
    admin: Optional[Dict[str, Any]] = None
    provision: bool = True


class TenantRead(SQLModel):
    id: uuid.UUID
    name: str
    type: TenantType
    subdomain: str
    email: str
    phone: Optional[str] = None
    plan_id: Optional[uuid.UUID] = None
    subscription_plan: Optional[str] = None
    modules: List[str]
    trial_ends_at: Optional[datetime] = None
    status: TenantStatus
    provisioning_step: Optional[str] = None
    maintenance_mode: bool
    data: Dict[str, Any]
    created_at: datetime
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class TenantArchiveRequest(SQLModel):
    reason: Optional[str] = None


class PurgeBatchRequest(SQLModel):
    tenant_ids: List[uuid.UUID]


# ============================================================================
# Backup Schemas
# ============================================================================

class BackupCreate(SQLModel):
    type: BackupType = BackupType.FULL
    include_database: Optional[bool] = None
    include_files: Optional[bool] = None
    compression: Optional[str] = None
    encryption: bool = False
    retention_days: Optional[int] = None
    reason: Optional[str] = None


class BackupRestoreRequest(SQLModel):
    restore_database: Optional[bool] = None
    restore_files: Optional[bool] = None
    create_backup_before: bool = True


class BackupScheduleUpdate(SQLModel):
    enabled: bool = True
    frequency: BackupFrequency = BackupFrequency.DAILY
    time: str = "02:00"
    day_of_week: int = 0
    day_of_month: int = 1
    type: BackupType = BackupType.FULL
    retention_days: Optional[int] = None
    max_backups: int = 10
    notify_on_success: bool = False
    notify_on_failure: bool = True
    notification_emails: List[str] = Field(default_factory=list)


# ============================================================================
# Maintenance Schemas
# ============================================================================

class MaintenanceOptions(SQLModel):
    message: Optional[str] = None
    type: MaintenanceType = MaintenanceType.PLANNED
    bypass_ips: List[str] = Field(default_factory=list)
    bypass_users: List[str] = Field(default_factory=list)
    allowed_routes: List[str] = Field(default_factory=list)
    notify_users: bool = True
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Stored as the window metadata")


class MaintenanceEnable(MaintenanceOptions):
    estimated_duration: Optional[int] = Field(default=None, description="Minutes")


class MaintenanceSchedule(MaintenanceOptions):
    start_time: datetime
    duration_minutes: int


class MaintenanceExtend(SQLModel):
    additional_minutes: int


class MaintenanceMessage(SQLModel):
    message: str


class MaintenanceCancel(SQLModel):
    reason: Optional[str] = None


class BypassCheck(SQLModel):
    bypass_token: Optional[str] = None
    ip: Optional[str] = None
    user_id: Optional[str] = None
    path: Optional[str] = None


# ============================================================================
# Domain Schemas
# ============================================================================

class DomainCreate(SQLModel):
    domain: str


class DomainRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    domain: str
    is_primary: bool
    is_custom: bool
    status: DomainStatus
    dns_verification_code: Optional[str] = None
    verification_errors: List[str]
    verified_at: Optional[datetime] = None
    ssl_status: SslStatus
    created_at: datetime

    class Config:
        from_attributes = True
