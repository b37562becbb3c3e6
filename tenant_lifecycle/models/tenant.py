"""
Tenant model - central record for every customer organization
"""

from sqlmodel import Field, SQLModel, Relationship
from sqlalchemy import Column, JSON
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.models.versioning import versioned_mapper_args

if TYPE_CHECKING:
    from tenant_lifecycle.models.domain import Domain


class TenantType(str, Enum):
    """Kind of account that registered the tenant"""
    COMPANY = "company"
    INDIVIDUAL = "individual"


class TenantStatus(str, Enum):
    """Lifecycle status of a tenant"""
    PENDING = "pending"             # Registered, waiting for async provisioning
    PROVISIONING = "provisioning"   # Database being created/migrated/seeded
    ACTIVE = "active"               # Ready for use
    FAILED = "failed"               # Provisioning gave up
    SUSPENDED = "suspended"         # Blocked (billing, abuse)
    ARCHIVED = "archived"           # Soft-deleted, inside retention window


class ProvisioningStep(str, Enum):
    """Marker for the async provisioning step in progress"""
    CREATING_DB = "creating_db"
    MIGRATING = "migrating"
    SEEDING = "seeding"
    VERIFYING = "verifying"


class Tenant(SQLModel, table=True):
    """Tenant model for multi-tenant architecture"""

    __tablename__ = "tenants"
    __mapper_args__ = versioned_mapper_args

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(index=True)
    type: TenantType = Field(default=TenantType.COMPANY)
    subdomain: str = Field(unique=True, index=True, description="Unique tenant identifier for subdomain routing")
    email: str = Field(unique=True, index=True, description="Company contact email")
    phone: Optional[str] = None

    # Plan and billing
    plan_id: Optional[uuid.UUID] = Field(default=None, foreign_key="plans.id", nullable=True)
    subscription_plan: Optional[str] = Field(default=None, description="Billing cycle: monthly, yearly")
    modules: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None

    # Lifecycle
    status: TenantStatus = Field(default=TenantStatus.PENDING, index=True)
    provisioning_step: Optional[str] = None
    registration_step: Optional[str] = None
    admin_data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Transient admin bootstrap data, cleared after provisioning",
        sa_column=Column(JSON, nullable=True)
    )
    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary key-value metadata (owner, registration, archive info)",
        sa_column=Column(JSON, nullable=False)
    )
    maintenance_mode: bool = Field(default=False)

    # Company contact verification
    company_email_verification_code: Optional[str] = None
    company_email_verification_sent_at: Optional[datetime] = None
    company_email_verified_at: Optional[datetime] = None
    company_phone_verification_code: Optional[str] = None
    company_phone_verification_sent_at: Optional[datetime] = None
    company_phone_verified_at: Optional[datetime] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = Field(default=None, index=True, description="Soft-delete timestamp")

    # Optimistic concurrency control
    version: int = Field(default=1)

    domains: List["Domain"] = Relationship(back_populates="tenant")

    class Config:
        indexes = [
            {"name": "idx_tenant_subdomain", "columns": ["subdomain"]},
            {"name": "idx_tenant_status", "columns": ["status"]},
            {"name": "idx_tenant_deleted_at", "columns": ["deleted_at"]},
        ]

    def is_archived(self) -> bool:
        return self.deleted_at is not None

    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    def merge_data(self, values: Dict[str, Any]) -> None:
        """Merge into the metadata map (reassigned so the JSON column is flagged dirty)"""
        self.data = {**(self.data or {}), **values}

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()
        self.version += 1

    # State machine methods
    def start_provisioning(self, step: ProvisioningStep = ProvisioningStep.CREATING_DB) -> None:
        if self.status not in (TenantStatus.PENDING, TenantStatus.PROVISIONING, TenantStatus.FAILED):
            raise ValueError(f"Cannot start provisioning: tenant is {self.status.value}")
        self.status = TenantStatus.PROVISIONING
        self.provisioning_step = step.value
        self.touch()

    def update_provisioning_step(self, step: ProvisioningStep) -> None:
        self.provisioning_step = step.value
        self.touch()

    def activate(self) -> None:
        """Finish provisioning; bootstrap credentials must not persist"""
        self.status = TenantStatus.ACTIVE
        self.provisioning_step = None
        self.admin_data = None
        self.touch()

    def mark_provisioning_failed(self, reason: Optional[str] = None) -> None:
        if reason:
            self.merge_data({
                "provisioning_error": reason,
                "provisioning_failed_at": utcnow().isoformat(),
            })
        self.status = TenantStatus.FAILED
        self.touch()

    def archive(self, now: datetime, reason: Optional[str] = None, archived_by: Optional[str] = None) -> None:
        """Soft delete"""
        if self.is_archived():
            raise ValueError("Tenant is already archived")
        self.deleted_at = now
        self.status = TenantStatus.ARCHIVED
        self.merge_data({
            "archived_reason": reason,
            "archived_by": archived_by,
            "archived_at": now.isoformat(),
        })
        self.touch(now)

    def restore(self, now: datetime, restored_by: Optional[str] = None) -> None:
        if not self.is_archived():
            raise ValueError("Tenant is not archived")
        self.deleted_at = None
        self.status = TenantStatus.ACTIVE
        self.merge_data({
            "restored_at": now.isoformat(),
            "restored_by": restored_by,
        })
        self.touch(now)

    def retention_expires_at(self, retention_days: int) -> Optional[datetime]:
        if self.deleted_at is None:
            return None
        return self.deleted_at + timedelta(days=retention_days)
