"""
Domain model - maps a hostname to a tenant
"""

from sqlmodel import Field, SQLModel, Relationship
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow

if TYPE_CHECKING:
    from tenant_lifecycle.models.tenant import Tenant

VERIFICATION_RECORD_PREFIX = "_tenant-verification"


class DomainStatus(str, Enum):
    """DNS ownership verification status"""
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class SslStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


class Domain(SQLModel, table=True):
    """Hostname routed to a tenant"""

    __tablename__ = "domains"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", index=True)
    domain: str = Field(unique=True, index=True)
    is_primary: bool = Field(default=False)
    is_custom: bool = Field(default=False, description="Customer-owned domain (needs DNS verification)")

    status: DomainStatus = Field(default=DomainStatus.VERIFIED, index=True)
    dns_verification_code: Optional[str] = None
    verification_errors: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    verified_at: Optional[datetime] = None
    ssl_status: SslStatus = Field(default=SslStatus.PENDING)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    tenant: Optional["Tenant"] = Relationship(back_populates="domains")

    def is_verified(self) -> bool:
        return self.status == DomainStatus.VERIFIED

    def verification_txt_record_name(self) -> str:
        return f"{VERIFICATION_RECORD_PREFIX}.{self.domain}"

    def expected_txt_record_value(self) -> str:
        return f"tenant-verify={self.dns_verification_code}"

    def mark_verified(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.status = DomainStatus.VERIFIED
        self.verified_at = now
        self.verification_errors = []
        self.updated_at = now

    def record_verification_errors(self, errors: List[str], now: Optional[datetime] = None) -> None:
        """Failed check; the domain stays pending so the sweep retries it"""
        self.verification_errors = list(errors)
        self.updated_at = now or utcnow()

    def make_primary(self, now: Optional[datetime] = None) -> None:
        self.is_primary = True
        self.updated_at = now or utcnow()
