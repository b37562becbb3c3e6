"""
Plan and Subscription models (billing records owned by a tenant)
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON
from datetime import datetime
from typing import List, Optional
from enum import Enum
import uuid

from tenant_lifecycle.core.clock import utcnow


class Plan(SQLModel, table=True):
    """Subscription plan offered at registration"""

    __tablename__ = "plans"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    slug: str = Field(unique=True, index=True)
    name: str
    modules: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(SQLModel, table=True):
    """Tenant subscription to a plan"""

    __tablename__ = "subscriptions"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", index=True)
    plan_id: Optional[uuid.UUID] = Field(default=None, foreign_key="plans.id", nullable=True)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    billing_cycle: Optional[str] = None
    starts_at: datetime = Field(default_factory=utcnow)
    ends_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
