"""
Retention policy for soft-deleted tenants

Pure functions of the tenant's `deleted_at` and the current time. Nothing
here writes to the database.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import math

from sqlmodel import Session, select

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.models.tenant import Tenant


class TenantRetentionService:
    """Answers "can this tenant still be restored / may it be purged"."""

    def __init__(self, retention_days: Optional[int] = None, clock: Callable[[], datetime] = utcnow):
        settings = get_settings()
        self.retention_days = retention_days if retention_days is not None else settings.RETENTION_DAYS
        self.clock = clock

    @property
    def retention_period(self) -> timedelta:
        return timedelta(days=self.retention_days)

    def get_retention_expires_at(self, tenant: Tenant) -> Optional[datetime]:
        if tenant.deleted_at is None:
            return None
        return tenant.deleted_at + self.retention_period

    def retention_expired(self, tenant: Tenant) -> bool:
        """True once the full retention window has passed (the boundary counts as expired)"""
        expires_at = self.get_retention_expires_at(tenant)
        return expires_at is not None and self.clock() >= expires_at

    def can_restore(self, tenant: Tenant) -> bool:
        return tenant.deleted_at is not None and not self.retention_expired(tenant)

    def can_purge(self, tenant: Tenant) -> bool:
        return tenant.deleted_at is not None and self.retention_expired(tenant)

    def get_days_until_purge(self, tenant: Tenant) -> Optional[int]:
        """Whole days left, rounded up; 0 once eligible"""
        expires_at = self.get_retention_expires_at(tenant)
        if expires_at is None:
            return None
        remaining = (expires_at - self.clock()).total_seconds()
        if remaining <= 0:
            return 0
        return math.ceil(remaining / 86400)

    def tenants_eligible_for_purge(self, session: Session) -> List[Tenant]:
        cutoff = self.clock() - self.retention_period
        return list(session.exec(
            select(Tenant)
            .where(Tenant.deleted_at != None)  # noqa: E711
            .where(Tenant.deleted_at <= cutoff)
            .order_by(Tenant.deleted_at)
        ).all())

    def tenants_nearing_purge(self, session: Session, notice_days: Optional[int] = None) -> List[Tenant]:
        """Soft-deleted tenants that become purgeable within the notice window"""
        if notice_days is None:
            notice_days = get_settings().PURGE_NOTICE_DAYS
        now = self.clock()
        eligible_cutoff = now - self.retention_period
        notice_cutoff = eligible_cutoff + timedelta(days=notice_days)
        return list(session.exec(
            select(Tenant)
            .where(Tenant.deleted_at != None)  # noqa: E711
            .where(Tenant.deleted_at > eligible_cutoff)
            .where(Tenant.deleted_at <= notice_cutoff)
            .order_by(Tenant.deleted_at)
        ).all())

    def summary(self, tenant: Tenant) -> dict:
        expires_at = self.get_retention_expires_at(tenant)
        return {
            "tenant_id": str(tenant.id),
            "deleted_at": tenant.deleted_at.isoformat() if tenant.deleted_at else None,
            "retention_days": self.retention_days,
            "retention_expires_at": expires_at.isoformat() if expires_at else None,
            "days_until_purge": self.get_days_until_purge(tenant),
            "can_restore": self.can_restore(tenant),
            "can_purge": self.can_purge(tenant),
        }
