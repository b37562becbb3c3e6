"""
Unit tests for the soft-delete retention policy
"""

import pytest
from datetime import timedelta

from tenant_lifecycle.models.tenant import Tenant, TenantStatus
from tenant_lifecycle.services.retention import TenantRetentionService


def make_tenant(name="acme", deleted_at=None):
    return Tenant(
        name=name,
        subdomain=name,
        email=f"{name}@example.com",
        status=TenantStatus.ARCHIVED if deleted_at else TenantStatus.ACTIVE,
        deleted_at=deleted_at,
    )


class TestRetentionWindow:
    """Test restore/purge decisions around the retention boundary"""

    @pytest.fixture
    def retention(self, clock):
        return TenantRetentionService(retention_days=30, clock=clock)

    def test_active_tenant_has_no_retention(self, retention):
        tenant = make_tenant()

        assert retention.get_retention_expires_at(tenant) is None
        assert retention.get_days_until_purge(tenant) is None
        assert retention.can_restore(tenant) is False
        assert retention.can_purge(tenant) is False

    def test_inside_window_can_restore_not_purge(self, retention, clock):
        tenant = make_tenant(deleted_at=clock() - timedelta(days=10))

        assert retention.can_restore(tenant) is True
        assert retention.can_purge(tenant) is False
        assert retention.get_days_until_purge(tenant) == 20
        assert retention.get_retention_expires_at(tenant) == clock() + timedelta(days=20)

    def test_boundary_counts_as_expired(self, retention, clock):
        """Exactly retention_days after deletion the tenant is purgeable"""
        tenant = make_tenant(deleted_at=clock() - timedelta(days=30))

        assert retention.retention_expired(tenant) is True
        assert retention.can_restore(tenant) is False
        assert retention.can_purge(tenant) is True
        assert retention.get_days_until_purge(tenant) == 0

    def test_restore_and_purge_are_exclusive(self, retention, clock):
        for days in (0, 1, 15, 29, 30, 31, 90):
            tenant = make_tenant(deleted_at=clock() - timedelta(days=days))
            assert retention.can_restore(tenant) != retention.can_purge(tenant)

    def test_partial_day_rounds_up(self, retention, clock):
        tenant = make_tenant(deleted_at=clock() - timedelta(days=29, hours=23))

        assert retention.get_days_until_purge(tenant) == 1

    def test_window_moves_with_clock(self, retention, clock):
        tenant = make_tenant(deleted_at=clock())
        assert retention.can_purge(tenant) is False

        clock.advance(days=30)

        assert retention.can_purge(tenant) is True

    def test_summary(self, retention, clock):
        tenant = make_tenant(deleted_at=clock() - timedelta(days=5))

        summary = retention.summary(tenant)

        assert summary["retention_days"] == 30
        assert summary["days_until_purge"] == 25
        assert summary["can_restore"] is True
        assert summary["can_purge"] is False


class TestRetentionQueries:
    """Test database sweeps over archived tenants"""

    def test_tenants_eligible_for_purge(self, db, clock):
        retention = TenantRetentionService(retention_days=30, clock=clock)
        expired = make_tenant("expired", deleted_at=clock() - timedelta(days=31))
        recent = make_tenant("recent", deleted_at=clock() - timedelta(days=3))
        live = make_tenant("live")
        db.add_all([expired, recent, live])
        db.commit()

        eligible = retention.tenants_eligible_for_purge(db)

        assert [t.subdomain for t in eligible] == ["expired"]

    def test_tenants_nearing_purge(self, db, clock):
        retention = TenantRetentionService(retention_days=30, clock=clock)
        soon = make_tenant("soon", deleted_at=clock() - timedelta(days=25))
        later = make_tenant("later", deleted_at=clock() - timedelta(days=2))
        gone = make_tenant("gone", deleted_at=clock() - timedelta(days=40))
        db.add_all([soon, later, gone])
        db.commit()

        nearing = retention.tenants_nearing_purge(db, notice_days=7)

        assert [t.subdomain for t in nearing] == ["soon"]
