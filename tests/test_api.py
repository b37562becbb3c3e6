"""
Integration tests for the admin HTTP API
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from tenant_lifecycle.core.dependencies import get_services
from tenant_lifecycle.main import app

API = "/api/v1/tenants"


@pytest.fixture
def client(services):
    """Test client bound to the test services"""
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def tenant_id(client, make_payload):
    response = client.post(f"{API}/register", json=make_payload())
    return response.json()["tenant"]["id"]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestTenantEndpoints:
    """Test registration, archive, restore and purge over HTTP"""

    def test_register_provisions_tenant(self, client, make_payload):
        response = client.post(f"{API}/register", json=make_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["tenant"]["status"] == "active"
        assert body["tenant"]["subdomain"] == "acme"
        assert body["provisioning"]["dispatched"] is True

    def test_register_without_provisioning(self, client, make_payload):
        payload = {**make_payload(), "provision": False}

        response = client.post(f"{API}/register", json=payload)

        assert response.json()["tenant"]["status"] == "pending"
        assert response.json()["provisioning"] is None

    def test_invalid_registration(self, client, make_payload):
        response = client.post(f"{API}/register", json=make_payload("www"))

        assert response.status_code == 422
        assert response.json()["error_type"] == "validation_error"

    def test_get_tenant(self, client, tenant_id):
        response = client.get(f"{API}/{tenant_id}")

        assert response.status_code == 200
        assert response.json()["id"] == tenant_id

    def test_unknown_tenant(self, client):
        response = client.get(f"{API}/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404

    def test_archive_and_restore(self, client, tenant_id):
        archived = client.post(f"{API}/{tenant_id}/archive", json={"reason": "closing"},
                               headers={"X-Actor": "ops@example.com"})
        retention = client.get(f"{API}/{tenant_id}/retention")
        restored = client.post(f"{API}/{tenant_id}/restore")

        assert archived.status_code == 200
        assert retention.json()["days_until_purge"] == 30
        assert restored.json()["status"] == "active"

    def test_purge_before_retention_conflicts(self, client, tenant_id):
        client.post(f"{API}/{tenant_id}/archive", json={})

        response = client.delete(f"{API}/{tenant_id}")

        assert response.status_code == 409
        assert response.json()["error_type"] == "retention_not_expired"
        assert "eligible_at" in response.json()

    def test_purge_after_retention(self, client, tenant_id, clock):
        client.post(f"{API}/{tenant_id}/archive", json={})
        clock.advance(days=30)

        response = client.delete(f"{API}/{tenant_id}")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get(f"{API}/{tenant_id}").status_code == 404


class TestBackupEndpoints:
    """Test backup routes"""

    def test_create_and_list(self, client, tenant_id):
        created = client.post(f"{API}/{tenant_id}/backups", json={"type": "database"})
        listed = client.get(f"{API}/{tenant_id}/backups", params={"status": "completed"})

        assert created.status_code == 201
        assert created.json()["status"] == "completed"
        assert listed.json()["total"] == 1

    def test_restore_accepted(self, client, tenant_id):
        backup_id = client.post(f"{API}/{tenant_id}/backups", json={"type": "database"}).json()["backup_id"]

        response = client.post(f"{API}/{tenant_id}/backups/{backup_id}/restore",
                               json={"create_backup_before": False})

        assert response.status_code == 202
        assert response.json()["status"] == "completed"

    def test_schedule(self, client, tenant_id):
        response = client.put(f"{API}/{tenant_id}/backups/schedule", json={"frequency": "daily", "time": "03:30"})

        assert response.status_code == 200
        assert response.json()["schedule"]["next_run_at"] == "2026-01-16T03:30:00"
        assert client.get(f"{API}/{tenant_id}/backups/schedule").json()["schedule"]["time"] == "03:30"

    def test_invalid_schedule(self, client, tenant_id):
        response = client.put(f"{API}/{tenant_id}/backups/schedule", json={"time": "99:99"})

        assert response.status_code == 422


class TestMaintenanceEndpoints:
    """Test maintenance routes"""

    def test_enable_twice_conflicts(self, client, tenant_id):
        first = client.post(f"{API}/{tenant_id}/maintenance/enable", json={"message": "Upgrading"})
        second = client.post(f"{API}/{tenant_id}/maintenance/enable", json={})

        assert first.status_code == 200
        assert first.json()["bypass_token"]
        assert second.status_code == 409

    def test_schedule_in_past_conflicts(self, client, tenant_id, clock):
        start = (clock() - timedelta(hours=1)).isoformat()

        response = client.post(f"{API}/{tenant_id}/maintenance/schedule",
                               json={"start_time": start, "duration_minutes": 30})

        assert response.status_code == 409
        assert response.json()["error"] == "Start time cannot be in the past"

    def test_schedule_created(self, client, tenant_id, clock):
        start = (clock() + timedelta(hours=1)).isoformat()

        response = client.post(f"{API}/{tenant_id}/maintenance/schedule",
                               json={"start_time": start, "duration_minutes": 30, "attributes": {"ticket": "OPS-1"}})

        assert response.status_code == 201
        assert response.json()["maintenance"]["metadata"] == {"ticket": "OPS-1"}

    def test_bypass_check(self, client, tenant_id):
        token = client.post(f"{API}/{tenant_id}/maintenance/enable", json={}).json()["bypass_token"]

        allowed = client.post(f"{API}/{tenant_id}/maintenance/bypass-check", json={"bypass_token": token})
        blocked = client.post(f"{API}/{tenant_id}/maintenance/bypass-check", json={"ip": "203.0.113.9"})

        assert allowed.json() == {"in_maintenance": True, "can_bypass": True}
        assert blocked.json() == {"in_maintenance": True, "can_bypass": False}


class TestDomainEndpoints:
    """Test custom domain routes"""

    def test_add_and_verify(self, client, tenant_id, dns_lookup):
        added = client.post(f"{API}/{tenant_id}/domains", json={"domain": "shop.example.com"})
        domain_id = added.json()["id"]
        failed = client.post(f"{API}/{tenant_id}/domains/{domain_id}/verify")
        dns_lookup.cname_records["shop.example.com"] = ["acme.platform.test"]
        verified = client.post(f"{API}/{tenant_id}/domains/{domain_id}/verify")

        assert added.status_code == 201
        assert failed.status_code == 200
        assert failed.json()["success"] is False
        assert verified.json()["success"] is True

    def test_invalid_domain(self, client, tenant_id):
        response = client.post(f"{API}/{tenant_id}/domains", json={"domain": "admin.example.com"})

        assert response.status_code == 422

    def test_system_domain_cannot_be_removed(self, client, tenant_id):
        system_id = client.get(f"{API}/{tenant_id}/domains").json()[0]["id"]

        response = client.delete(f"{API}/{tenant_id}/domains/{system_id}")

        assert response.status_code == 409
