"""
Test configuration for pytest
"""

import pytest
import os
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session
from typing import Generator

# Test environment variables
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["TASK_EXECUTION"] = "inline"
os.environ["CENTRAL_DOMAIN"] = "platform.test"

from cryptography.fernet import Fernet  # noqa: E402

import tenant_lifecycle.models  # noqa: E402,F401
from tenant_lifecycle.core.events import EventBus  # noqa: E402
from tenant_lifecycle.services.factory import build_services  # noqa: E402
from tenant_lifecycle.services.storage import LocalBackupStorage  # noqa: E402
from tenant_lifecycle.services.tenant_database import SQLiteDatabaseBackend, TenantDatabaseManager  # noqa: E402


# One shared in-memory database; StaticPool keeps it visible to TestClient threads
test_engine = create_engine(
    "sqlite://",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class FakeClock:
    """Settable clock injected into services"""

    def __init__(self, now: datetime = datetime(2026, 1, 15, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDnsLookup:
    """In-memory TXT/CNAME records"""

    def __init__(self):
        self.txt_records = {}
        self.cname_records = {}

    def txt(self, name):
        return list(self.txt_records.get(name, []))

    def cname(self, name):
        return list(self.cname_records.get(name, []))


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a clean database session for each test"""
    # Create all tables
    SQLModel.metadata.create_all(test_engine)

    # Create session
    with Session(test_engine) as session:
        yield session

    # Cleanup
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    """Every event published on the test bus"""
    recorded = []
    bus.subscribe("*", recorded.append)
    return recorded


@pytest.fixture
def notifications(events):
    """Event types of user notifications, in publish order"""
    class _View:
        def types(self):
            return [e.event_type for e in events if e.__class__.__name__ == "TenantNotification"]
    return _View()


@pytest.fixture
def dns_lookup():
    return FakeDnsLookup()


@pytest.fixture
def databases(tmp_path):
    return TenantDatabaseManager(SQLiteDatabaseBackend(str(tmp_path / "databases")), prefix="tenant_")


@pytest.fixture
def storage(tmp_path):
    return LocalBackupStorage(str(tmp_path / "backups"))


@pytest.fixture
def services(db, databases, storage, bus, clock, dns_lookup, tmp_path):
    """All lifecycle services, executing queued work in-process"""
    return build_services(
        db,
        databases=databases,
        storage=storage,
        bus=bus,
        clock=clock,
        inline=True,
        files_root=str(tmp_path / "files"),
        master_key=Fernet.generate_key().decode("utf-8"),
        dns_lookup=dns_lookup,
    )


def registration_payload(subdomain="acme", email=None, **details):
    return {
        "account": {"type": "company"},
        "details": {
            "name": details.pop("name", "Acme Inc"),
            "email": email or f"owner@{subdomain}.example.com",
            "subdomain": subdomain,
            **details,
        },
        "plan": {"billing_cycle": "monthly", "modules": ["Inventory", "Reports"]},
        "admin": {"name": "Ada Admin", "email": f"admin@{subdomain}.example.com"},
    }


@pytest.fixture
def make_payload():
    return registration_payload


@pytest.fixture
def register(services):
    """Create a pending tenant"""
    def _register(subdomain="acme", **kwargs):
        return services.provisioner.create_from_registration(registration_payload(subdomain, **kwargs))
    return _register


@pytest.fixture
def active_tenant(services, register, events):
    """A fully provisioned tenant"""
    tenant = register()
    services.provisioner.dispatch_provisioning(tenant)
    services.session.refresh(tenant)
    return tenant
