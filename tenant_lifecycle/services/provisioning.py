"""
Async tenant provisioning (runs on the worker)

Steps: create database -> migrate -> seed -> verify -> activate. A database
created by a failed attempt is dropped again so the next attempt starts
clean.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import uuid

from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.errors import (
    NotFoundError, PreconditionError, ResourcePostconditionError,
    TransientInfrastructureError, ValidationError
)
from tenant_lifecycle.core.events import EventBus, TenantProvisioned, TenantProvisioningFailed, event_bus
from tenant_lifecycle.core.locks import tenant_lock
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.domain import Domain
from tenant_lifecycle.models.tenant import ProvisioningStep, Tenant, TenantStatus
from tenant_lifecycle.services.tenant_database import TenantDatabaseManager

logger = structlog.get_logger(__name__)

PROVISIONABLE_STATUSES = (TenantStatus.PENDING, TenantStatus.PROVISIONING, TenantStatus.FAILED)


class TenantProvisioningRunner:
    """Brings a pending tenant to active"""

    def __init__(
        self,
        session: Session,
        databases: TenantDatabaseManager,
        notifier: Optional[Notifier] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.databases = databases
        self.notifier = notifier or Notifier()
        self.bus = bus or event_bus
        self.clock = clock

    def _preflight(self, tenant: Tenant) -> None:
        if not tenant.subdomain:
            raise ValidationError("Tenant has no subdomain", tenant_id=tenant.id, operation="provision")
        domain = self.session.exec(select(Domain).where(Domain.tenant_id == tenant.id)).first()
        if domain is None:
            raise ValidationError("Tenant has no domain", tenant_id=tenant.id, operation="provision")

    def _step(self, tenant: Tenant, step: ProvisioningStep) -> None:
        tenant.update_provisioning_step(step)
        self.session.add(tenant)
        self.session.commit()
        logger.info("Provisioning step", tenant_id=str(tenant.id), step=step.value)

    def run(self, tenant_id: uuid.UUID, final_attempt: bool = True) -> Dict[str, Any]:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation="provision")
        if tenant.is_active():
            logger.info("Tenant already active, nothing to provision", tenant_id=str(tenant_id))
            return {"status": TenantStatus.ACTIVE.value, "skipped": True}
        if tenant.is_archived():
            raise PreconditionError("Cannot provision an archived tenant", tenant_id=tenant_id, operation="provision")

        with tenant_lock(self.session, tenant_id, "provision", clock=self.clock):
            self.session.refresh(tenant)
            self._preflight(tenant)
            if tenant.status not in PROVISIONABLE_STATUSES:
                raise PreconditionError(
                    f"Cannot provision tenant in {tenant.status.value} status",
                    tenant_id=tenant_id, operation="provision",
                )
            name = self.databases.database_name(tenant)
            created = False
            try:
                tenant.start_provisioning(ProvisioningStep.CREATING_DB)
                self.session.add(tenant)
                self.session.commit()

                created = self.databases.create(name)

                self._step(tenant, ProvisioningStep.MIGRATING)
                self.databases.migrate(name)

                self._step(tenant, ProvisioningStep.SEEDING)
                self.databases.seed(name, tenant.modules or [], tenant.admin_data)

                self._step(tenant, ProvisioningStep.VERIFYING)
                problems = self.databases.verify(name)
                if problems:
                    raise ResourcePostconditionError(
                        "Tenant database verification failed: " + "; ".join(problems),
                        tenant_id=tenant_id,
                        operation="provision",
                        context={"database": name, "problems": problems},
                    )

                tenant.activate()
                self.session.add(tenant)
                self.session.commit()
            except Exception as e:
                self._handle_failure(tenant_id, name, created, e, final_attempt)
                raise

        logger.info("Tenant provisioned", tenant_id=str(tenant_id), database=name)
        self.notifier.notify_users(tenant_id, "tenant_provisioned", {"database": name, "subdomain": tenant.subdomain})
        self.bus.publish(TenantProvisioned(tenant_id, name))
        return {"status": TenantStatus.ACTIVE.value, "database": name, "skipped": False}

    def _handle_failure(
        self,
        tenant_id: uuid.UUID,
        database: str,
        created: bool,
        error: Exception,
        final_attempt: bool
    ) -> None:
        self.session.rollback()
        if created:
            try:
                self.databases.drop(database)
                logger.info("Rolled back tenant database", tenant_id=str(tenant_id), database=database)
            except Exception as drop_error:
                logger.error(
                    "Failed to roll back tenant database",
                    tenant_id=str(tenant_id), database=database, error=str(drop_error), exc_info=True,
                )

        tenant = self.session.get(Tenant, tenant_id)
        step = tenant.provisioning_step

        if isinstance(error, TransientInfrastructureError) and not final_attempt:
            tenant.status = TenantStatus.PENDING
            tenant.merge_data({"provisioning_last_error": str(error)})
            tenant.touch(self.clock())
            self.session.add(tenant)
            self.session.commit()
            logger.warning("Provisioning will be retried", tenant_id=str(tenant_id), step=step, error=str(error))
            return

        tenant.mark_provisioning_failed(str(error))
        self.session.add(tenant)
        self.session.commit()
        logger.error("Tenant provisioning failed", tenant_id=str(tenant_id), step=step, error=str(error))
        self.notifier.notify_users(tenant_id, "tenant_provisioning_failed", {"step": step, "error": str(error)})
        self.bus.publish(TenantProvisioningFailed(tenant_id, step, str(error)))
