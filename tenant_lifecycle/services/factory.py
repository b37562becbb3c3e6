"""
Service wiring

Builds every lifecycle service on one session. The API, the Celery tasks
and the CLI scripts all go through `build_services()` so they share the
same wiring.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlmodel import Session

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.events import EventBus, event_bus
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.lifecycle_job import JobOperation
from tenant_lifecycle.services.archive import TenantArchiver
from tenant_lifecycle.services.backup import TenantBackupService
from tenant_lifecycle.services.dispatch import CeleryDispatcher, InlineDispatcher, TaskDispatcher
from tenant_lifecycle.services.domains import CustomDomainService
from tenant_lifecycle.services.jobs import JobRunner
from tenant_lifecycle.services.key_vault import BackupKeyVault
from tenant_lifecycle.services.maintenance import MaintenanceModeService
from tenant_lifecycle.services.provisioner import TenantProvisioner
from tenant_lifecycle.services.provisioning import TenantProvisioningRunner
from tenant_lifecycle.services.purge import TenantPurgeService
from tenant_lifecycle.services.reconciliation import LifecycleReconciler
from tenant_lifecycle.services.retention import TenantRetentionService
from tenant_lifecycle.services.storage import LocalBackupStorage
from tenant_lifecycle.services.tenant_database import TenantDatabaseManager


class LifecycleServices:
    """Container for the services bound to one session"""

    def __init__(
        self,
        session: Session,
        databases: TenantDatabaseManager,
        storage: LocalBackupStorage,
        dispatcher: TaskDispatcher,
        bus: EventBus,
        clock: Callable[[], datetime],
        files_root: Optional[str] = None,
        master_key: Optional[str] = None,
        dns_lookup=None
    ):
        self.session = session
        self.databases = databases
        self.storage = storage
        self.dispatcher = dispatcher
        self.bus = bus
        self.clock = clock
        self.notifier = Notifier(bus)

        self.retention = TenantRetentionService(clock=clock)
        self.provisioner = TenantProvisioner(session, dispatcher=dispatcher, bus=bus, clock=clock)
        self.provisioning = TenantProvisioningRunner(session, databases, self.notifier, bus, clock)
        self.archiver = TenantArchiver(session, self.retention, self.notifier, bus, clock)
        self.purge = TenantPurgeService(session, self.retention, databases, storage, self.notifier, bus, clock)
        self.key_vault = BackupKeyVault(session, master_key)
        self.backups = TenantBackupService(
            session, databases, storage, self.key_vault,
            dispatcher=dispatcher, notifier=self.notifier, bus=bus, clock=clock, files_root=files_root,
        )
        self.maintenance = MaintenanceModeService(session, self.notifier, clock)
        self.domains = CustomDomainService(session, dns_lookup, clock)
        self.reconciler = LifecycleReconciler(session, clock)

        self.runner = JobRunner(session, {
            JobOperation.PROVISION_TENANT: lambda tenant_id, subject_id, final: self.provisioning.run(tenant_id, final),
            JobOperation.EXECUTE_BACKUP: lambda tenant_id, subject_id, final: self.backups.execute_backup(subject_id, final),
            JobOperation.EXECUTE_RESTORE: lambda tenant_id, subject_id, final: self.backups.execute_restore(subject_id, final),
        }, clock)
        if isinstance(dispatcher, InlineDispatcher):
            dispatcher.bind(self.runner)


def build_services(
    session: Session,
    dispatcher: Optional[TaskDispatcher] = None,
    databases: Optional[TenantDatabaseManager] = None,
    storage: Optional[LocalBackupStorage] = None,
    bus: Optional[EventBus] = None,
    clock: Callable[[], datetime] = utcnow,
    inline: bool = False,
    **kwargs
) -> LifecycleServices:
    """Wire services; `inline=True` executes queued work in-process"""
    if dispatcher is None:
        dispatcher = InlineDispatcher(session) if inline else CeleryDispatcher(session)
    return LifecycleServices(
        session,
        databases or TenantDatabaseManager.from_settings(),
        storage or LocalBackupStorage(),
        dispatcher,
        bus or event_bus,
        clock,
        **kwargs,
    )
