from tenant_lifecycle.models.tenant import Tenant, TenantStatus, TenantType, ProvisioningStep
from tenant_lifecycle.models.plan import Plan, Subscription, SubscriptionStatus
from tenant_lifecycle.models.domain import Domain, DomainStatus, SslStatus
from tenant_lifecycle.models.backup import BackupRecord, BackupStatus, BackupType, RestoreRecord, RestoreStatus
from tenant_lifecycle.models.backup_schedule import BackupSchedule, BackupFrequency
from tenant_lifecycle.models.backup_key import BackupKey
from tenant_lifecycle.models.maintenance import (
    MaintenanceWindow, MaintenanceNotification, MaintenanceStatus, MaintenanceType
)
from tenant_lifecycle.models.tenant_lock import TenantLock
from tenant_lifecycle.models.lifecycle_job import LifecycleJob, JobOperation, JobStatus
