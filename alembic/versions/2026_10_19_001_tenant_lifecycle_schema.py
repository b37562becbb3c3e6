"""Tenant lifecycle schema

Revision ID: 001_tenant_lifecycle
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '001_tenant_lifecycle'
down_revision = None

UUID = postgresql.UUID(as_uuid=True)

# Enum columns store member names, matching the SQLModel mapping
tenant_type = sa.Enum('COMPANY', 'INDIVIDUAL', name='tenanttype')
tenant_status = sa.Enum('PENDING', 'PROVISIONING', 'ACTIVE', 'FAILED', 'SUSPENDED', 'ARCHIVED', name='tenantstatus')
subscription_status = sa.Enum('ACTIVE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus')
domain_status = sa.Enum('PENDING', 'VERIFIED', 'FAILED', name='domainstatus')
ssl_status = sa.Enum('PENDING', 'PROVISIONING', 'ACTIVE', 'FAILED', name='sslstatus')
backup_type = sa.Enum('FULL', 'DATABASE', 'FILES', 'INCREMENTAL', name='backuptype')
backup_status = sa.Enum('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED', 'EXPIRED', name='backupstatus')
restore_status = sa.Enum('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED', name='restorestatus')
backup_frequency = sa.Enum('DAILY', 'WEEKLY', 'MONTHLY', name='backupfrequency')
maintenance_status = sa.Enum('SCHEDULED', 'ACTIVE', 'COMPLETED', 'CANCELLED', name='maintenancestatus')
maintenance_type = sa.Enum('PLANNED', 'EMERGENCY', 'UPGRADE', 'MIGRATION', name='maintenancetype')
job_operation = sa.Enum('PROVISION_TENANT', 'EXECUTE_BACKUP', 'EXECUTE_RESTORE', name='joboperation')
job_status = sa.Enum('PENDING', 'RUNNING', 'SUCCEEDED', 'FAILED', name='jobstatus')


def upgrade():
    # Plans
    op.create_table(
        'plans',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('modules', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_plans_slug', 'plans', ['slug'], unique=True)

    # Tenants
    op.create_table(
        'tenants',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('type', tenant_type, nullable=False),
        sa.Column('subdomain', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('plan_id', UUID, sa.ForeignKey('plans.id'), nullable=True),
        sa.Column('subscription_plan', sa.String(), nullable=True),
        sa.Column('modules', sa.JSON(), nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('subscription_ends_at', sa.DateTime(), nullable=True),
        sa.Column('status', tenant_status, nullable=False),
        sa.Column('provisioning_step', sa.String(), nullable=True),
        sa.Column('registration_step', sa.String(), nullable=True),
        sa.Column('admin_data', sa.JSON(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('maintenance_mode', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('company_email_verification_code', sa.String(), nullable=True),
        sa.Column('company_email_verification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('company_email_verified_at', sa.DateTime(), nullable=True),
        sa.Column('company_phone_verification_code', sa.String(), nullable=True),
        sa.Column('company_phone_verification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('company_phone_verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_tenants_name', 'tenants', ['name'])
    op.create_index('ix_tenants_subdomain', 'tenants', ['subdomain'], unique=True)
    op.create_index('ix_tenants_email', 'tenants', ['email'], unique=True)
    op.create_index('ix_tenants_status', 'tenants', ['status'])
    op.create_index('ix_tenants_deleted_at', 'tenants', ['deleted_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('plan_id', UUID, sa.ForeignKey('plans.id'), nullable=True),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('billing_cycle', sa.String(), nullable=True),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    # Domains
    op.create_table(
        'domains',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_custom', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('status', domain_status, nullable=False),
        sa.Column('dns_verification_code', sa.String(), nullable=True),
        sa.Column('verification_errors', sa.JSON(), nullable=False),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('ssl_status', ssl_status, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_domains_tenant_id', 'domains', ['tenant_id'])
    op.create_index('ix_domains_domain', 'domains', ['domain'], unique=True)
    op.create_index('ix_domains_status', 'domains', ['status'])

    # Backups
    op.create_table(
        'backups',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('type', backup_type, nullable=False),
        sa.Column('status', backup_status, nullable=False),
        sa.Column('include_database', sa.Boolean(), nullable=False),
        sa.Column('include_files', sa.Boolean(), nullable=False),
        sa.Column('compression', sa.String(), nullable=False),
        sa.Column('encryption', sa.Boolean(), nullable=False),
        sa.Column('encryption_key_id', UUID, nullable=True),
        sa.Column('retention_days', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('files', sa.JSON(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('total_size_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('manifest_path', sa.String(), nullable=True),
        sa.Column('checksum', sa.String(), nullable=True),
        sa.Column('initiated_by', sa.String(), nullable=True),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('schedule_id', UUID, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_backups_tenant_id', 'backups', ['tenant_id'])
    op.create_index('ix_backups_type', 'backups', ['type'])
    op.create_index('ix_backups_status', 'backups', ['status'])
    op.create_index('ix_backups_expires_at', 'backups', ['expires_at'])
    op.create_index('ix_backups_schedule_id', 'backups', ['schedule_id'])
    op.create_index('idx_backup_tenant_status', 'backups', ['tenant_id', 'status'])

    op.create_table(
        'restores',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('backup_id', UUID, nullable=False),
        sa.Column('status', restore_status, nullable=False),
        sa.Column('restore_database', sa.Boolean(), nullable=False),
        sa.Column('restore_files', sa.Boolean(), nullable=False),
        sa.Column('create_backup_before', sa.Boolean(), nullable=False),
        sa.Column('pre_restore_backup_id', UUID, nullable=True),
        sa.Column('initiated_by', sa.String(), nullable=True),
        sa.Column('error', sa.String(), nullable=True),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_restores_tenant_id', 'restores', ['tenant_id'])
    op.create_index('ix_restores_backup_id', 'restores', ['backup_id'])
    op.create_index('ix_restores_status', 'restores', ['status'])

    op.create_table(
        'backup_schedules',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('frequency', backup_frequency, nullable=False),
        sa.Column('time', sa.String(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('day_of_month', sa.Integer(), nullable=False),
        sa.Column('type', backup_type, nullable=False),
        sa.Column('retention_days', sa.Integer(), nullable=False),
        sa.Column('max_backups', sa.Integer(), nullable=False),
        sa.Column('notify_on_success', sa.Boolean(), nullable=False),
        sa.Column('notify_on_failure', sa.Boolean(), nullable=False),
        sa.Column('notification_emails', sa.JSON(), nullable=False),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('next_run_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_backup_schedules_tenant_id', 'backup_schedules', ['tenant_id'], unique=True)
    op.create_index('ix_backup_schedules_next_run_at', 'backup_schedules', ['next_run_at'])

    op.create_table(
        'backup_keys',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, nullable=False),
        sa.Column('backup_id', UUID, nullable=False),
        sa.Column('encrypted_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_backup_keys_tenant_id', 'backup_keys', ['tenant_id'])
    op.create_index('ix_backup_keys_backup_id', 'backup_keys', ['backup_id'])

    # Maintenance
    op.create_table(
        'maintenance_windows',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('status', maintenance_status, nullable=False),
        sa.Column('type', maintenance_type, nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('bypass_token', sa.String(), nullable=True),
        sa.Column('bypass_ips', sa.JSON(), nullable=False),
        sa.Column('bypass_users', sa.JSON(), nullable=False),
        sa.Column('allowed_routes', sa.JSON(), nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('notify_users', sa.Boolean(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('actual_duration_minutes', sa.Integer(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('enabled_by', sa.String(), nullable=True),
        sa.Column('disabled_by', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_maintenance_windows_tenant_id', 'maintenance_windows', ['tenant_id'])
    op.create_index('ix_maintenance_windows_status', 'maintenance_windows', ['status'])
    op.create_index('ix_maintenance_windows_starts_at', 'maintenance_windows', ['starts_at'])
    op.create_index('ix_maintenance_windows_expires_at', 'maintenance_windows', ['expires_at'])
    op.create_index('idx_maintenance_tenant_status', 'maintenance_windows', ['tenant_id', 'status'])

    op.create_table(
        'maintenance_notifications',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('window_id', UUID, sa.ForeignKey('maintenance_windows.id'), nullable=False),
        sa.Column('tenant_id', UUID, nullable=False),
        sa.Column('offset_minutes', sa.Integer(), nullable=False),
        sa.Column('skipped', sa.Boolean(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('window_id', 'offset_minutes', name='uq_maintenance_notification_offset'),
    )
    op.create_index('ix_maintenance_notifications_window_id', 'maintenance_notifications', ['window_id'])
    op.create_index('ix_maintenance_notifications_tenant_id', 'maintenance_notifications', ['tenant_id'])

    # Coordination
    op.create_table(
        'tenant_locks',
        sa.Column('tenant_id', UUID, primary_key=True),
        sa.Column('operation', sa.String(), nullable=False),
        sa.Column('owner', sa.String(), nullable=False),
        sa.Column('locked_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_tenant_locks_expires_at', 'tenant_locks', ['expires_at'])

    op.create_table(
        'lifecycle_jobs',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('tenant_id', UUID, nullable=False),
        sa.Column('operation', job_operation, nullable=False),
        sa.Column('subject_id', UUID, nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=False),
        sa.Column('status', job_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_lifecycle_jobs_tenant_id', 'lifecycle_jobs', ['tenant_id'])
    op.create_index('ix_lifecycle_jobs_operation', 'lifecycle_jobs', ['operation'])
    op.create_index('ix_lifecycle_jobs_idempotency_key', 'lifecycle_jobs', ['idempotency_key'], unique=True)
    op.create_index('ix_lifecycle_jobs_status', 'lifecycle_jobs', ['status'])


def downgrade():
    # Children first
    for table in (
        'lifecycle_jobs', 'tenant_locks', 'maintenance_notifications', 'maintenance_windows',
        'backup_keys', 'backup_schedules', 'restores', 'backups', 'domains', 'subscriptions',
        'tenants', 'plans',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum in (
        job_status, job_operation, maintenance_type, maintenance_status, backup_frequency,
        restore_status, backup_status, backup_type, ssl_status, domain_status,
        subscription_status, tenant_status, tenant_type,
    ):
        enum.drop(bind, checkfirst=True)
