"""
Periodic Tasks
==============
Sweeps driven by celery beat (see core/celery.py for the schedule).
"""

from celery import shared_task
import structlog

from tenant_lifecycle.core.database import session_scope
from tenant_lifecycle.services.factory import build_services

logger = structlog.get_logger(__name__)


@shared_task
def process_scheduled_maintenance():
    with session_scope() as session:
        return build_services(session).maintenance.process_scheduled_maintenance()


@shared_task
def run_scheduled_backups():
    with session_scope() as session:
        return build_services(session).backups.run_scheduled_backups()


@shared_task
def cleanup_expired_backups():
    with session_scope() as session:
        return build_services(session).backups.cleanup_expired()


@shared_task
def reconcile_stuck_operations():
    with session_scope() as session:
        return build_services(session).reconciler.reconcile()


@shared_task
def verify_pending_domains():
    with session_scope() as session:
        return build_services(session).domains.verify_pending_domains()


@shared_task
def purge_expired_tenants():
    """
    Purge archived tenants past retention and warn tenants nearing it.

    Never retried: a purge that failed a postcondition flags the tenant
    for an operator instead.
    """
    with session_scope() as session:
        services = build_services(session)
        result = services.purge.purge_expired()
        result["notices_sent"] = services.purge.send_purge_notices()
        logger.info("Purge sweep finished", success=result["success"], failed=result["failed"])
        return result
