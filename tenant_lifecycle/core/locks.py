"""
Per-tenant lease lock

State transitions on a tenant (purge, restore, maintenance toggles,
provisioning) are serialized through a row in `tenant_locks`. The tenant id
is the primary key, so two writers can never both insert a lease. Leases
expire so that a crashed worker does not block the tenant forever.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
import uuid

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import TenantBusyError
from tenant_lifecycle.models.tenant_lock import TenantLock

logger = structlog.get_logger(__name__)


def acquire_tenant_lock(
    session: Session,
    tenant_id: uuid.UUID,
    operation: str,
    ttl_seconds: Optional[int] = None,
    clock: Callable[[], datetime] = utcnow
) -> TenantLock:
    """Insert a lease row for the tenant; raises TenantBusyError if one is held"""
    ttl = ttl_seconds if ttl_seconds is not None else get_settings().TENANT_LOCK_TTL_SECONDS
    now = clock()

    existing = session.get(TenantLock, tenant_id)
    if existing is not None:
        if not existing.is_expired(now):
            raise TenantBusyError(
                f"Tenant is locked by '{existing.operation}' until {existing.expires_at.isoformat()}",
                tenant_id=tenant_id,
                operation=operation,
                context={"held_by": existing.operation, "expires_at": existing.expires_at.isoformat()},
            )
        logger.warning(
            "Taking over expired tenant lock",
            tenant_id=str(tenant_id),
            previous_operation=existing.operation,
            operation=operation,
        )
        session.delete(existing)
        session.flush()

    lock = TenantLock(
        tenant_id=tenant_id,
        operation=operation,
        owner=uuid.uuid4().hex,
        locked_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )
    session.add(lock)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise TenantBusyError(
            "Tenant lock acquired concurrently by another worker",
            tenant_id=tenant_id,
            operation=operation,
            cause=e,
        )

    logger.debug("Tenant lock acquired", tenant_id=str(tenant_id), operation=operation)
    return lock


def release_tenant_lock(session: Session, tenant_id: uuid.UUID, owner: str) -> None:
    """Delete the lease, only if we still own it"""
    session.exec(
        delete(TenantLock).where(TenantLock.tenant_id == tenant_id, TenantLock.owner == owner)
    )
    session.commit()
    logger.debug("Tenant lock released", tenant_id=str(tenant_id))


@contextmanager
def tenant_lock(
    session: Session,
    tenant_id: uuid.UUID,
    operation: str,
    ttl_seconds: Optional[int] = None,
    clock: Callable[[], datetime] = utcnow
) -> Iterator[TenantLock]:
    """Hold the tenant lease for the duration of the block.

    Work inside the block that did not commit is rolled back on error
    before the lease is released.
    """
    lock = acquire_tenant_lock(session, tenant_id, operation, ttl_seconds, clock)
    owner = lock.owner
    try:
        yield lock
    except BaseException:
        session.rollback()
        raise
    finally:
        release_tenant_lock(session, tenant_id, owner)
