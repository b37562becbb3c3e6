"""
Tenant lifecycle API endpoints
Registration, provisioning, archive/restore and purge
"""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import Optional
import structlog
import uuid

from tenant_lifecycle.api.schemas import PurgeBatchRequest, TenantArchiveRequest, TenantRead, TenantRegistration
from tenant_lifecycle.core.dependencies import get_actor, get_services
from tenant_lifecycle.models.tenant import Tenant
from tenant_lifecycle.services.factory import LifecycleServices

logger = structlog.get_logger(__name__)
router = APIRouter()


def _get_tenant(services: LifecycleServices, tenant_id: uuid.UUID) -> Tenant:
    tenant = services.session.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found"
        )
    return tenant


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register_tenant(
    registration: TenantRegistration,
    services: LifecycleServices = Depends(get_services)
):
    """Create (or resume) a pending tenant and hand it to provisioning"""
    payload = registration.model_dump(exclude={"provision"})
    tenant = services.provisioner.create_from_registration(payload)

    provisioning = None
    if registration.provision:
        provisioning = services.provisioner.dispatch_provisioning(tenant)
        services.session.refresh(tenant)

    return {
        "tenant": TenantRead.model_validate(tenant).model_dump(mode="json"),
        "provisioning": provisioning,
    }


@router.get("/{tenant_id}", response_model=TenantRead)
def get_tenant(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    """Get tenant by ID"""
    return _get_tenant(services, tenant_id)


@router.post("/{tenant_id}/provision")
def retry_provisioning(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    """Retry a failed provisioning run"""
    tenant = _get_tenant(services, tenant_id)
    return services.provisioner.retry_provisioning(tenant)


@router.get("/{tenant_id}/retention")
def get_retention(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    tenant = _get_tenant(services, tenant_id)
    return services.retention.summary(tenant)


@router.post("/{tenant_id}/archive")
def archive_tenant(
    tenant_id: uuid.UUID,
    request: TenantArchiveRequest,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    """Soft delete; the tenant can be restored until retention expires"""
    return services.archiver.archive(tenant_id, request.reason, actor)


@router.post("/{tenant_id}/restore")
def restore_tenant(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    return services.archiver.restore(tenant_id, actor)


@router.delete("/{tenant_id}")
def purge_tenant(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    """Irreversible hard delete of an archived tenant past retention"""
    logger.warning("Purge requested", tenant_id=str(tenant_id), actor=actor)
    return services.purge.purge(tenant_id)


@router.post("/purge")
def purge_tenants(
    request: PurgeBatchRequest,
    services: LifecycleServices = Depends(get_services)
):
    return services.purge.batch_purge(request.tenant_ids)
