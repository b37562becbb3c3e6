"""
Custom domain API endpoints
"""

from fastapi import APIRouter, Depends, status
from typing import List
import uuid

from tenant_lifecycle.api.responses import workflow_result
from tenant_lifecycle.api.schemas import DomainCreate, DomainRead
from tenant_lifecycle.core.dependencies import get_services
from tenant_lifecycle.services.factory import LifecycleServices

router = APIRouter()


@router.get("", response_model=List[DomainRead])
def list_domains(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.domains.list_domains(tenant_id)


@router.post("", response_model=DomainRead, status_code=status.HTTP_201_CREATED)
def add_domain(
    tenant_id: uuid.UUID,
    request: DomainCreate,
    services: LifecycleServices = Depends(get_services)
):
    return services.domains.add_domain(tenant_id, request.domain)


@router.post("/{domain_id}/verify")
def verify_domain(
    tenant_id: uuid.UUID,
    domain_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.domains.verify_dns(domain_id, tenant_id)


@router.post("/{domain_id}/primary", response_model=DomainRead)
def set_primary(
    tenant_id: uuid.UUID,
    domain_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.domains.set_primary(domain_id, tenant_id)


@router.post("/{domain_id}/ssl")
def provision_ssl(
    tenant_id: uuid.UUID,
    domain_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return workflow_result(services.domains.provision_ssl(domain_id, tenant_id))


@router.delete("/{domain_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_domain(
    tenant_id: uuid.UUID,
    domain_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    services.domains.remove_domain(domain_id, tenant_id)
