"""
Maintenance mode API endpoints
"""

from fastapi import APIRouter, Depends, status
from typing import Optional
import uuid

from tenant_lifecycle.api.responses import workflow_result
from tenant_lifecycle.api.schemas import (
    BypassCheck, MaintenanceCancel, MaintenanceEnable, MaintenanceExtend,
    MaintenanceMessage, MaintenanceSchedule
)
from tenant_lifecycle.core.dependencies import get_actor, get_services
from tenant_lifecycle.services.factory import LifecycleServices

router = APIRouter()


def _options(request, exclude) -> dict:
    options = request.model_dump(mode="json", exclude=exclude | {"attributes"})
    options["metadata"] = request.attributes
    return options


@router.get("")
def get_status(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.maintenance.get_status(tenant_id)


@router.get("/page")
def get_maintenance_page(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    """Public maintenance page data"""
    return services.maintenance.get_maintenance_page(tenant_id)


@router.get("/history")
def get_history(
    tenant_id: uuid.UUID,
    limit: int = 10,
    services: LifecycleServices = Depends(get_services)
):
    return {"data": services.maintenance.get_history(tenant_id, limit)}


@router.post("/enable")
def enable(
    tenant_id: uuid.UUID,
    request: MaintenanceEnable,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    options = _options(request, set())
    options["enabled_by"] = actor
    return workflow_result(services.maintenance.enable(tenant_id, options))


@router.post("/disable")
def disable(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    return workflow_result(services.maintenance.disable(tenant_id, actor))


@router.post("/schedule", status_code=status.HTTP_201_CREATED)
def schedule(
    tenant_id: uuid.UUID,
    request: MaintenanceSchedule,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    options = _options(request, {"start_time", "duration_minutes"})
    options["scheduled_by"] = actor
    result = services.maintenance.schedule(tenant_id, request.start_time, request.duration_minutes, options)
    return workflow_result(result, status.HTTP_201_CREATED)


@router.delete("/schedule/{schedule_id}")
def cancel_scheduled(
    tenant_id: uuid.UUID,
    schedule_id: uuid.UUID,
    request: Optional[MaintenanceCancel] = None,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    reason = request.reason if request else None
    return workflow_result(services.maintenance.cancel_scheduled(tenant_id, schedule_id, actor, reason))


@router.post("/extend")
def extend(
    tenant_id: uuid.UUID,
    request: MaintenanceExtend,
    services: LifecycleServices = Depends(get_services)
):
    return workflow_result(services.maintenance.extend(tenant_id, request.additional_minutes))


@router.put("/message")
def update_message(
    tenant_id: uuid.UUID,
    request: MaintenanceMessage,
    services: LifecycleServices = Depends(get_services)
):
    return workflow_result(services.maintenance.update_message(tenant_id, request.message))


@router.post("/bypass-check")
def check_bypass(
    tenant_id: uuid.UUID,
    request: BypassCheck,
    services: LifecycleServices = Depends(get_services)
):
    """Used by the edge middleware to decide whether a request passes"""
    return {
        "in_maintenance": services.maintenance.is_in_maintenance(tenant_id),
        "can_bypass": services.maintenance.can_bypass(tenant_id, request.model_dump(exclude_none=True)),
    }
