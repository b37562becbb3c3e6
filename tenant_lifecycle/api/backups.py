"""
Tenant backup API endpoints
"""

from fastapi import APIRouter, Depends, Query, status
from datetime import datetime
from typing import Optional
import uuid

from tenant_lifecycle.api.responses import workflow_result
from tenant_lifecycle.api.schemas import BackupCreate, BackupRestoreRequest, BackupScheduleUpdate
from tenant_lifecycle.core.dependencies import get_actor, get_services
from tenant_lifecycle.services.factory import LifecycleServices

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_backup(
    tenant_id: uuid.UUID,
    backup: BackupCreate,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    options = backup.model_dump(exclude={"type"}, exclude_none=True)
    options["initiated_by"] = actor
    result = services.backups.create_backup(tenant_id, backup.type.value, options)
    return workflow_result(result, status.HTTP_201_CREATED)


@router.get("")
def list_backups(
    tenant_id: uuid.UUID,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    per_page: int = 20,
    services: LifecycleServices = Depends(get_services)
):
    return services.backups.list_backups(
        tenant_id,
        status=status_filter,
        type=type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        per_page=per_page,
    )


@router.get("/usage")
def get_storage_usage(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.backups.get_storage_usage(tenant_id)


@router.get("/schedule")
def get_schedule(
    tenant_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return {"schedule": services.backups.get_schedule(tenant_id)}


@router.put("/schedule")
def update_schedule(
    tenant_id: uuid.UUID,
    schedule: BackupScheduleUpdate,
    services: LifecycleServices = Depends(get_services)
):
    config = schedule.model_dump(mode="json", exclude_none=True)
    return services.backups.schedule_backups(tenant_id, config)


@router.get("/restores/{restore_id}")
def get_restore(
    tenant_id: uuid.UUID,
    restore_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.backups.get_restore(tenant_id, restore_id)


@router.get("/{backup_id}")
def get_backup(
    tenant_id: uuid.UUID,
    backup_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return services.backups.get_backup(tenant_id, backup_id)


@router.delete("/{backup_id}")
def delete_backup(
    tenant_id: uuid.UUID,
    backup_id: uuid.UUID,
    services: LifecycleServices = Depends(get_services)
):
    return workflow_result(services.backups.delete_backup(tenant_id, backup_id))


@router.post("/{backup_id}/restore", status_code=status.HTTP_202_ACCEPTED)
def restore_backup(
    tenant_id: uuid.UUID,
    backup_id: uuid.UUID,
    request: BackupRestoreRequest,
    services: LifecycleServices = Depends(get_services),
    actor: Optional[str] = Depends(get_actor)
):
    """Restore a completed backup; a pre-restore backup is taken by default"""
    options = request.model_dump(exclude_none=True)
    options["initiated_by"] = actor
    result = services.backups.restore(tenant_id, backup_id, options)
    return workflow_result(result, status.HTTP_202_ACCEPTED)
