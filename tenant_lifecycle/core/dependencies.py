"""
Service dependencies for FastAPI
"""

from typing import Optional

from fastapi import Depends, Header
from sqlmodel import Session
import structlog

from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.database import get_session
from tenant_lifecycle.services.factory import LifecycleServices, build_services

logger = structlog.get_logger(__name__)
settings = get_settings()


def get_services(session: Session = Depends(get_session)) -> LifecycleServices:
    """Lifecycle services bound to the request session"""
    return build_services(session, inline=settings.TASK_EXECUTION == "inline")


def get_actor(x_actor: Optional[str] = Header(default=None)) -> Optional[str]:
    """Operator identity recorded on audit fields (authentication happens upstream)"""
    return x_actor
