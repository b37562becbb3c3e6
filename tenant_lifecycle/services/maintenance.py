"""
Per-tenant maintenance mode

Window state machine:
    active -> completed
    scheduled -> active -> completed
    scheduled -> cancelled

At most one active window per tenant. Scheduled windows are moved along by
`process_scheduled_maintenance()`, which an external scheduler calls
periodically; nothing here happens on the request path except `can_bypass`.
"""

from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Mapping, Optional
import hmac
import ipaddress
import secrets
import uuid

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import LifecycleError, NotFoundError, ValidationError
from tenant_lifecycle.core.locks import tenant_lock
from tenant_lifecycle.core.notifications import Notifier
from tenant_lifecycle.models.maintenance import (
    DEFAULT_MAINTENANCE_MESSAGE, MaintenanceNotification, MaintenanceStatus,
    MaintenanceType, MaintenanceWindow
)
from tenant_lifecycle.models.tenant import Tenant

logger = structlog.get_logger(__name__)

FINISHED_STATUSES = [MaintenanceStatus.COMPLETED, MaintenanceStatus.CANCELLED]


def _ip_allowed(ip: str, allow_list: List[str]) -> bool:
    """Exact addresses or CIDR ranges"""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in allow_list:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def bypass_allowed(window: Optional[MaintenanceWindow], request: Mapping[str, Any]) -> bool:
    """Pure bypass decision for a request against an active window.

    Checked in order: bypass token, client IP, user id, allowed route.
    """
    if window is None:
        return True

    token = request.get("bypass_token")
    if token and window.bypass_token and hmac.compare_digest(str(token), window.bypass_token):
        return True

    ip = request.get("ip")
    if ip and window.bypass_ips and _ip_allowed(str(ip), window.bypass_ips):
        return True

    user_id = request.get("user_id")
    if user_id is not None and str(user_id) in {str(u) for u in window.bypass_users or []}:
        return True

    path = request.get("path") or request.get("route")
    if path and any(fnmatch(path, pattern) for pattern in window.allowed_routes or []):
        return True

    return False


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _maintenance_type(value: Any, tenant_id: uuid.UUID, operation: str) -> MaintenanceType:
    try:
        return MaintenanceType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown maintenance type: {value}", tenant_id=tenant_id, operation=operation, context={"field": "type"}
        )


def _minutes(value: Any, field: str, tenant_id: uuid.UUID, operation: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field} must be a whole number of minutes", tenant_id=tenant_id, operation=operation, context={"field": field}
        )


class MaintenanceModeService:
    """Enables, schedules and completes maintenance windows"""

    def __init__(
        self,
        session: Session,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
        ttl_days: Optional[int] = None,
        history_limit: Optional[int] = None,
        notify_offsets: Optional[List[int]] = None
    ):
        settings = get_settings()
        self.session = session
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else settings.MAINTENANCE_TTL_DAYS)
        self.history_limit = history_limit or settings.MAINTENANCE_HISTORY_LIMIT
        self.notify_offsets = sorted(notify_offsets or settings.MAINTENANCE_NOTIFY_BEFORE_MINUTES, reverse=True)
        self.central_domain = settings.CENTRAL_DOMAIN

    # Lookups

    def _get_tenant(self, tenant_id: uuid.UUID) -> Tenant:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation="maintenance")
        return tenant

    def _active_window(self, tenant_id: uuid.UUID) -> Optional[MaintenanceWindow]:
        return self.session.exec(
            select(MaintenanceWindow)
            .where(MaintenanceWindow.tenant_id == tenant_id)
            .where(MaintenanceWindow.status == MaintenanceStatus.ACTIVE)
        ).first()

    def _effective_window(self, tenant_id: uuid.UUID) -> Optional[MaintenanceWindow]:
        """Active window, ignoring one whose safety TTL has lapsed"""
        window = self._active_window(tenant_id)
        if window is not None and window.expires_at is not None and window.expires_at <= self.clock():
            return None
        return window

    def _bypass_url(self, tenant: Tenant, token: str) -> str:
        return f"https://{tenant.subdomain}.{self.central_domain}/?bypass_token={token}"

    # Enable / disable

    def enable(self, tenant_id: uuid.UUID, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Start maintenance now; returns the bypass token"""
        options = options or {}
        tenant = self._get_tenant(tenant_id)
        maintenance_type = _maintenance_type(options.get("type", MaintenanceType.PLANNED.value), tenant_id, "maintenance")
        duration = options.get("estimated_duration")
        duration = _minutes(duration, "estimated_duration", tenant_id, "maintenance") if duration else None

        with tenant_lock(self.session, tenant_id, "maintenance", clock=self.clock):
            if self._active_window(tenant_id) is not None:
                return {"success": False, "error": "Maintenance mode is already active"}

            now = self.clock()
            window = MaintenanceWindow(
                tenant_id=tenant_id,
                status=MaintenanceStatus.ACTIVE,
                type=maintenance_type,
                message=options.get("message") or DEFAULT_MAINTENANCE_MESSAGE,
                bypass_token=secrets.token_urlsafe(32),
                bypass_ips=list(options.get("bypass_ips") or []),
                bypass_users=[str(u) for u in options.get("bypass_users") or []],
                allowed_routes=list(options.get("allowed_routes") or []),
                starts_at=now,
                started_at=now,
                ends_at=now + timedelta(minutes=duration) if duration else None,
                duration_minutes=duration,
                expires_at=now + self.ttl,
                notify_users=bool(options.get("notify_users", True)),
                enabled_by=options.get("enabled_by"),
                window_metadata=dict(options.get("metadata") or {}),
                created_at=now,
            )
            tenant.maintenance_mode = True
            tenant.touch(now)
            self.session.add(window)
            self.session.add(tenant)
            self.session.commit()
            self.session.refresh(window)

        logger.info("Maintenance enabled", tenant_id=str(tenant_id), window_id=str(window.id), type=window.type.value)
        if window.notify_users:
            self.notifier.notify_users(tenant_id, "maintenance_started", {
                "message": window.message,
                "estimated_end": window.ends_at.isoformat() if window.ends_at else None,
            })
        return {
            "success": True,
            "maintenance": window.to_dict(),
            "bypass_token": window.bypass_token,
            "bypass_url": self._bypass_url(tenant, window.bypass_token),
        }

    def disable(self, tenant_id: uuid.UUID, disabled_by: Optional[str] = None) -> Dict[str, Any]:
        self._get_tenant(tenant_id)
        with tenant_lock(self.session, tenant_id, "maintenance", clock=self.clock):
            window = self._active_window(tenant_id)
            if window is None:
                return {"success": False, "error": "Maintenance mode is not active"}
            self._complete(window, disabled_by)
        return {
            "success": True,
            "duration_minutes": window.actual_duration_minutes,
            "maintenance": window.to_dict(),
        }

    def _complete(self, window: MaintenanceWindow, disabled_by: Optional[str]) -> None:
        now = self.clock()
        window.transition_to_completed(now, disabled_by)
        tenant = self.session.get(Tenant, window.tenant_id)
        if tenant is not None:
            tenant.maintenance_mode = False
            tenant.touch(now)
            self.session.add(tenant)
        self.session.add(window)
        self.session.commit()
        self.session.refresh(window)
        self._trim_history(window.tenant_id)

        logger.info(
            "Maintenance completed",
            tenant_id=str(window.tenant_id),
            window_id=str(window.id),
            duration_minutes=window.actual_duration_minutes,
            disabled_by=disabled_by,
        )
        if window.notify_users:
            self.notifier.notify_users(window.tenant_id, "maintenance_completed", {
                "duration_minutes": window.actual_duration_minutes,
            })

    def _trim_history(self, tenant_id: uuid.UUID) -> None:
        """Keep only the most recent finished windows"""
        stale_ids = self.session.exec(
            select(MaintenanceWindow.id)
            .where(MaintenanceWindow.tenant_id == tenant_id)
            .where(MaintenanceWindow.status.in_(FINISHED_STATUSES))
            .order_by(MaintenanceWindow.completed_at.desc())
            .offset(self.history_limit)
        ).all()
        if not stale_ids:
            return
        self.session.exec(delete(MaintenanceNotification).where(MaintenanceNotification.window_id.in_(stale_ids)))
        self.session.exec(delete(MaintenanceWindow).where(MaintenanceWindow.id.in_(stale_ids)))
        self.session.commit()

    # Scheduling

    def schedule(
        self,
        tenant_id: uuid.UUID,
        start_time: datetime,
        duration_minutes: int,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        options = options or {}
        self._get_tenant(tenant_id)
        now = self.clock()
        start_time = _as_naive_utc(start_time)
        maintenance_type = _maintenance_type(options.get("type", MaintenanceType.PLANNED.value), tenant_id, "maintenance")
        if duration_minutes is not None:
            duration_minutes = _minutes(duration_minutes, "duration_minutes", tenant_id, "maintenance")

        if start_time < now:
            return {"success": False, "error": "Start time cannot be in the past"}
        if duration_minutes is None or duration_minutes <= 0:
            return {"success": False, "error": "Duration must be a positive number of minutes"}

        window = MaintenanceWindow(
            tenant_id=tenant_id,
            status=MaintenanceStatus.SCHEDULED,
            type=maintenance_type,
            message=options.get("message") or DEFAULT_MAINTENANCE_MESSAGE,
            bypass_token=secrets.token_urlsafe(32),
            bypass_ips=list(options.get("bypass_ips") or []),
            bypass_users=[str(u) for u in options.get("bypass_users") or []],
            allowed_routes=list(options.get("allowed_routes") or []),
            starts_at=start_time,
            ends_at=start_time + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
            notify_users=bool(options.get("notify_users", True)),
            enabled_by=options.get("scheduled_by"),
            window_metadata=dict(options.get("metadata") or {}),
            created_at=now,
        )
        self.session.add(window)
        self.session.commit()
        self.session.refresh(window)

        logger.info(
            "Maintenance scheduled",
            tenant_id=str(tenant_id),
            schedule_id=str(window.id),
            starts_at=window.starts_at.isoformat(),
            duration_minutes=window.duration_minutes,
        )
        if window.notify_users:
            self.notifier.notify_users(tenant_id, "maintenance_scheduled", {
                "schedule_id": str(window.id),
                "starts_at": window.starts_at.isoformat(),
                "ends_at": window.ends_at.isoformat(),
                "message": window.message,
            })
        return {"success": True, "schedule_id": str(window.id), "maintenance": window.to_dict()}

    def cancel_scheduled(
        self,
        tenant_id: uuid.UUID,
        schedule_id: uuid.UUID,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        window = self.session.get(MaintenanceWindow, schedule_id)
        if window is None or window.tenant_id != tenant_id:
            return {"success": False, "error": "Scheduled maintenance not found"}
        if window.status != MaintenanceStatus.SCHEDULED:
            return {"success": False, "error": f"Maintenance is {window.status.value}, only scheduled maintenance can be cancelled"}

        window.transition_to_cancelled(self.clock(), cancelled_by, reason)
        self.session.add(window)
        self.session.commit()
        self._trim_history(tenant_id)
        logger.info("Scheduled maintenance cancelled", tenant_id=str(tenant_id), schedule_id=str(schedule_id))
        if window.notify_users:
            self.notifier.notify_users(tenant_id, "maintenance_cancelled", {"schedule_id": str(schedule_id)})
        return {"success": True, "schedule_id": str(schedule_id)}

    # Request-path checks

    def can_bypass(self, tenant_id: uuid.UUID, request: Mapping[str, Any]) -> bool:
        return bypass_allowed(self._effective_window(tenant_id), request)

    def is_in_maintenance(self, tenant_id: uuid.UUID) -> bool:
        return self._effective_window(tenant_id) is not None

    # Views

    def get_status(self, tenant_id: uuid.UUID) -> Dict[str, Any]:
        active = self._effective_window(tenant_id)
        scheduled = self.session.exec(
            select(MaintenanceWindow)
            .where(MaintenanceWindow.tenant_id == tenant_id)
            .where(MaintenanceWindow.status == MaintenanceStatus.SCHEDULED)
            .order_by(MaintenanceWindow.starts_at)
        ).all()
        return {
            "in_maintenance": active is not None,
            "active": active.to_dict() if active else None,
            "scheduled": [w.to_dict() for w in scheduled],
        }

    def get_maintenance_page(self, tenant_id: uuid.UUID) -> Dict[str, Any]:
        """Public data for the maintenance page (no bypass rules)"""
        window = self._effective_window(tenant_id)
        if window is None:
            return {"in_maintenance": False}
        remaining = None
        if window.ends_at:
            remaining = max(int((window.ends_at - self.clock()).total_seconds() // 60), 0)
        return {
            "in_maintenance": True,
            "message": window.message,
            "type": window.type.value,
            "started_at": (window.started_at or window.starts_at).isoformat(),
            "estimated_end": window.ends_at.isoformat() if window.ends_at else None,
            "remaining_minutes": remaining,
        }

    def get_history(self, tenant_id: uuid.UUID, limit: int = 10) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, self.history_limit))
        windows = self.session.exec(
            select(MaintenanceWindow)
            .where(MaintenanceWindow.tenant_id == tenant_id)
            .where(MaintenanceWindow.status.in_(FINISHED_STATUSES))
            .order_by(MaintenanceWindow.completed_at.desc())
            .limit(limit)
        ).all()
        return [w.to_dict() for w in windows]

    # Updates to the active window

    def extend(self, tenant_id: uuid.UUID, additional_minutes: int) -> Dict[str, Any]:
        if additional_minutes is not None:
            additional_minutes = _minutes(additional_minutes, "additional_minutes", tenant_id, "maintenance")
        if additional_minutes is None or additional_minutes <= 0:
            return {"success": False, "error": "additional_minutes must be positive"}
        self._get_tenant(tenant_id)

        with tenant_lock(self.session, tenant_id, "maintenance", clock=self.clock):
            window = self._active_window(tenant_id)
            if window is None:
                return {"success": False, "error": "Maintenance mode is not active"}
            now = self.clock()
            window.ends_at = max(window.ends_at or now, now) + timedelta(minutes=additional_minutes)
            window.duration_minutes = (window.duration_minutes or 0) + additional_minutes
            if window.expires_at is None or window.expires_at < window.ends_at:
                window.expires_at = window.ends_at
            window.updated_at = now
            window.version += 1
            self.session.add(window)
            self.session.commit()
            self.session.refresh(window)

        logger.info("Maintenance extended", tenant_id=str(tenant_id), estimated_end=window.ends_at.isoformat())
        if window.notify_users:
            self.notifier.notify_users(tenant_id, "maintenance_extended", {"estimated_end": window.ends_at.isoformat()})
        return {"success": True, "estimated_end": window.ends_at.isoformat()}

    def update_message(self, tenant_id: uuid.UUID, message: str) -> Dict[str, Any]:
        if not message or not message.strip():
            return {"success": False, "error": "Message cannot be empty"}
        window = self._active_window(tenant_id)
        if window is None:
            return {"success": False, "error": "Maintenance mode is not active"}
        window.message = message.strip()
        window.updated_at = self.clock()
        window.version += 1
        self.session.add(window)
        self.session.commit()
        return {"success": True, "message": window.message}

    # Scheduler

    def process_scheduled_maintenance(self) -> Dict[str, Any]:
        """One scheduler tick: activate, complete, expire and remind"""
        now = self.clock()
        result: Dict[str, Any] = {
            "activated": 0, "completed": 0, "expired": 0, "cancelled": 0,
            "notifications_sent": 0, "errors": [],
        }

        scheduled = self.session.exec(
            select(MaintenanceWindow)
            .where(MaintenanceWindow.status == MaintenanceStatus.SCHEDULED)
            .order_by(MaintenanceWindow.starts_at)
        ).all()
        for window in scheduled:
            self._guarded(result, window, lambda w=window: self._tick_scheduled(w, now, result))

        active = self.session.exec(
            select(MaintenanceWindow).where(MaintenanceWindow.status == MaintenanceStatus.ACTIVE)
        ).all()
        for window in active:
            self._guarded(result, window, lambda w=window: self._tick_active(w, now, result))

        logger.info("Scheduled maintenance processed", **{k: v for k, v in result.items() if k != "errors"})
        return result

    def _guarded(self, result: Dict[str, Any], window: MaintenanceWindow, action: Callable[[], None]) -> None:
        window_id, tenant_id = window.id, window.tenant_id
        try:
            action()
        except LifecycleError as e:
            self.session.rollback()
            result["errors"].append({"window_id": str(window_id), **e.to_dict()})
            logger.warning("Maintenance window skipped this tick", window_id=str(window_id), error=e.message)
        except Exception as e:
            self.session.rollback()
            result["errors"].append({"window_id": str(window_id), "tenant_id": str(tenant_id), "error": str(e)})
            logger.error("Maintenance window processing failed", window_id=str(window_id), error=str(e), exc_info=True)

    def _tick_scheduled(self, window: MaintenanceWindow, now: datetime, result: Dict[str, Any]) -> None:
        if window.has_elapsed(now):
            window.transition_to_cancelled(now, "scheduler", "elapsed before activation")
            self.session.add(window)
            self.session.commit()
            result["cancelled"] += 1
            logger.warning("Scheduled maintenance elapsed before activation", window_id=str(window.id))
            return

        if window.can_activate(now):
            if self._activate(window, now):
                result["activated"] += 1
            return

        result["notifications_sent"] += self._send_reminder(window, now)

    def _activate(self, window: MaintenanceWindow, now: datetime) -> bool:
        tenant_id = window.tenant_id
        with tenant_lock(self.session, tenant_id, "maintenance", clock=self.clock):
            self.session.refresh(window)
            if not window.can_activate(now):
                return False
            if self._active_window(tenant_id) is not None:
                logger.warning("Tenant already in maintenance, deferring scheduled window", window_id=str(window.id))
                return False
            window.transition_to_active(now, self.ttl)
            tenant = self.session.get(Tenant, tenant_id)
            if tenant is not None:
                tenant.maintenance_mode = True
                tenant.touch(now)
                self.session.add(tenant)
            self.session.add(window)
            self.session.commit()
            self.session.refresh(window)

        logger.info("Scheduled maintenance activated", tenant_id=str(tenant_id), window_id=str(window.id))
        if window.notify_users:
            self.notifier.notify_users(tenant_id, "maintenance_started", {
                "message": window.message,
                "estimated_end": window.ends_at.isoformat() if window.ends_at else None,
            })
        return True

    def _tick_active(self, window: MaintenanceWindow, now: datetime, result: Dict[str, Any]) -> None:
        if window.has_elapsed(now):
            reason = "scheduler"
            key = "completed"
        elif window.expires_at is not None and window.expires_at <= now:
            reason = "ttl_expired"
            key = "expired"
        else:
            return
        with tenant_lock(self.session, window.tenant_id, "maintenance", clock=self.clock):
            self.session.refresh(window)
            if not window.is_active():
                return
            self._complete(window, reason)
        result[key] += 1

    def _send_reminder(self, window: MaintenanceWindow, now: datetime) -> int:
        """Fire the closest crossed offset not yet in the ledger; larger crossed offsets are marked skipped"""
        if not window.notify_users:
            return 0
        minutes_until = (window.starts_at - now).total_seconds() / 60
        crossed = [o for o in self.notify_offsets if minutes_until <= o]
        if not crossed:
            return 0

        recorded = set(self.session.exec(
            select(MaintenanceNotification.offset_minutes).where(MaintenanceNotification.window_id == window.id)
        ).all())
        unsent = [o for o in crossed if o not in recorded]
        if not unsent:
            return 0

        fire = min(unsent)
        for offset in unsent:
            self.session.add(MaintenanceNotification(
                window_id=window.id,
                tenant_id=window.tenant_id,
                offset_minutes=offset,
                skipped=offset != fire,
                sent_at=now,
            ))
        try:
            self.session.commit()
        except IntegrityError:
            # Another tick claimed these offsets
            self.session.rollback()
            return 0

        self.notifier.notify_users(window.tenant_id, "maintenance_reminder", {
            "schedule_id": str(window.id),
            "starts_at": window.starts_at.isoformat(),
            "minutes_until_start": max(int(round(minutes_until)), 0),
            "offset_minutes": fire,
            "message": window.message,
        })
        return 1
