"""
Tenant registration

Creates (or resumes) the central tenant record from a registration payload
and prepares it for asynchronous provisioning. No tenant database work
happens here.

Payload shape:

    {
        "account": {"type": "company"},
        "details": {"name": ..., "email": ..., "subdomain": ..., "phone": ..., <extra fields>},
        "plan": {"plan_id" | "plan_slug": ..., "billing_cycle": "monthly", "modules": [...]},
        "trial": {"enabled": true, "days": 14},
        "admin": {"name": ..., "email": ...}
    }
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import re
import uuid

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import PreconditionError, ValidationError
from tenant_lifecycle.core.events import EventBus, TenantRegistered, event_bus
from tenant_lifecycle.models.domain import Domain, DomainStatus
from tenant_lifecycle.models.lifecycle_job import JobOperation
from tenant_lifecycle.models.plan import Plan, Subscription, SubscriptionStatus
from tenant_lifecycle.models.tenant import Tenant, TenantStatus, TenantType

logger = structlog.get_logger(__name__)

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
RESERVED_SUBDOMAINS = {
    "www", "admin", "api", "app", "mail", "smtp", "ftp", "platform",
    "static", "assets", "cdn", "support", "status", "billing",
}

# Detail fields stored on the tenant columns; everything else goes to metadata
COLUMN_DETAILS = {"name", "email", "phone", "subdomain"}

# Statuses where a registration may still be resumed
RESUMABLE_STATUSES = (TenantStatus.PENDING, TenantStatus.FAILED)


def clean_modules(modules: List[str]) -> List[str]:
    """Slugify module codes and drop duplicates, keeping order"""
    cleaned = []
    for module in modules or []:
        code = re.sub(r"[^a-z0-9]+", "_", str(module).strip().lower()).strip("_")
        if code and code not in cleaned:
            cleaned.append(code)
    return cleaned


class TenantProvisioner:
    """Creates and resumes tenant records from registration payloads"""

    def __init__(
        self,
        session: Session,
        dispatcher=None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        central_domain: Optional[str] = None,
        trial_days: Optional[int] = None
    ):
        settings = get_settings()
        self.session = session
        self.dispatcher = dispatcher
        self.bus = bus or event_bus
        self.clock = clock
        self.central_domain = central_domain or settings.CENTRAL_DOMAIN
        self.trial_days = trial_days if trial_days is not None else settings.TRIAL_DAYS

    # Validation

    def _validate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        details = dict(payload.get("details") or {})
        errors = {}

        name = (details.get("name") or "").strip()
        if not name:
            errors["name"] = "Name is required"

        email = (details.get("email") or "").strip().lower()
        if not EMAIL_RE.match(email):
            errors["email"] = "A valid email is required"

        subdomain = (details.get("subdomain") or "").strip().lower()
        if not SUBDOMAIN_RE.match(subdomain):
            errors["subdomain"] = "Subdomain may only contain lowercase letters, digits and hyphens"
        elif subdomain in RESERVED_SUBDOMAINS:
            errors["subdomain"] = f"Subdomain '{subdomain}' is reserved"

        account_type = (payload.get("account") or {}).get("type", TenantType.COMPANY.value)
        if account_type not in {t.value for t in TenantType}:
            errors["account.type"] = f"Unknown account type: {account_type}"

        if errors:
            raise ValidationError("Invalid registration payload", operation="register", context={"errors": errors})

        details.update({"name": name, "email": email, "subdomain": subdomain})
        return details

    def _resolve_plan(self, plan_data: Dict[str, Any]) -> Optional[Plan]:
        plan = None
        if plan_data.get("plan_id"):
            try:
                plan_id = uuid.UUID(str(plan_data["plan_id"]))
            except ValueError:
                raise ValidationError(
                    f"Invalid plan_id: {plan_data['plan_id']}",
                    operation="register",
                    context={"field": "plan.plan_id", "errors": {"plan.plan_id": "Must be a UUID"}},
                )
            plan = self.session.get(Plan, plan_id)
        elif plan_data.get("plan_slug"):
            plan = self.session.exec(select(Plan).where(Plan.slug == plan_data["plan_slug"])).first()
        else:
            return None
        if plan is None or not plan.is_active:
            raise ValidationError("Selected plan does not exist", operation="register", context={"plan": plan_data})
        return plan

    def _find_existing(self, email: str, subdomain: str) -> Optional[Tenant]:
        matches = self.session.exec(
            select(Tenant).where(or_(Tenant.email == email, Tenant.subdomain == subdomain))
        ).all()
        if not matches:
            return None
        if len(matches) > 1:
            raise ValidationError(
                "Email and subdomain belong to different registrations",
                operation="register",
                context={"errors": {"subdomain": "Subdomain is already taken"}},
            )
        return matches[0]

    # Public API

    def create_from_registration(self, payload: Dict[str, Any]) -> Tenant:
        """Create a pending tenant, or update the in-progress one with the same email/subdomain"""
        details = self._validate(payload)
        try:
            existing = self._find_existing(details["email"], details["subdomain"])
            if existing is not None:
                self._check_resumable(existing, details)
                tenant = self._apply_registration(existing, details, payload)
                resumed = True
            else:
                tenant = Tenant(
                    name=details["name"],
                    email=details["email"],
                    subdomain=details["subdomain"],
                    created_at=self.clock(),
                )
                tenant = self._apply_registration(tenant, details, payload)
                resumed = False
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ValidationError(
                "Tenant email or subdomain already in use",
                operation="register", cause=e,
            )
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(tenant)
        logger.info(
            "Tenant registered",
            tenant_id=str(tenant.id),
            subdomain=tenant.subdomain,
            resumed=resumed,
        )
        self.bus.publish(TenantRegistered(tenant.id, tenant.subdomain, resumed))
        return tenant

    def update_from_registration(self, tenant: Tenant, payload: Dict[str, Any]) -> Tenant:
        """Resume an abandoned registration; metadata is merged, verification state kept"""
        details = self._validate(payload)
        self._check_resumable(tenant, details)
        try:
            tenant = self._apply_registration(tenant, details, payload)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ValidationError("Tenant email or subdomain already in use", tenant_id=tenant.id, operation="register", cause=e)
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(tenant)
        logger.info("Tenant registration updated", tenant_id=str(tenant.id))
        self.bus.publish(TenantRegistered(tenant.id, tenant.subdomain, True))
        return tenant

    def dispatch_provisioning(self, tenant: Tenant) -> Dict[str, Any]:
        """Hand the pending tenant to the provisioning worker"""
        if self.dispatcher is None:
            raise PreconditionError("No task dispatcher configured", tenant_id=tenant.id, operation="provision")
        logger.info("Dispatching tenant provisioning", tenant_id=str(tenant.id))
        return self.dispatcher.provision_tenant(tenant.id)

    def retry_provisioning(self, tenant: Tenant) -> Dict[str, Any]:
        """Operator retry of a failed provisioning run"""
        if tenant.status != TenantStatus.FAILED:
            raise PreconditionError(
                f"Only failed provisioning can be retried (tenant is {tenant.status.value})",
                tenant_id=tenant.id, operation="provision",
            )
        if self.dispatcher is None:
            raise PreconditionError("No task dispatcher configured", tenant_id=tenant.id, operation="provision")
        job = self.dispatcher.ledger.find(JobOperation.PROVISION_TENANT, tenant.id)
        if job is not None and job.is_finished():
            self.dispatcher.ledger.reset(job)
        logger.info("Retrying tenant provisioning", tenant_id=str(tenant.id))
        return self.dispatcher.provision_tenant(tenant.id)

    # Internals

    def _check_resumable(self, tenant: Tenant, details: Dict[str, Any]) -> None:
        if tenant.is_archived():
            raise PreconditionError(
                "Tenant is archived; restore it instead of registering again",
                tenant_id=tenant.id, operation="register",
            )
        if tenant.status not in RESUMABLE_STATUSES:
            raise ValidationError(
                "A tenant with this email or subdomain already exists",
                tenant_id=tenant.id,
                operation="register",
                context={"errors": {"email": "Already registered"}},
            )

    def _apply_registration(self, tenant: Tenant, details: Dict[str, Any], payload: Dict[str, Any]) -> Tenant:
        """Write registration fields; verification fields are never touched"""
        now = self.clock()
        account = payload.get("account") or {}
        plan_data = payload.get("plan") or {}
        trial = payload.get("trial")
        admin = payload.get("admin")

        plan = self._resolve_plan(plan_data)

        tenant.name = details["name"]
        tenant.email = details["email"]
        tenant.subdomain = details["subdomain"]
        if details.get("phone") is not None:
            tenant.phone = details["phone"]
        tenant.type = TenantType(account.get("type", tenant.type.value if tenant.type else TenantType.COMPANY.value))
        tenant.status = TenantStatus.PENDING

        if plan is not None:
            tenant.plan_id = plan.id
        if plan_data.get("billing_cycle"):
            tenant.subscription_plan = plan_data["billing_cycle"]

        modules = list(plan.modules) if plan is not None else list(tenant.modules or [])
        tenant.modules = clean_modules(modules + list(plan_data.get("modules") or []))

        if isinstance(trial, dict):
            trial_enabled = trial.get("enabled", True)
            trial_days = int(trial.get("days", self.trial_days))
        else:
            trial_enabled = bool(trial) if trial is not None else tenant.trial_ends_at is None
            trial_days = self.trial_days
        if trial_enabled and trial_days > 0:
            tenant.trial_ends_at = now + timedelta(days=trial_days)

        if admin:
            tenant.admin_data = dict(admin)

        extras = {k: v for k, v in details.items() if k not in COLUMN_DETAILS}
        tenant.merge_data({**extras, "registered_at": (tenant.data or {}).get("registered_at", now.isoformat())})
        tenant.registration_step = "completed"
        tenant.touch(now)

        self.session.add(tenant)
        self.session.flush()

        self._ensure_primary_domain(tenant)
        if plan is not None:
            self._ensure_subscription(tenant, plan)
        return tenant

    def primary_domain_name(self, tenant: Tenant) -> str:
        return f"{tenant.subdomain}.{self.central_domain}"

    def _ensure_primary_domain(self, tenant: Tenant) -> Domain:
        """Exactly one primary domain, built from the subdomain"""
        name = self.primary_domain_name(tenant)

        owner = self.session.exec(select(Domain).where(Domain.domain == name)).first()
        if owner is not None and owner.tenant_id != tenant.id:
            raise ValidationError(
                f"Domain {name} belongs to another tenant",
                tenant_id=tenant.id,
                operation="register",
                context={"errors": {"subdomain": "Subdomain is already taken"}},
            )

        domains = self.session.exec(select(Domain).where(Domain.tenant_id == tenant.id)).all()
        system_domain = None
        for domain in domains:
            if domain.domain == name:
                system_domain = domain
            elif not domain.is_custom:
                # Subdomain changed while resuming
                self.session.delete(domain)

        if system_domain is None:
            system_domain = Domain(
                tenant_id=tenant.id,
                domain=name,
                is_custom=False,
                status=DomainStatus.VERIFIED,
                verified_at=self.clock(),
                created_at=self.clock(),
            )

        custom_primary = [d for d in domains if d.is_custom and d.is_primary and d.is_verified()]
        if custom_primary:
            system_domain.is_primary = False
            for extra in custom_primary[1:]:
                extra.is_primary = False
                self.session.add(extra)
        else:
            system_domain.is_primary = True
            for domain in domains:
                if domain.is_custom and domain.is_primary:
                    domain.is_primary = False
                    self.session.add(domain)

        self.session.add(system_domain)
        self.session.flush()
        return system_domain

    def _ensure_subscription(self, tenant: Tenant, plan: Plan) -> Subscription:
        subscription = self.session.exec(
            select(Subscription).where(
                Subscription.tenant_id == tenant.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
        ).first()
        if subscription is None:
            subscription = Subscription(tenant_id=tenant.id, created_at=self.clock(), starts_at=self.clock())
        subscription.plan_id = plan.id
        subscription.billing_cycle = tenant.subscription_plan
        subscription.ends_at = tenant.trial_ends_at
        self.session.add(subscription)
        return subscription
