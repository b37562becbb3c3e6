"""
Custom domains

Tenants may route their own hostnames to the platform. Ownership is proven
with a TXT record (`_tenant-verification.<domain> = tenant-verify=<code>`)
or a CNAME pointing at the tenant's system subdomain.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import re
import uuid

import dns.exception
import dns.resolver
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
import structlog

from tenant_lifecycle.core.clock import utcnow
from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import (
    NotFoundError, PreconditionError, TransientInfrastructureError, ValidationError
)
from tenant_lifecycle.models.domain import Domain, DomainStatus, SslStatus, VERIFICATION_RECORD_PREFIX
from tenant_lifecycle.models.tenant import Tenant

logger = structlog.get_logger(__name__)

DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*\.[a-z]{2,}$")

# First label reserved for platform infrastructure
RESERVED_LABELS = {
    "admin", "api", "app", "billing", "blog", "cdn", "docs", "help", "mail",
    "smtp", "pop", "imap", "ftp", "ssh", "support", "status", "www", "staging",
    "dev", "test", "platform", "register", "login", "dashboard", "install",
}

BLOCKED_PREFIXES = ("admin.", "api.", "www.", "mail.", "ftp.", "cdn.")


class DnsPythonLookup:
    """TXT/CNAME lookups through dnspython"""

    def __init__(self, resolver: Optional[dns.resolver.Resolver] = None, lifetime: float = 5.0):
        self.resolver = resolver or dns.resolver.Resolver()
        self.resolver.lifetime = lifetime

    def _answers(self, name: str, rdtype: str):
        try:
            return list(self.resolver.resolve(name, rdtype))
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except (dns.resolver.NoNameservers, dns.exception.Timeout) as e:
            raise TransientInfrastructureError(f"DNS lookup for {name} ({rdtype}) failed: {e}", cause=e)

    def txt(self, name: str) -> List[str]:
        return [
            b"".join(rdata.strings).decode("utf-8", "replace")
            for rdata in self._answers(name, "TXT")
        ]

    def cname(self, name: str) -> List[str]:
        return [rdata.target.to_text().rstrip(".") for rdata in self._answers(name, "CNAME")]


def normalize_domain(value: str) -> str:
    domain = re.sub(r"^https?://", "", value.strip(), flags=re.IGNORECASE)
    domain = re.sub(r"/.*$", "", domain)
    domain = re.sub(r"^www\.", "", domain, flags=re.IGNORECASE)
    return domain.lower().strip()


class CustomDomainService:
    """Registers, verifies and promotes tenant-owned domains"""

    def __init__(
        self,
        session: Session,
        lookup=None,
        clock: Callable[[], datetime] = utcnow,
        central_domain: Optional[str] = None
    ):
        self.session = session
        self._lookup = lookup
        self.clock = clock
        self.central_domain = (central_domain or get_settings().CENTRAL_DOMAIN).lower()

    @property
    def lookup(self):
        # Resolver reads the system config, so build it on first use
        if self._lookup is None:
            self._lookup = DnsPythonLookup()
        return self._lookup

    def _get_domain(self, domain_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Domain:
        domain = self.session.get(Domain, domain_id)
        if domain is None or (tenant_id is not None and domain.tenant_id != tenant_id):
            raise NotFoundError("Domain not found", tenant_id=tenant_id, operation="domain")
        return domain

    def _system_domain(self, tenant_id: uuid.UUID) -> Optional[Domain]:
        return self.session.exec(
            select(Domain).where(Domain.tenant_id == tenant_id).where(Domain.is_custom == False)  # noqa: E712
        ).first()

    def validate(self, domain: str, tenant_id: Optional[uuid.UUID] = None) -> None:
        if not DOMAIN_RE.match(domain):
            raise ValidationError("Invalid domain format", tenant_id=tenant_id, operation="add_domain",
                                  context={"domain": domain})
        if domain.split(".")[0] in RESERVED_LABELS:
            raise ValidationError("This domain pattern is reserved", tenant_id=tenant_id, operation="add_domain",
                                  context={"domain": domain})
        for prefix in BLOCKED_PREFIXES:
            if domain.startswith(prefix):
                raise ValidationError(
                    f"Custom domains cannot start with '{prefix}'",
                    tenant_id=tenant_id, operation="add_domain", context={"domain": domain},
                )
        if domain == self.central_domain or domain.endswith(f".{self.central_domain}"):
            raise ValidationError("You cannot use a subdomain of the platform domain",
                                  tenant_id=tenant_id, operation="add_domain", context={"domain": domain})

    def list_domains(self, tenant_id: uuid.UUID) -> List[Domain]:
        return list(self.session.exec(
            select(Domain).where(Domain.tenant_id == tenant_id).order_by(Domain.created_at)
        ).all())

    def add_domain(self, tenant_id: uuid.UUID, domain: str) -> Domain:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", tenant_id=tenant_id, operation="add_domain")
        if tenant.is_archived():
            raise PreconditionError("Cannot add a domain to an archived tenant", tenant_id=tenant_id,
                                    operation="add_domain")

        name = normalize_domain(domain)
        self.validate(name, tenant_id)
        if self.session.exec(select(Domain).where(Domain.domain == name)).first() is not None:
            raise ValidationError("This domain is already registered", tenant_id=tenant_id,
                                  operation="add_domain", context={"domain": name})

        record = Domain(
            tenant_id=tenant_id,
            domain=name,
            is_primary=False,
            is_custom=True,
            status=DomainStatus.PENDING,
            dns_verification_code=str(uuid.uuid4()),
            ssl_status=SslStatus.PENDING,
            created_at=self.clock(),
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ValidationError("This domain is already registered", tenant_id=tenant_id,
                                  operation="add_domain", cause=e, context={"domain": name})
        self.session.refresh(record)
        logger.info("Custom domain added", tenant_id=str(tenant_id), domain=name)
        return record

    def _txt_verified(self, domain: Domain) -> bool:
        for name in (domain.verification_txt_record_name(), domain.domain):
            if any(domain.dns_verification_code in value for value in self.lookup.txt(name)):
                return True
        return False

    def _cname_verified(self, domain: Domain) -> bool:
        system = self._system_domain(domain.tenant_id)
        if system is None:
            return False
        return system.domain in self.lookup.cname(domain.domain)

    def verify_dns(self, domain_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        domain = self._get_domain(domain_id, tenant_id)
        if domain.is_verified():
            return {"success": True, "message": "Domain already verified", "domain": domain.model_dump(mode="json")}

        now = self.clock()
        errors: List[str] = []
        try:
            verified = self._txt_verified(domain) or self._cname_verified(domain)
        except TransientInfrastructureError as e:
            verified = False
            errors.append(e.message)

        if verified:
            domain.mark_verified(now)
            self.session.add(domain)
            self.session.commit()
            self.session.refresh(domain)
            logger.info("Custom domain verified", tenant_id=str(domain.tenant_id), domain=domain.domain)
            return {"success": True, "message": "Domain verified", "domain": domain.model_dump(mode="json")}

        if not errors:
            errors = [
                "No valid DNS records found.",
                f"Please add a TXT record: {domain.verification_txt_record_name()} = {domain.expected_txt_record_value()}",
            ]
        domain.record_verification_errors(errors, now)
        self.session.add(domain)
        self.session.commit()
        logger.info("Custom domain verification failed", tenant_id=str(domain.tenant_id), domain=domain.domain)
        return {
            "success": False,
            "message": "DNS verification failed",
            "errors": errors,
            "instructions": self.verification_instructions(domain),
        }

    def verification_instructions(self, domain: Domain) -> Dict[str, Any]:
        system = self._system_domain(domain.tenant_id)
        return {
            "txt": {
                "record_type": "TXT",
                "host": VERIFICATION_RECORD_PREFIX,
                "value": domain.expected_txt_record_value(),
                "ttl": 3600,
            },
            "cname": {
                "record_type": "CNAME",
                "host": "@",
                "value": system.domain if system else None,
                "ttl": 3600,
            },
        }

    def verify_pending_domains(self) -> Dict[str, Any]:
        """Scheduler sweep over pending custom domains"""
        pending_ids = self.session.exec(
            select(Domain.id)
            .where(Domain.status == DomainStatus.PENDING)
            .where(Domain.is_custom == True)  # noqa: E712
        ).all()
        results = {"checked": 0, "verified": 0}
        for domain_id in pending_ids:
            results["checked"] += 1
            if self.verify_dns(domain_id)["success"]:
                results["verified"] += 1
        logger.info("Pending domains checked", **results)
        return results

    def set_primary(self, domain_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Domain:
        domain = self._get_domain(domain_id, tenant_id)
        if not domain.is_verified():
            raise PreconditionError("Only verified domains can be set as primary",
                                    tenant_id=domain.tenant_id, operation="set_primary")
        now = self.clock()
        for other in self.list_domains(domain.tenant_id):
            if other.id != domain.id and other.is_primary:
                other.is_primary = False
                other.updated_at = now
                self.session.add(other)
        domain.make_primary(now)
        self.session.add(domain)
        self.session.commit()
        self.session.refresh(domain)
        logger.info("Primary domain changed", tenant_id=str(domain.tenant_id), domain=domain.domain)
        return domain

    def remove_domain(self, domain_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> None:
        domain = self._get_domain(domain_id, tenant_id)
        if not domain.is_custom:
            raise PreconditionError("Cannot remove system-generated subdomain",
                                    tenant_id=domain.tenant_id, operation="remove_domain")
        if domain.is_primary:
            raise PreconditionError("Cannot remove primary domain. Set another domain as primary first.",
                                    tenant_id=domain.tenant_id, operation="remove_domain")
        self.session.delete(domain)
        self.session.commit()
        logger.info("Custom domain removed", tenant_id=str(domain.tenant_id), domain=domain.domain)

    def provision_ssl(self, domain_id: uuid.UUID, tenant_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        domain = self._get_domain(domain_id, tenant_id)
        if not domain.is_verified():
            return {"success": False, "message": "Domain must be verified before SSL provisioning"}
        domain.ssl_status = SslStatus.PROVISIONING
        domain.updated_at = self.clock()
        self.session.add(domain)
        self.session.commit()
        self.session.refresh(domain)
        logger.info("SSL provisioning requested", tenant_id=str(domain.tenant_id), domain=domain.domain)
        return {"success": True, "message": "SSL provisioning initiated", "domain": domain.model_dump(mode="json")}
