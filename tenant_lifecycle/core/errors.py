"""
Typed errors raised by the tenant lifecycle services

Every error carries the tenant, the operation and the underlying cause so
that failures can be written to the audit trail as-is.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import uuid


class LifecycleError(Exception):
    """Base class for all lifecycle failures"""

    error_type = "lifecycle_error"

    def __init__(
        self,
        message: str,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id
        self.operation = operation
        self.cause = cause
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Audit-friendly representation"""
        data = {
            "error": self.message,
            "error_type": self.error_type,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "operation": self.operation,
        }
        if self.cause is not None:
            data["cause"] = f"{self.cause.__class__.__name__}: {self.cause}"
        if self.context:
            data["context"] = self.context
        return data


class ValidationError(LifecycleError):
    """Malformed input; caller can fix and resubmit"""

    error_type = "validation_error"


class NotFoundError(LifecycleError):
    """Referenced tenant or record does not exist"""

    error_type = "not_found"


class PreconditionError(LifecycleError):
    """Workflow state does not allow the operation"""

    error_type = "precondition_failed"


class TenantNotArchivedError(PreconditionError):
    error_type = "tenant_not_archived"


class RetentionNotExpiredError(PreconditionError):
    error_type = "retention_not_expired"

    def __init__(self, message: str, *, eligible_at: datetime, **kwargs):
        super().__init__(message, **kwargs)
        self.eligible_at = eligible_at

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["eligible_at"] = self.eligible_at.isoformat()
        return data


class TenantBusyError(PreconditionError):
    """Another state transition holds the tenant lock"""

    error_type = "tenant_busy"


class ResourcePostconditionError(LifecycleError):
    """An infrastructure step did not reach its required end state.

    Never retried automatically; needs an operator.
    """

    error_type = "resource_postcondition_failed"


class TransientInfrastructureError(LifecycleError):
    """Network or storage unavailability; safe to retry with backoff"""

    error_type = "transient_infrastructure_error"
