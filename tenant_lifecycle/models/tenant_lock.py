"""
Per-tenant lease lock
"""

from sqlmodel import Field, SQLModel
from datetime import datetime
import uuid


class TenantLock(SQLModel, table=True):
    """One row per locked tenant; the primary key makes acquisition exclusive"""

    __tablename__ = "tenant_locks"

    tenant_id: uuid.UUID = Field(primary_key=True)
    operation: str
    owner: str
    locked_at: datetime
    expires_at: datetime = Field(index=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
