"""
Backup encryption keys, stored apart from the backup records they protect
"""

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, Text
from datetime import datetime
import uuid

from tenant_lifecycle.core.clock import utcnow


class BackupKey(SQLModel, table=True):
    """Per-backup data key, wrapped with the master key"""

    __tablename__ = "backup_keys"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(index=True)
    backup_id: uuid.UUID = Field(index=True)
    encrypted_key: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
