"""
Backup key vault

Each encrypted backup gets its own Fernet data key. The data key is wrapped
with the master key and stored in `backup_keys`; backup records only carry
the key id.
"""

from typing import Optional
import base64
import hashlib
import uuid

from cryptography.fernet import Fernet, InvalidToken
from sqlmodel import Session
import structlog

from tenant_lifecycle.core.config import get_settings
from tenant_lifecycle.core.errors import NotFoundError, ResourcePostconditionError
from tenant_lifecycle.models.backup_key import BackupKey

logger = structlog.get_logger(__name__)


def derive_master_key(secret: str) -> bytes:
    """Fernet key derived from the application secret"""
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


class BackupKeyVault:
    """Issues, unwraps and destroys per-backup data keys"""

    def __init__(self, session: Session, master_key: Optional[str] = None):
        settings = get_settings()
        key = master_key or settings.BACKUP_MASTER_KEY
        self.session = session
        self._master = Fernet(key.encode("utf-8") if key else derive_master_key(settings.SECRET_KEY))

    def issue(self, tenant_id: uuid.UUID, backup_id: uuid.UUID) -> uuid.UUID:
        """Create a data key for the backup; returns its reference"""
        data_key = Fernet.generate_key()
        record = BackupKey(
            tenant_id=tenant_id,
            backup_id=backup_id,
            encrypted_key=self._master.encrypt(data_key).decode("utf-8"),
        )
        self.session.add(record)
        self.session.commit()
        logger.info("Backup key issued", tenant_id=str(tenant_id), backup_id=str(backup_id), key_id=str(record.id))
        return record.id

    def fernet_for(self, key_id: uuid.UUID) -> Fernet:
        record = self.session.get(BackupKey, key_id)
        if record is None:
            raise NotFoundError("Backup encryption key not found", operation="decrypt_backup", context={"key_id": str(key_id)})
        try:
            data_key = self._master.decrypt(record.encrypted_key.encode("utf-8"))
        except InvalidToken as e:
            raise ResourcePostconditionError(
                "Backup key could not be unwrapped with the master key",
                tenant_id=record.tenant_id, operation="decrypt_backup", cause=e,
            )
        return Fernet(data_key)

    def destroy(self, key_id: uuid.UUID) -> None:
        record = self.session.get(BackupKey, key_id)
        if record is not None:
            self.session.delete(record)
