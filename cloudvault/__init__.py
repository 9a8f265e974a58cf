"""CloudVault - versioned configuration and secrets management."""

__version__ = "0.1.0"

import logging
from typing import Optional

import httpx

from cloudvault.audit.logger import AuditLog
from cloudvault.configuration.store import ConfigurationStore
from cloudvault.configuration.templates import ConfigurationTemplateService
from cloudvault.configuration.validator import ConfigurationValidator
from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.crypto.utils import load_master_key
from cloudvault.models import AppConfig
from cloudvault.secrets.access import AccessControlGate, PermissionOracle
from cloudvault.secrets.connector import VaultConnector
from cloudvault.secrets.rotation import RotationScheduler
from cloudvault.secrets.service import SecretsService
from cloudvault.storage.base import StorageBackend
from cloudvault.storage.local import SQLiteStorage

logger = logging.getLogger(__name__)


class CloudVault:
    """All services wired over one storage backend.

    Configuration services work as soon as the object exists. Secret
    operations need :meth:`start`, which connects to the backend and arms
    rotation timers for auto-rotating secrets.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        storage: Optional[StorageBackend] = None,
        audit_path: Optional[str] = None,
        master_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        has_permission: Optional[PermissionOracle] = None,
    ) -> None:
        self.config = config or AppConfig()

        if storage is None:
            storage = SQLiteStorage(self.config.storage.path)
            storage.initialize()
        self.storage = storage

        self.encryption = EncryptionEngine(
            load_master_key(
                master_key,
                key_env=self.config.encryption.key_env,
                use_keyring=self.config.encryption.use_keyring,
                environment=self.config.environment,
            )
        )
        self.validator = ConfigurationValidator()
        self.configurations = ConfigurationStore(self.storage, self.encryption, self.validator)
        self.templates = ConfigurationTemplateService(self.storage, self.configurations, self.validator)

        self.connector = VaultConnector(self.config.vault, transport=transport)
        self.audit = AuditLog(
            self.storage,
            mirror_path=audit_path,
            enabled=self.config.audit.enabled,
            log_reads=self.config.audit.log_reads,
        )
        self.access = AccessControlGate(self.storage, self.connector, has_permission)

        self.scheduler: Optional[RotationScheduler] = None
        if self.config.rotation.enabled:
            self.scheduler = RotationScheduler(self.storage, max_workers=self.config.rotation.max_workers)
        self.secrets = SecretsService(
            self.storage, self.connector, self.audit, self.access, self.scheduler
        )

    def start(self) -> None:
        self.connector.connect()
        if self.scheduler is not None:
            self.scheduler.start()
            restored = self.scheduler.restore_schedules()
            if restored:
                logger.info("Restored %d rotation schedule(s)", restored)

    def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        self.connector.close()
        self.storage.close()

    def __enter__(self) -> "CloudVault":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


__all__ = ["CloudVault", "__version__"]
