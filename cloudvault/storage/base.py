from abc import ABC, abstractmethod
from typing import Any, Optional

from cloudvault.models import (
    Configuration,
    ConfigurationFilter,
    ConfigurationTemplate,
    ConfigurationVersion,
    Secret,
    SecretAccessPolicy,
    SecretAuditLog,
    SecretFilter,
    SecretVersion,
)


class StorageBackend(ABC):
    """Durable, transactional record store for the engine.

    Implementations must make version bumps compare-and-swap and must delete
    a parent's version history in the same transaction as the parent.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Initialize storage backend (create tables, files, etc.)."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage backend connections."""
        pass

    # configurations

    @abstractmethod
    def create_configuration(
        self, config: Configuration, change_description: Optional[str] = None
    ) -> Configuration:
        """Insert a configuration together with its version 1 record.

        Raises:
            ConflictError: If (environment_id, key) already exists
        """
        pass

    @abstractmethod
    def get_configuration(self, configuration_id: str) -> Optional[Configuration]:
        pass

    @abstractmethod
    def get_configuration_by_key(self, environment_id: str, key: str) -> Optional[Configuration]:
        pass

    @abstractmethod
    def update_configuration_value(
        self,
        configuration_id: str,
        expected_version: int,
        value: Any,
        change_description: Optional[str],
        updated_by: str,
    ) -> Configuration:
        """Store a new value and append its version record atomically.

        Args:
            configuration_id: Configuration id
            expected_version: Version the caller read; the write only applies if unchanged
            value: Value as persisted (ciphertext for secrets)
            change_description: Stored on the new version record
            updated_by: Principal recorded on the version record

        Returns:
            The updated Configuration, with version == expected_version + 1

        Raises:
            NotFoundError: If the configuration does not exist
            ConcurrentModificationError: If the stored version differs from expected_version
        """
        pass

    @abstractmethod
    def delete_configuration(self, configuration_id: str) -> bool:
        """Delete a configuration and all its versions.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    def find_configurations(
        self, config_filter: Optional[ConfigurationFilter] = None
    ) -> list[Configuration]:
        pass

    @abstractmethod
    def search_configurations(
        self, query: str, config_filter: Optional[ConfigurationFilter] = None
    ) -> list[Configuration]:
        """Case-insensitive match on name, key or description, narrowed by the filter."""
        pass

    @abstractmethod
    def find_configuration_versions(self, configuration_id: str) -> list[ConfigurationVersion]:
        """Version records, oldest first."""
        pass

    @abstractmethod
    def find_configuration_version(
        self, configuration_id: str, version: int
    ) -> Optional[ConfigurationVersion]:
        pass

    # templates

    @abstractmethod
    def create_template(self, template: ConfigurationTemplate) -> ConfigurationTemplate:
        pass

    @abstractmethod
    def get_template(self, template_id: str) -> Optional[ConfigurationTemplate]:
        pass

    @abstractmethod
    def get_template_by_name(self, name: str) -> Optional[ConfigurationTemplate]:
        pass

    @abstractmethod
    def update_template(self, template_id: str, updates: dict[str, Any]) -> ConfigurationTemplate:
        pass

    @abstractmethod
    def delete_template(self, template_id: str) -> bool:
        pass

    @abstractmethod
    def list_templates(self) -> list[ConfigurationTemplate]:
        pass

    # secrets

    @abstractmethod
    def create_secret(self, secret: Secret) -> Secret:
        pass

    @abstractmethod
    def get_secret(self, secret_id: str) -> Optional[Secret]:
        pass

    @abstractmethod
    def get_secret_by_path(self, path: str) -> Optional[Secret]:
        pass

    @abstractmethod
    def update_secret(self, secret_id: str, updates: dict[str, Any]) -> Secret:
        """Update non-versioned secret fields (name, tags, timestamps, ...)."""
        pass

    @abstractmethod
    def delete_secret(self, secret_id: str) -> bool:
        pass

    @abstractmethod
    def find_secrets(self, secret_filter: Optional[SecretFilter] = None) -> list[Secret]:
        pass

    @abstractmethod
    def search_secrets(
        self, query: str, secret_filter: Optional[SecretFilter] = None
    ) -> list[Secret]:
        pass

    @abstractmethod
    def record_secret_version(
        self, secret_id: str, expected_version: int, version: SecretVersion
    ) -> SecretVersion:
        """Bump the secret's version and insert the new active SecretVersion.

        Raises:
            NotFoundError: If the secret does not exist
            ConcurrentModificationError: If the stored version differs from expected_version
        """
        pass

    @abstractmethod
    def find_secret_versions(self, secret_id: str) -> list[SecretVersion]:
        pass

    @abstractmethod
    def find_secret_version(self, secret_id: str, version: int) -> Optional[SecretVersion]:
        pass

    # access policies

    @abstractmethod
    def create_access_policy(self, policy: SecretAccessPolicy) -> SecretAccessPolicy:
        pass

    @abstractmethod
    def find_access_policies(
        self, secret_id: str, principal_id: Optional[str] = None
    ) -> list[SecretAccessPolicy]:
        pass

    @abstractmethod
    def delete_access_policies(self, secret_id: str, principal_id: str) -> list[SecretAccessPolicy]:
        """Delete a principal's grants on a secret, returning what was removed."""
        pass

    # audit

    @abstractmethod
    def append_audit_log(self, entry: SecretAuditLog) -> SecretAuditLog:
        """Append an entry; the returned copy carries the assigned id."""
        pass

    @abstractmethod
    def last_audit_log(self) -> Optional[SecretAuditLog]:
        pass

    @abstractmethod
    def find_audit_logs(
        self, secret_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[SecretAuditLog]:
        """Most recent first."""
        pass

    @abstractmethod
    def iter_audit_logs(self) -> list[SecretAuditLog]:
        """Every entry in append order."""
        pass
