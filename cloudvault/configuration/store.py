import json
import logging
import uuid
from typing import Any, Optional, Union

from cloudvault.configuration.formats import dump_configurations, parse_import
from cloudvault.configuration.validator import ConfigurationValidator
from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.errors import (
    CloudVaultError,
    ConflictError,
    DecryptionError,
    NotFoundError,
    ValidationError,
)
from cloudvault.models import (
    REDACTED,
    SYSTEM_PRINCIPAL,
    BulkItem,
    BulkItemError,
    BulkResult,
    Configuration,
    ConfigurationBulkOperation,
    ConfigurationCreate,
    ConfigurationExport,
    ConfigurationFilter,
    ConfigurationImport,
    ConfigurationRollback,
    ConfigurationType,
    ConfigurationUpdate,
    ConfigurationVersion,
    parse_model,
    utc_now,
)
from cloudvault.storage.base import StorageBackend
from cloudvault.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

# these types are JSON-encoded before encryption so they come back typed
_JSON_ENCODED_TYPES = {ConfigurationType.NUMBER, ConfigurationType.BOOLEAN, ConfigurationType.JSON}


def _bulk_error(key: str, error: CloudVaultError) -> BulkItemError:
    violations = [v.model_dump() for v in getattr(error, "violations", [])]
    return BulkItemError(key=key, code=error.code, message=error.message, violations=violations)


class ConfigurationStore:
    """Typed, versioned key/value configuration scoped to environments.

    Values flagged ``is_secret`` are encrypted with :class:`EncryptionEngine`
    before they reach storage, on the configuration row and on every version
    row alike. Reads decrypt transparently; a value that fails to decrypt is
    logged and returned as stored so one bad key cannot break a listing.
    """

    def __init__(
        self,
        storage: StorageBackend,
        encryption: EncryptionEngine,
        validator: Optional[ConfigurationValidator] = None,
    ) -> None:
        self.storage = storage
        self.encryption = encryption
        self.validator = validator or ConfigurationValidator()
        self._locks = KeyedLock()

    # value sealing

    def _seal(self, value: Any, type_: ConfigurationType) -> str:
        plaintext = json.dumps(value) if type_ in _JSON_ENCODED_TYPES else value
        return self.encryption.encrypt(plaintext)

    def _unseal_strict(self, stored: Any, type_: ConfigurationType) -> Any:
        plaintext = self.encryption.decrypt(stored)
        if type_ in _JSON_ENCODED_TYPES:
            try:
                return json.loads(plaintext)
            except ValueError as e:
                raise DecryptionError(f"Decrypted value is not valid JSON: {e}") from e
        return plaintext

    def _unseal(self, stored: Any, type_: ConfigurationType, configuration_id: str) -> Any:
        try:
            return self._unseal_strict(stored, type_)
        except DecryptionError as e:
            logger.warning("Failed to decrypt configuration %s: %s", configuration_id, e)
            return stored

    def _reveal(self, config: Configuration) -> Configuration:
        if not config.is_secret:
            return config
        return config.model_copy(update={"value": self._unseal(config.value, config.type, config.id)})

    def _redact(self, config: Configuration) -> Configuration:
        if not config.is_secret:
            return config
        return config.model_copy(update={"value": REDACTED})

    # validation

    def _check(self, config: ConfigurationCreate) -> None:
        violations = self.validator.validate_configuration(config)
        if violations:
            raise ValidationError("Configuration validation failed", violations)

    def validate_configuration(
        self, config: Union[ConfigurationCreate, dict[str, Any]]
    ) -> tuple[bool, list[str]]:
        violations = self.validator.validate_configuration(config)
        return not violations, [v.message for v in violations]

    def validate_configuration_value(self, type_: Union[ConfigurationType, str], value: Any) -> bool:
        return self.validator.validate_value(ConfigurationType(type_), value)

    # single-entity operations

    def create(
        self,
        config: Union[ConfigurationCreate, dict[str, Any]],
        change_description: Optional[str] = None,
    ) -> Configuration:
        if isinstance(config, dict):
            config = parse_model(ConfigurationCreate, config)
        self._check(config)

        type_ = ConfigurationType(config.type)
        with self._locks.hold(f"{config.environment_id}/{config.key}"):
            if self.storage.get_configuration_by_key(config.environment_id, config.key):
                raise ConflictError(
                    f"Configuration with key '{config.key}' already exists in "
                    f"environment '{config.environment_id}'"
                )

            now = utc_now()
            record = Configuration(
                id=str(uuid.uuid4()),
                environment_id=config.environment_id,
                name=config.name,
                key=config.key,
                value=self._seal(config.value, type_) if config.is_secret else config.value,
                type=type_,
                is_secret=config.is_secret,
                version=1,
                description=config.description,
                tags=config.tags,
                created_by=config.created_by,
                created_at=now,
                updated_at=now,
            )
            self.storage.create_configuration(record, change_description)

        logger.debug("Created configuration %s (%s/%s)", record.id, record.environment_id, record.key)
        return self._reveal(record)

    def get(self, configuration_id: str) -> Optional[Configuration]:
        config = self.storage.get_configuration(configuration_id)
        return self._reveal(config) if config else None

    def get_by_key(self, environment_id: str, key: str) -> Optional[Configuration]:
        config = self.storage.get_configuration_by_key(environment_id, key)
        return self._reveal(config) if config else None

    def update(
        self,
        configuration_id: str,
        update: Union[ConfigurationUpdate, dict[str, Any]],
        updated_by: str = SYSTEM_PRINCIPAL,
    ) -> Configuration:
        if isinstance(update, dict):
            update = parse_model(ConfigurationUpdate, update)

        with self._locks.hold(configuration_id):
            existing = self.storage.get_configuration(configuration_id)
            if not existing:
                raise NotFoundError(f"Configuration with id {configuration_id} not found")

            self._check(
                ConfigurationCreate(
                    environment_id=existing.environment_id,
                    name=existing.name,
                    key=existing.key,
                    value=update.value,
                    type=existing.type.value,
                    is_secret=existing.is_secret,
                    tags=existing.tags,
                )
            )

            stored_value = (
                self._seal(update.value, existing.type) if existing.is_secret else update.value
            )
            updated = self.storage.update_configuration_value(
                configuration_id,
                expected_version=existing.version,
                value=stored_value,
                change_description=update.change_description,
                updated_by=updated_by,
            )

        logger.debug("Updated configuration %s to version %d", configuration_id, updated.version)
        return self._reveal(updated)

    def delete(self, configuration_id: str) -> None:
        with self._locks.hold(configuration_id):
            if not self.storage.delete_configuration(configuration_id):
                raise NotFoundError(f"Configuration with id {configuration_id} not found")
        self._locks.discard(configuration_id)
        logger.debug("Deleted configuration %s", configuration_id)

    def search(
        self, query: str, config_filter: Optional[ConfigurationFilter] = None
    ) -> list[Configuration]:
        return [self._reveal(c) for c in self.storage.search_configurations(query, config_filter)]

    def get_environment_configurations(
        self, environment_id: str, include_secrets: bool = True
    ) -> list[Configuration]:
        configs = self.storage.find_configurations(ConfigurationFilter(environment_id=environment_id))
        prepare = self._reveal if include_secrets else self._redact
        return [prepare(c) for c in configs]

    # versions

    def _reveal_version(self, config: Configuration, version: ConfigurationVersion) -> ConfigurationVersion:
        if not config.is_secret:
            return version
        value = self._unseal(version.value, config.type, config.id)
        return version.model_copy(update={"value": value})

    def get_versions(self, configuration_id: str) -> list[ConfigurationVersion]:
        config = self.storage.get_configuration(configuration_id)
        if not config:
            raise NotFoundError(f"Configuration with id {configuration_id} not found")
        return [
            self._reveal_version(config, v)
            for v in self.storage.find_configuration_versions(configuration_id)
        ]

    def get_version(self, configuration_id: str, version: int) -> Optional[ConfigurationVersion]:
        config = self.storage.get_configuration(configuration_id)
        if not config:
            return None
        record = self.storage.find_configuration_version(configuration_id, version)
        return self._reveal_version(config, record) if record else None

    def rollback(self, rollback: Union[ConfigurationRollback, dict[str, Any]]) -> Configuration:
        if isinstance(rollback, dict):
            rollback = parse_model(ConfigurationRollback, rollback)

        config = self.storage.get_configuration(rollback.configuration_id)
        if not config:
            raise NotFoundError(f"Configuration with id {rollback.configuration_id} not found")

        target = self.storage.find_configuration_version(
            rollback.configuration_id, rollback.target_version
        )
        if not target:
            raise NotFoundError(
                f"Version {rollback.target_version} not found for configuration "
                f"{rollback.configuration_id}"
            )

        value = self._unseal_strict(target.value, config.type) if config.is_secret else target.value
        description = f"Rollback to version {rollback.target_version}"
        if rollback.reason:
            description = f"{description}: {rollback.reason}"

        return self.update(
            rollback.configuration_id,
            ConfigurationUpdate(value=value, change_description=description),
            updated_by=rollback.created_by,
        )

    # bulk

    def _create_from_item(
        self, item: BulkItem, environment_id: str, created_by: str, change_description: Optional[str]
    ) -> Configuration:
        return self.create(
            ConfigurationCreate(
                environment_id=environment_id,
                name=item.name or item.key,
                key=item.key,
                value=item.value,
                type=item.type or ConfigurationType.STRING.value,
                is_secret=item.is_secret,
                description=item.description or "Bulk import configuration",
                tags=item.tags,
                created_by=created_by,
            ),
            change_description=change_description,
        )

    def bulk_create(self, operation: Union[ConfigurationBulkOperation, dict[str, Any]]) -> BulkResult:
        """Create every item independently; failures land in ``result.errors``."""
        if isinstance(operation, dict):
            operation = parse_model(ConfigurationBulkOperation, operation)

        result = BulkResult()
        for item in operation.configurations:
            try:
                result.items.append(
                    self._create_from_item(
                        item,
                        operation.environment_id,
                        operation.created_by,
                        operation.change_description,
                    )
                )
            except CloudVaultError as e:
                logger.warning("Failed to create configuration %s: %s", item.key, e.message)
                result.errors.append(_bulk_error(item.key, e))
        return result

    def bulk_update(
        self,
        updates: list[tuple[str, Union[ConfigurationUpdate, dict[str, Any]]]],
        updated_by: str = SYSTEM_PRINCIPAL,
    ) -> BulkResult:
        result = BulkResult()
        for configuration_id, update in updates:
            try:
                result.items.append(self.update(configuration_id, update, updated_by=updated_by))
            except CloudVaultError as e:
                logger.warning("Failed to update configuration %s: %s", configuration_id, e.message)
                result.errors.append(_bulk_error(configuration_id, e))
        return result

    def bulk_delete(self, configuration_ids: list[str]) -> BulkResult:
        result = BulkResult()
        for configuration_id in configuration_ids:
            try:
                self.delete(configuration_id)
                result.items.append(configuration_id)
            except CloudVaultError as e:
                logger.warning("Failed to delete configuration %s: %s", configuration_id, e.message)
                result.errors.append(_bulk_error(configuration_id, e))
        return result

    # export / import

    def export(self, export: Union[ConfigurationExport, dict[str, Any]]) -> str:
        if isinstance(export, dict):
            export = parse_model(ConfigurationExport, export)

        config_filter = (export.filter or ConfigurationFilter()).model_copy(
            update={"environment_id": export.environment_id}
        )
        configs = self.storage.find_configurations(config_filter)
        prepare = self._reveal if export.include_secrets else self._redact
        return dump_configurations([prepare(c) for c in configs], export.format)

    def import_configurations(self, data: Union[ConfigurationImport, dict[str, Any]]) -> BulkResult:
        if isinstance(data, dict):
            data = parse_model(ConfigurationImport, data)

        parsed = parse_import(data.format, data.data)
        items = parsed.items
        for error in parsed.errors:
            logger.warning("Skipping import entry %s: %s", error.key, error.message)
        change_description = data.change_description or "Bulk import"

        if not data.overwrite_existing:
            result = self.bulk_create(
                ConfigurationBulkOperation(
                    environment_id=data.environment_id,
                    configurations=items,
                    change_description=change_description,
                    created_by=data.created_by,
                )
            )
            result.errors[:0] = parsed.errors
            return result

        result = BulkResult(errors=parsed.errors)
        for item in items:
            try:
                existing = self.storage.get_configuration_by_key(data.environment_id, item.key)
                if existing:
                    updated = self.update(
                        existing.id,
                        ConfigurationUpdate(value=item.value, change_description=change_description),
                        updated_by=data.created_by,
                    )
                    result.items.append(updated)
                else:
                    result.items.append(
                        self._create_from_item(
                            item, data.environment_id, data.created_by, change_description
                        )
                    )
            except CloudVaultError as e:
                logger.warning("Failed to import configuration %s: %s", item.key, e.message)
                result.errors.append(_bulk_error(item.key, e))
        return result

    # defined last: the name shadows the builtin inside the class body
    def list(self, config_filter: Optional[ConfigurationFilter] = None) -> "list[Configuration]":
        return [self._reveal(c) for c in self.storage.find_configurations(config_filter)]
