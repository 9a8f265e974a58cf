import hashlib
import logging
import re
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from cloudvault.audit.logger import AuditLog
from cloudvault.errors import (
    CloudVaultError,
    NotFoundError,
    PermissionDeniedError,
    RotationDisabledError,
    RotationInProgressError,
    SecretRetrievalError,
    UnknownRotationTypeError,
)
from cloudvault.models import (
    SYSTEM_PRINCIPAL,
    AccessPolicyRequest,
    RotationConfig,
    RotationStatus,
    Secret,
    SecretAccessPolicy,
    SecretAction,
    SecretAuditLog,
    SecretCreate,
    SecretFilter,
    SecretMetadata,
    SecretPermission,
    SecretUpdate,
    SecretVersion,
    parse_model,
    utc_now,
)
from cloudvault.secrets.access import AccessControlGate
from cloudvault.secrets.connector import VaultConnector
from cloudvault.secrets.rotation import RotationScheduler
from cloudvault.storage.base import StorageBackend
from cloudvault.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def generate_secret_path(environment_id: str, name: str) -> str:
    return f"environments/{environment_id}/secrets/{_UNSAFE_NAME_CHARS.sub('_', name)}"


def calculate_checksum(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class SecretsService:
    """First-class secrets whose bytes live only in the external backend.

    Local storage keeps metadata, SHA-256 checksums and the backend version
    each local version points at. Every value read and mutation is checked
    against :class:`AccessControlGate` and recorded in the :class:`AuditLog`,
    denied and failed attempts included.
    """

    def __init__(
        self,
        storage: StorageBackend,
        connector: VaultConnector,
        audit: AuditLog,
        access: AccessControlGate,
        scheduler: Optional[RotationScheduler] = None,
    ) -> None:
        self.storage = storage
        self.connector = connector
        self.audit = audit
        self.access = access
        self.scheduler: Optional[RotationScheduler] = None
        self._locks = KeyedLock()
        if scheduler is not None:
            self.bind_scheduler(scheduler)

    def bind_scheduler(self, scheduler: RotationScheduler) -> None:
        self.scheduler = scheduler
        scheduler.bind(self)

    def _require_scheduler(self) -> RotationScheduler:
        if self.scheduler is None:
            raise RotationDisabledError("No rotation scheduler is configured")
        return self.scheduler

    def _get(self, secret_id: str) -> Secret:
        secret = self.storage.get_secret(secret_id)
        if not secret:
            raise NotFoundError(f"Secret with ID {secret_id} not found")
        return secret

    def _require(
        self,
        secret_id: str,
        principal_id: str,
        permission: SecretPermission,
        action: SecretAction,
    ) -> None:
        if self.access.check_permission(secret_id, principal_id, permission):
            return
        message = f"Principal '{principal_id}' lacks '{permission.value}' on secret {secret_id}"
        self.audit.record(secret_id, principal_id, action, success=False, error_message=message)
        raise PermissionDeniedError(message)

    def _check_rotation_type(self, config: Optional[RotationConfig]) -> None:
        if config and config.enabled and self.scheduler is not None:
            if config.type not in self.scheduler.registry:
                raise UnknownRotationTypeError(f"No rotation handler found for type {config.type}")

    # metadata

    def create_secret(self, request: Union[SecretCreate, dict[str, Any]]) -> Secret:
        if isinstance(request, dict):
            request = parse_model(SecretCreate, request)
        self._check_rotation_type(request.rotation_config)

        now = utc_now()
        secret = Secret(
            id=str(uuid.uuid4()),
            name=request.name,
            path=generate_secret_path(request.environment_id, request.name),
            environment_id=request.environment_id,
            type=request.type,
            description=request.description,
            version=1,
            rotation_config=request.rotation_config,
            tags=request.tags,
            created_by=request.created_by,
            created_at=now,
            updated_at=now,
        )
        self.storage.create_secret(secret)
        self.audit.record(secret.id, request.created_by, SecretAction.CREATE, metadata={"path": secret.path})

        if request.rotation_config and request.rotation_config.auto_rotate and self.scheduler is not None:
            self.scheduler.schedule_rotation(secret.id, request.rotation_config)

        logger.info("Created secret %s at %s", secret.id, secret.path)
        return secret

    def get_secret(self, secret_id: str) -> Optional[Secret]:
        return self.storage.get_secret(secret_id)

    def get_secret_by_path(self, path: str) -> Optional[Secret]:
        return self.storage.get_secret_by_path(path)

    def update_secret(
        self,
        secret_id: str,
        update: Union[SecretUpdate, dict[str, Any]],
        principal_id: str = SYSTEM_PRINCIPAL,
    ) -> Secret:
        if isinstance(update, dict):
            update = parse_model(SecretUpdate, update)

        self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.UPDATE, SecretAction.UPDATE)
        self._check_rotation_type(update.rotation_config)

        changes = update.model_dump(exclude_none=True)
        if update.rotation_config is not None:
            changes["rotation_config"] = update.rotation_config

        with self._locks.hold(secret_id):
            updated = self.storage.update_secret(secret_id, changes)

        self.audit.record(
            secret_id, principal_id, SecretAction.UPDATE, metadata={"fields": sorted(changes)}
        )
        if update.rotation_config is not None and self.scheduler is not None:
            self.scheduler.schedule_rotation(secret_id, update.rotation_config)
        return updated

    def delete_secret(self, secret_id: str, principal_id: str = SYSTEM_PRINCIPAL) -> None:
        secret = self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.DELETE, SecretAction.DELETE)

        if self.scheduler is not None:
            self.scheduler.cancel_rotation(secret_id)

        try:
            self.connector.delete_secret(secret.path)
        except CloudVaultError as e:
            logger.warning("Failed to delete secret %s from backend: %s", secret_id, e)

        with self._locks.hold(secret_id):
            self.storage.delete_secret(secret_id)
        self._locks.discard(secret_id)
        self.audit.record(secret_id, principal_id, SecretAction.DELETE, metadata={"path": secret.path})

    def list_secrets(self, secret_filter: Optional[SecretFilter] = None) -> list[Secret]:
        return self.storage.find_secrets(secret_filter)

    def search_secrets(self, query: str, secret_filter: Optional[SecretFilter] = None) -> list[Secret]:
        return self.storage.search_secrets(query, secret_filter)

    # values

    def get_secret_value(self, secret_id: str, principal_id: str = SYSTEM_PRINCIPAL) -> str:
        secret = self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.READ, SecretAction.READ)

        try:
            result = self.connector.read_secret(secret.path)
            if not result or "value" not in result["data"]:
                raise NotFoundError(f"Secret value not found in backend for path {secret.path}")
            value = result["data"]["value"]
            self.storage.update_secret(secret_id, {"last_accessed_at": utc_now()})
        except CloudVaultError as e:
            self.audit.record(
                secret_id, principal_id, SecretAction.READ, success=False, error_message=e.message
            )
            raise SecretRetrievalError(f"Failed to retrieve secret value: {e.message}") from e

        self.audit.record(secret_id, principal_id, SecretAction.READ)
        return value

    def set_secret_value(
        self,
        secret_id: str,
        value: str,
        metadata: Optional[Union[SecretMetadata, dict[str, Any]]] = None,
        principal_id: str = SYSTEM_PRINCIPAL,
        audit_action: SecretAction = SecretAction.UPDATE,
        audit_metadata: Optional[dict[str, Any]] = None,
    ) -> SecretVersion:
        permission = (
            SecretPermission.ROTATE if audit_action == SecretAction.ROTATE else SecretPermission.WRITE
        )
        self._get(secret_id)
        self._require(secret_id, principal_id, permission, audit_action)
        return self._write_value(secret_id, value, metadata, principal_id, audit_action, audit_metadata)

    def _write_value(
        self,
        secret_id: str,
        value: str,
        metadata: Optional[Union[SecretMetadata, dict[str, Any]]],
        principal_id: str,
        audit_action: SecretAction,
        audit_metadata: Optional[dict[str, Any]] = None,
    ) -> SecretVersion:
        if isinstance(metadata, SecretMetadata):
            metadata = metadata.model_dump(exclude_unset=True)
        computed = SecretMetadata(
            size=len(value.encode("utf-8")),
            encoding="utf8",
            checksum=calculate_checksum(value),
        )
        secret_metadata = computed.model_copy(update=metadata or {})

        try:
            with self._locks.hold(secret_id):
                secret = self._get(secret_id)
                write_info = self.connector.write_secret(
                    secret.path,
                    {"value": value},
                    {**secret_metadata.model_dump(exclude_none=True), "updated_by": principal_id},
                )

                new_version = secret.version + 1
                version = SecretVersion(
                    id=str(uuid.uuid4()),
                    secret_id=secret_id,
                    version=new_version,
                    value_hash=computed.checksum,
                    backend_version=write_info.get("version") or new_version,
                    metadata=secret_metadata,
                    created_by=principal_id,
                    is_active=True,
                )
                self.storage.record_secret_version(secret_id, secret.version, version)
        except CloudVaultError as e:
            self.audit.record(
                secret_id, principal_id, audit_action, success=False, error_message=e.message
            )
            raise

        self.audit.record(
            secret_id,
            principal_id,
            audit_action,
            metadata={"version": version.version, **(audit_metadata or {})},
        )
        return version

    def get_secret_versions(self, secret_id: str) -> list[SecretVersion]:
        return self.storage.find_secret_versions(secret_id)

    def get_secret_version(self, secret_id: str, version: int) -> Optional[SecretVersion]:
        return self.storage.find_secret_version(secret_id, version)

    def rollback_secret(
        self,
        secret_id: str,
        target_version: int,
        reason: str = "",
        principal_id: str = SYSTEM_PRINCIPAL,
    ) -> Secret:
        secret = self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.UPDATE, SecretAction.UPDATE)

        target = self.storage.find_secret_version(secret_id, target_version)
        if not target:
            raise NotFoundError(f"Version {target_version} not found for secret {secret_id}")

        result = self.connector.read_secret(secret.path, target.backend_version or target.version)
        if not result or "value" not in result["data"]:
            raise NotFoundError(f"Secret value not found in backend for version {target_version}")

        value = result["data"]["value"]
        if calculate_checksum(value) != target.value_hash:
            raise SecretRetrievalError(
                f"Backend value for version {target_version} of secret {secret_id} "
                "does not match the recorded checksum"
            )

        self._write_value(
            secret_id,
            value,
            target.metadata.model_dump(include={"content_type", "custom_fields"}),
            principal_id,
            SecretAction.UPDATE,
            audit_metadata={"rollback_to": target_version, "reason": reason},
        )
        logger.info("Rolled back secret %s to version %d", secret_id, target_version)
        return self._get(secret_id)

    # rotation

    def rotate_secret(self, secret_id: str, principal_id: str = SYSTEM_PRINCIPAL) -> Secret:
        scheduler = self._require_scheduler()
        self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.ROTATE, SecretAction.ROTATE)

        try:
            return scheduler.rotate_secret(secret_id, principal_id=principal_id)
        except (RotationDisabledError, UnknownRotationTypeError, RotationInProgressError) as e:
            self.audit.record(
                secret_id, principal_id, SecretAction.ROTATE, success=False, error_message=e.message
            )
            raise

    def schedule_rotation(
        self,
        secret_id: str,
        config: Union[RotationConfig, dict[str, Any]],
        principal_id: str = SYSTEM_PRINCIPAL,
    ) -> Optional[datetime]:
        if isinstance(config, dict):
            config = parse_model(RotationConfig, config)
        self.update_secret(secret_id, SecretUpdate(rotation_config=config), principal_id=principal_id)
        return self.get_rotation_status(secret_id).next_rotation

    def cancel_rotation(self, secret_id: str) -> None:
        self._require_scheduler().cancel_rotation(secret_id)

    def get_rotation_status(self, secret_id: str) -> RotationStatus:
        return self._require_scheduler().get_rotation_status(secret_id)

    def list_pending_rotations(self) -> list[dict]:
        return self._require_scheduler().list_pending_rotations()

    # access

    def grant_access(
        self,
        secret_id: str,
        request: Union[AccessPolicyRequest, dict[str, Any]],
        principal_id: str = SYSTEM_PRINCIPAL,
    ) -> SecretAccessPolicy:
        if isinstance(request, dict):
            request = parse_model(AccessPolicyRequest, request)
        self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.MANAGE_ACCESS, SecretAction.GRANT_ACCESS)

        try:
            policy = self.access.grant_access(secret_id, request, granted_by=principal_id)
        except CloudVaultError as e:
            self.audit.record(
                secret_id,
                principal_id,
                SecretAction.GRANT_ACCESS,
                success=False,
                error_message=e.message,
            )
            raise

        self.audit.record(
            secret_id,
            principal_id,
            SecretAction.GRANT_ACCESS,
            metadata={
                "grantee": request.principal_id,
                "permissions": [p.value for p in policy.permissions],
            },
        )
        return policy

    def revoke_access(
        self, secret_id: str, grantee_id: str, principal_id: str = SYSTEM_PRINCIPAL
    ) -> list[SecretAccessPolicy]:
        self._get(secret_id)
        self._require(secret_id, principal_id, SecretPermission.MANAGE_ACCESS, SecretAction.REVOKE_ACCESS)

        try:
            removed = self.access.revoke_access(secret_id, grantee_id)
        except CloudVaultError as e:
            self.audit.record(
                secret_id,
                principal_id,
                SecretAction.REVOKE_ACCESS,
                success=False,
                error_message=e.message,
            )
            raise

        self.audit.record(
            secret_id, principal_id, SecretAction.REVOKE_ACCESS, metadata={"grantee": grantee_id}
        )
        return removed

    def check_access(
        self, secret_id: str, principal_id: str, permission: Union[SecretPermission, str]
    ) -> bool:
        return self.access.check_permission(secret_id, principal_id, permission)

    def get_audit_logs(self, secret_id: str, limit: Optional[int] = 100) -> list[SecretAuditLog]:
        return self.audit.get_audit_logs(secret_id, limit)
