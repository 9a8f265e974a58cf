from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cloudvault.errors import ValidationError

SYSTEM_PRINCIPAL = "system"
REDACTED = "[REDACTED]"

ModelT = TypeVar("ModelT", bound=BaseModel)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_model(model: type[ModelT], data: Any, message: Optional[str] = None) -> ModelT:
    """Build ``model`` from a plain mapping, reporting bad fields as a cloudvault ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(message or f"Invalid {model.__name__}", e) from e


class ConfigurationType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    YAML = "yaml"
    ENV = "env"


class ExportFormat(str, Enum):
    JSON = "json"
    YAML = "yaml"
    ENV = "env"


class Configuration(BaseModel):
    id: str
    environment_id: str
    name: str
    key: str = Field(..., description="Environment-unique key (e.g., DATABASE_URL)")
    value: Any = Field(..., description="Typed value; ciphertext at rest when is_secret")
    type: ConfigurationType = ConfigurationType.STRING
    is_secret: bool = False
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)
    created_by: str = SYSTEM_PRINCIPAL
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConfigurationCreate(BaseModel):
    """Loose input shape; the validator reports every rule it breaks."""

    environment_id: Optional[str] = None
    name: Optional[str] = None
    key: Optional[str] = None
    value: Any = None
    type: Optional[str] = None
    is_secret: bool = False
    description: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)
    created_by: str = SYSTEM_PRINCIPAL


class ConfigurationUpdate(BaseModel):
    value: Any
    change_description: Optional[str] = None


class ConfigurationVersion(BaseModel):
    id: str
    configuration_id: str
    version: int
    value: Any
    change_description: Optional[str] = None
    created_by: str = SYSTEM_PRINCIPAL
    created_at: datetime = Field(default_factory=utc_now)


class ConfigurationFilter(BaseModel):
    environment_id: Optional[str] = None
    name: Optional[str] = Field(default=None, description="Case-insensitive substring")
    key: Optional[str] = Field(default=None, description="Case-insensitive substring")
    type: Optional[ConfigurationType] = None
    is_secret: Optional[bool] = None
    tags: dict[str, str] = Field(default_factory=dict)


class BulkItem(BaseModel):
    key: str
    value: Any = None
    name: Optional[str] = None
    type: Optional[str] = None
    is_secret: bool = False
    description: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class ConfigurationBulkOperation(BaseModel):
    environment_id: str
    configurations: list[BulkItem] = Field(default_factory=list)
    change_description: Optional[str] = None
    created_by: str = SYSTEM_PRINCIPAL


class BulkItemError(BaseModel):
    key: str
    code: str
    message: str
    violations: list[dict[str, str]] = Field(default_factory=list)


class BulkResult(BaseModel):
    """Outcome of a best-effort batch; inspect ``errors`` for the items that failed."""

    items: list[Any] = Field(default_factory=list)
    errors: list[BulkItemError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ConfigurationRollback(BaseModel):
    configuration_id: str
    target_version: int
    reason: str = ""
    created_by: str = SYSTEM_PRINCIPAL


class ConfigurationExport(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    include_secrets: bool = False
    environment_id: str
    filter: Optional[ConfigurationFilter] = None


class ConfigurationImport(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    data: str
    environment_id: str
    overwrite_existing: bool = False
    change_description: Optional[str] = None
    created_by: str = SYSTEM_PRINCIPAL


class ConfigurationTemplate(BaseModel):
    id: str
    name: str
    description: str = ""
    schema_definition: dict[str, Any] = Field(
        ..., description="JSON-schema object describing the template properties"
    )
    default_values: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    created_by: str = SYSTEM_PRINCIPAL
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TemplateCreate(BaseModel):
    name: Optional[str] = None
    description: str = ""
    schema_definition: Optional[dict[str, Any]] = None
    default_values: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    created_by: str = SYSTEM_PRINCIPAL


class SecretType(str, Enum):
    PASSWORD = "password"
    API_KEY = "api_key"
    CERTIFICATE = "certificate"
    PRIVATE_KEY = "private_key"
    DATABASE_CREDENTIAL = "database_credential"
    OAUTH_TOKEN = "oauth_token"
    CUSTOM = "custom"


class SecretAction(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ROTATE = "rotate"
    GRANT_ACCESS = "grant_access"
    REVOKE_ACCESS = "revoke_access"


class SecretPermission(str, Enum):
    READ = "read"
    WRITE = "write"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"
    ROTATE = "rotate"
    MANAGE_ACCESS = "manage_access"


class PrincipalType(str, Enum):
    USER = "user"
    SERVICE = "service"
    SYSTEM = "system"


class RotationConfig(BaseModel):
    enabled: bool = False
    auto_rotate: bool = False
    type: str = Field(default="manual", description="Key into the rotation handler registry")
    interval: float = Field(default=30, gt=0, description="Days between rotations")
    notify_before: int = Field(default=0, ge=0)
    settings: dict[str, Any] = Field(default_factory=dict)


class SecretMetadata(BaseModel):
    size: int = 0
    encoding: str = "utf8"
    checksum: str = ""
    content_type: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class Secret(BaseModel):
    """Secret metadata. Never carries the plaintext or ciphertext of the value."""

    id: str
    name: str
    path: str = Field(..., description="Backend path, e.g. environments/env-1/secrets/api-key")
    environment_id: str
    type: SecretType = SecretType.CUSTOM
    description: Optional[str] = None
    version: int = Field(default=1, ge=1)
    rotation_config: Optional[RotationConfig] = None
    tags: dict[str, str] = Field(default_factory=dict)
    metadata: SecretMetadata = Field(default_factory=SecretMetadata)
    last_rotated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    created_by: str = SYSTEM_PRINCIPAL
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SecretCreate(BaseModel):
    name: str
    environment_id: str
    type: SecretType = SecretType.CUSTOM
    description: Optional[str] = None
    rotation_config: Optional[RotationConfig] = None
    tags: dict[str, str] = Field(default_factory=dict)
    created_by: str = SYSTEM_PRINCIPAL


class SecretUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    rotation_config: Optional[RotationConfig] = None
    tags: Optional[dict[str, str]] = None


class SecretFilter(BaseModel):
    environment_id: Optional[str] = None
    name: Optional[str] = None
    path: Optional[str] = None
    type: Optional[SecretType] = None
    created_by: Optional[str] = None
    tags: dict[str, str] = Field(default_factory=dict)


class SecretVersion(BaseModel):
    id: str
    secret_id: str
    version: int
    value_hash: str = Field(..., description="SHA-256 of the value, hex")
    backend_version: Optional[int] = Field(
        default=None, description="Version number the backend assigned to this write"
    )
    metadata: SecretMetadata = Field(default_factory=SecretMetadata)
    created_by: str = SYSTEM_PRINCIPAL
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class SecretAuditLog(BaseModel):
    id: int
    secret_id: str
    action: SecretAction
    principal_id: str
    principal_type: PrincipalType = PrincipalType.USER
    success: bool = True
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    prev_hash: str = ""
    entry_hash: str = ""


class AccessPolicyRequest(BaseModel):
    name: str = Field(..., description="Backend policy name")
    principal_id: str
    principal_type: PrincipalType = PrincipalType.USER
    permissions: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class SecretAccessPolicy(BaseModel):
    id: str
    name: str
    secret_id: str
    principal_id: str
    principal_type: PrincipalType = PrincipalType.USER
    permissions: list[SecretPermission] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_by: str = SYSTEM_PRINCIPAL
    created_at: datetime = Field(default_factory=utc_now)


class RotationState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    ROTATING = "rotating"


class RotationStatus(BaseModel):
    secret_id: str
    state: RotationState = RotationState.IDLE
    scheduled: bool = False
    next_rotation: Optional[datetime] = None
    last_rotation: Optional[datetime] = None


class StorageConfig(BaseModel):
    backend: str = Field(default="sqlite", description="Storage backend")
    path: str = Field(default=".cloudvault/store.db", description="Path to storage file")


class EncryptionConfig(BaseModel):
    key_env: str = Field(
        default="CLOUDVAULT_ENCRYPTION_KEY", description="Env var holding the hex master key"
    )
    use_keyring: bool = Field(default=True, description="Look the master key up in the keychain")


class VaultConfig(BaseModel):
    endpoint: str = Field(default="http://127.0.0.1:8200", description="Backend base URL")
    token: Optional[str] = Field(default=None, description="Static token")
    role_id: Optional[str] = Field(default=None, description="AppRole role id")
    secret_id: Optional[str] = Field(default=None, description="AppRole secret id")
    namespace: Optional[str] = None
    mount_path: str = Field(default="secret", description="KV v2 mount")
    timeout: float = Field(default=30.0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=3, ge=1, description="Attempts per call, first included")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff, multiplied by attempt")
    verify_ssl: bool = True
    ca_bundle: Optional[str] = None
    token_ttl: int = Field(default=3600, description="Lifetime of issued tokens in seconds")


class AuditConfig(BaseModel):
    enabled: bool = Field(default=True, description="Whether audit logging is enabled")
    path: Optional[str] = Field(
        default=".cloudvault/audit.log", description="JSON-lines mirror of the audit table"
    )
    log_reads: bool = Field(default=True, description="Whether to record read operations")


class RotationSettings(BaseModel):
    enabled: bool = True
    max_workers: int = Field(default=4, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    environment: str = Field(default="development", description="development or production")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    rotation: RotationSettings = Field(default_factory=RotationSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
