import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from cloudvault.errors import (
    ConcurrentModificationError,
    ConflictError,
    DataSourceUnavailableError,
    NotFoundError,
)
from cloudvault.models import (
    Configuration,
    ConfigurationFilter,
    ConfigurationTemplate,
    ConfigurationType,
    ConfigurationVersion,
    PrincipalType,
    RotationConfig,
    Secret,
    SecretAccessPolicy,
    SecretAction,
    SecretAuditLog,
    SecretFilter,
    SecretMetadata,
    SecretPermission,
    SecretType,
    SecretVersion,
    utc_now,
)
from cloudvault.storage.base import StorageBackend
from cloudvault.storage.models import (
    AuditLogModel,
    Base,
    ConfigurationModel,
    ConfigurationTemplateModel,
    ConfigurationVersionModel,
    SecretAccessPolicyModel,
    SecretModel,
    SecretVersionModel,
)

_SECRET_COLUMNS = {
    "name",
    "description",
    "rotation_config",
    "tags",
    "metadata",
    "last_rotated_at",
    "last_accessed_at",
    "updated_at",
}

_TEMPLATE_COLUMNS = {"name", "description", "schema_definition", "default_values", "tags"}


def _new_id() -> str:
    return str(uuid.uuid4())


def _tags_match(tags: dict[str, str], wanted: dict[str, str]) -> bool:
    return all(tags.get(k) == v for k, v in wanted.items())


class SQLiteStorage(StorageBackend):
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

        if "://" in db_path:
            url = db_path
        else:
            db_dir = os.path.dirname(db_path)
            if db_dir:
                Path(db_dir).mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{db_path}"

        connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def initialize(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except OperationalError as e:
            raise DataSourceUnavailableError(f"Storage unavailable: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.SessionLocal() as session:
                yield session
        except OperationalError as e:
            raise DataSourceUnavailableError(f"Storage unavailable: {e}") from e

    # configurations

    @staticmethod
    def _to_configuration(model: ConfigurationModel) -> Configuration:
        return Configuration(
            id=model.id,
            environment_id=model.environment_id,
            name=model.name,
            key=model.key,
            value=model.value,
            type=ConfigurationType(model.type),
            is_secret=model.is_secret,
            version=model.version,
            description=model.description,
            tags=model.tags or {},
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_configuration_version(model: ConfigurationVersionModel) -> ConfigurationVersion:
        return ConfigurationVersion(
            id=model.id,
            configuration_id=model.configuration_id,
            version=model.version,
            value=model.value,
            change_description=model.change_description,
            created_by=model.created_by,
            created_at=model.created_at,
        )

    def create_configuration(
        self, config: Configuration, change_description: Optional[str] = None
    ) -> Configuration:
        with self._session() as session:
            session.add(
                ConfigurationModel(
                    id=config.id,
                    environment_id=config.environment_id,
                    name=config.name,
                    key=config.key,
                    value=config.value,
                    type=config.type.value,
                    is_secret=config.is_secret,
                    version=config.version,
                    description=config.description,
                    tags=dict(config.tags),
                    created_by=config.created_by,
                    created_at=config.created_at,
                    updated_at=config.updated_at,
                )
            )
            session.add(
                ConfigurationVersionModel(
                    id=_new_id(),
                    configuration_id=config.id,
                    version=config.version,
                    value=config.value,
                    change_description=change_description or "Initial version",
                    created_by=config.created_by,
                    created_at=config.created_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(
                    f"Configuration with key '{config.key}' already exists in "
                    f"environment '{config.environment_id}'"
                ) from e
        return config

    def get_configuration(self, configuration_id: str) -> Optional[Configuration]:
        with self._session() as session:
            model = session.get(ConfigurationModel, configuration_id)
            return self._to_configuration(model) if model else None

    def get_configuration_by_key(self, environment_id: str, key: str) -> Optional[Configuration]:
        with self._session() as session:
            stmt = select(ConfigurationModel).where(
                ConfigurationModel.environment_id == environment_id,
                ConfigurationModel.key == key,
            )
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_configuration(model) if model else None

    def update_configuration_value(
        self,
        configuration_id: str,
        expected_version: int,
        value: Any,
        change_description: Optional[str],
        updated_by: str,
    ) -> Configuration:
        now = utc_now()
        new_version = expected_version + 1

        with self._session() as session:
            result = session.execute(
                update(ConfigurationModel)
                .where(
                    ConfigurationModel.id == configuration_id,
                    ConfigurationModel.version == expected_version,
                )
                .values(value=value, version=new_version, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(ConfigurationModel, configuration_id) is None:
                    raise NotFoundError(f"Configuration with id {configuration_id} not found")
                raise ConcurrentModificationError(
                    f"Configuration {configuration_id} was modified concurrently "
                    f"(expected version {expected_version})"
                )

            session.add(
                ConfigurationVersionModel(
                    id=_new_id(),
                    configuration_id=configuration_id,
                    version=new_version,
                    value=value,
                    change_description=change_description,
                    created_by=updated_by,
                    created_at=now,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConcurrentModificationError(
                    f"Version {new_version} of configuration {configuration_id} already exists"
                ) from e

            model = session.get(ConfigurationModel, configuration_id)
            return self._to_configuration(model)

    def delete_configuration(self, configuration_id: str) -> bool:
        with self._session() as session:
            model = session.get(ConfigurationModel, configuration_id)
            if not model:
                return False

            session.execute(
                delete(ConfigurationVersionModel).where(
                    ConfigurationVersionModel.configuration_id == configuration_id
                )
            )
            session.delete(model)
            session.commit()
            return True

    def _configuration_query(self, config_filter: Optional[ConfigurationFilter]):
        stmt = select(ConfigurationModel)
        if config_filter:
            if config_filter.environment_id:
                stmt = stmt.where(ConfigurationModel.environment_id == config_filter.environment_id)
            if config_filter.name:
                stmt = stmt.where(ConfigurationModel.name.ilike(f"%{config_filter.name}%"))
            if config_filter.key:
                stmt = stmt.where(ConfigurationModel.key.ilike(f"%{config_filter.key}%"))
            if config_filter.type:
                stmt = stmt.where(ConfigurationModel.type == config_filter.type.value)
            if config_filter.is_secret is not None:
                stmt = stmt.where(ConfigurationModel.is_secret == config_filter.is_secret)
        return stmt

    def _run_configuration_query(
        self, stmt, config_filter: Optional[ConfigurationFilter]
    ) -> list[Configuration]:
        wanted_tags = config_filter.tags if config_filter else {}
        with self._session() as session:
            results = session.execute(stmt).scalars().all()
            return [
                self._to_configuration(m)
                for m in results
                if not wanted_tags or _tags_match(m.tags or {}, wanted_tags)
            ]

    def find_configurations(
        self, config_filter: Optional[ConfigurationFilter] = None
    ) -> list[Configuration]:
        stmt = self._configuration_query(config_filter).order_by(
            ConfigurationModel.environment_id, ConfigurationModel.key
        )
        return self._run_configuration_query(stmt, config_filter)

    def search_configurations(
        self, query: str, config_filter: Optional[ConfigurationFilter] = None
    ) -> list[Configuration]:
        pattern = f"%{query}%"
        stmt = (
            self._configuration_query(config_filter)
            .where(
                or_(
                    ConfigurationModel.name.ilike(pattern),
                    ConfigurationModel.key.ilike(pattern),
                    ConfigurationModel.description.ilike(pattern),
                )
            )
            .order_by(ConfigurationModel.environment_id, ConfigurationModel.key)
        )
        return self._run_configuration_query(stmt, config_filter)

    def find_configuration_versions(self, configuration_id: str) -> list[ConfigurationVersion]:
        with self._session() as session:
            stmt = (
                select(ConfigurationVersionModel)
                .where(ConfigurationVersionModel.configuration_id == configuration_id)
                .order_by(ConfigurationVersionModel.version)
            )
            return [self._to_configuration_version(m) for m in session.execute(stmt).scalars()]

    def find_configuration_version(
        self, configuration_id: str, version: int
    ) -> Optional[ConfigurationVersion]:
        with self._session() as session:
            stmt = select(ConfigurationVersionModel).where(
                ConfigurationVersionModel.configuration_id == configuration_id,
                ConfigurationVersionModel.version == version,
            )
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_configuration_version(model) if model else None

    # templates

    @staticmethod
    def _to_template(model: ConfigurationTemplateModel) -> ConfigurationTemplate:
        return ConfigurationTemplate(
            id=model.id,
            name=model.name,
            description=model.description,
            schema_definition=model.schema_definition,
            default_values=model.default_values or {},
            tags=model.tags or {},
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def create_template(self, template: ConfigurationTemplate) -> ConfigurationTemplate:
        with self._session() as session:
            session.add(
                ConfigurationTemplateModel(
                    id=template.id,
                    name=template.name,
                    description=template.description,
                    schema_definition=template.schema_definition,
                    default_values=template.default_values,
                    tags=template.tags,
                    created_by=template.created_by,
                    created_at=template.created_at,
                    updated_at=template.updated_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(f"Template '{template.name}' already exists") from e
        return template

    def get_template(self, template_id: str) -> Optional[ConfigurationTemplate]:
        with self._session() as session:
            model = session.get(ConfigurationTemplateModel, template_id)
            return self._to_template(model) if model else None

    def get_template_by_name(self, name: str) -> Optional[ConfigurationTemplate]:
        with self._session() as session:
            stmt = select(ConfigurationTemplateModel).where(ConfigurationTemplateModel.name == name)
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_template(model) if model else None

    def update_template(self, template_id: str, updates: dict[str, Any]) -> ConfigurationTemplate:
        with self._session() as session:
            model = session.get(ConfigurationTemplateModel, template_id)
            if not model:
                raise NotFoundError(f"Template with id {template_id} not found")

            for field, value in updates.items():
                if field in _TEMPLATE_COLUMNS:
                    setattr(model, field, value)
            model.updated_at = utc_now()
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(f"Template '{updates.get('name')}' already exists") from e
            return self._to_template(model)

    def delete_template(self, template_id: str) -> bool:
        with self._session() as session:
            model = session.get(ConfigurationTemplateModel, template_id)
            if not model:
                return False
            session.delete(model)
            session.commit()
            return True

    def list_templates(self) -> list[ConfigurationTemplate]:
        with self._session() as session:
            stmt = select(ConfigurationTemplateModel).order_by(
                ConfigurationTemplateModel.created_at.desc()
            )
            return [self._to_template(m) for m in session.execute(stmt).scalars()]

    # secrets

    @staticmethod
    def _to_secret(model: SecretModel) -> Secret:
        return Secret(
            id=model.id,
            name=model.name,
            path=model.path,
            environment_id=model.environment_id,
            type=SecretType(model.type),
            description=model.description,
            version=model.version,
            rotation_config=(
                RotationConfig.model_validate(model.rotation_config)
                if model.rotation_config
                else None
            ),
            tags=model.tags or {},
            metadata=SecretMetadata.model_validate(model.meta_data or {}),
            last_rotated_at=model.last_rotated_at,
            last_accessed_at=model.last_accessed_at,
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_secret_version(model: SecretVersionModel) -> SecretVersion:
        return SecretVersion(
            id=model.id,
            secret_id=model.secret_id,
            version=model.version,
            value_hash=model.value_hash,
            backend_version=model.backend_version,
            metadata=SecretMetadata.model_validate(model.meta_data or {}),
            created_by=model.created_by,
            is_active=model.is_active,
            created_at=model.created_at,
        )

    def create_secret(self, secret: Secret) -> Secret:
        with self._session() as session:
            session.add(
                SecretModel(
                    id=secret.id,
                    name=secret.name,
                    path=secret.path,
                    environment_id=secret.environment_id,
                    type=secret.type.value,
                    description=secret.description,
                    version=secret.version,
                    rotation_config=(
                        secret.rotation_config.model_dump() if secret.rotation_config else None
                    ),
                    tags=secret.tags,
                    meta_data=secret.metadata.model_dump(),
                    created_by=secret.created_by,
                    created_at=secret.created_at,
                    updated_at=secret.updated_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(f"Secret at path '{secret.path}' already exists") from e
        return secret

    def get_secret(self, secret_id: str) -> Optional[Secret]:
        with self._session() as session:
            model = session.get(SecretModel, secret_id)
            return self._to_secret(model) if model else None

    def get_secret_by_path(self, path: str) -> Optional[Secret]:
        with self._session() as session:
            stmt = select(SecretModel).where(SecretModel.path == path)
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_secret(model) if model else None

    def update_secret(self, secret_id: str, updates: dict[str, Any]) -> Secret:
        with self._session() as session:
            model = session.get(SecretModel, secret_id)
            if not model:
                raise NotFoundError(f"Secret with ID {secret_id} not found")

            for field, value in updates.items():
                if field not in _SECRET_COLUMNS:
                    continue
                if field == "metadata":
                    model.meta_data = value.model_dump() if isinstance(value, SecretMetadata) else value
                elif field == "rotation_config":
                    model.rotation_config = (
                        value.model_dump() if isinstance(value, RotationConfig) else value
                    )
                else:
                    setattr(model, field, value)
            if "updated_at" not in updates:
                model.updated_at = utc_now()
            session.commit()
            return self._to_secret(model)

    def delete_secret(self, secret_id: str) -> bool:
        with self._session() as session:
            model = session.get(SecretModel, secret_id)
            if not model:
                return False

            session.execute(delete(SecretVersionModel).where(SecretVersionModel.secret_id == secret_id))
            session.execute(
                delete(SecretAccessPolicyModel).where(SecretAccessPolicyModel.secret_id == secret_id)
            )
            session.delete(model)
            session.commit()
            return True

    def _secret_query(self, secret_filter: Optional[SecretFilter]):
        stmt = select(SecretModel)
        if secret_filter:
            if secret_filter.environment_id:
                stmt = stmt.where(SecretModel.environment_id == secret_filter.environment_id)
            if secret_filter.name:
                stmt = stmt.where(SecretModel.name.ilike(f"%{secret_filter.name}%"))
            if secret_filter.path:
                stmt = stmt.where(SecretModel.path.like(f"{secret_filter.path}%"))
            if secret_filter.type:
                stmt = stmt.where(SecretModel.type == secret_filter.type.value)
            if secret_filter.created_by:
                stmt = stmt.where(SecretModel.created_by == secret_filter.created_by)
        return stmt.order_by(SecretModel.path)

    def _run_secret_query(self, stmt, secret_filter: Optional[SecretFilter]) -> list[Secret]:
        wanted_tags = secret_filter.tags if secret_filter else {}
        with self._session() as session:
            return [
                self._to_secret(m)
                for m in session.execute(stmt).scalars()
                if not wanted_tags or _tags_match(m.tags or {}, wanted_tags)
            ]

    def find_secrets(self, secret_filter: Optional[SecretFilter] = None) -> list[Secret]:
        return self._run_secret_query(self._secret_query(secret_filter), secret_filter)

    def search_secrets(
        self, query: str, secret_filter: Optional[SecretFilter] = None
    ) -> list[Secret]:
        pattern = f"%{query}%"
        stmt = self._secret_query(secret_filter).where(
            or_(
                SecretModel.name.ilike(pattern),
                SecretModel.path.ilike(pattern),
                SecretModel.description.ilike(pattern),
            )
        )
        return self._run_secret_query(stmt, secret_filter)

    def record_secret_version(
        self, secret_id: str, expected_version: int, version: SecretVersion
    ) -> SecretVersion:
        with self._session() as session:
            result = session.execute(
                update(SecretModel)
                .where(SecretModel.id == secret_id, SecretModel.version == expected_version)
                .values(
                    version=version.version,
                    meta_data=version.metadata.model_dump(),
                    updated_at=version.created_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(SecretModel, secret_id) is None:
                    raise NotFoundError(f"Secret with ID {secret_id} not found")
                raise ConcurrentModificationError(
                    f"Secret {secret_id} was modified concurrently "
                    f"(expected version {expected_version})"
                )

            session.execute(
                update(SecretVersionModel)
                .where(SecretVersionModel.secret_id == secret_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            session.add(
                SecretVersionModel(
                    id=version.id,
                    secret_id=secret_id,
                    version=version.version,
                    value_hash=version.value_hash,
                    backend_version=version.backend_version,
                    meta_data=version.metadata.model_dump(),
                    created_by=version.created_by,
                    is_active=True,
                    created_at=version.created_at,
                )
            )
            session.commit()
        return version

    def find_secret_versions(self, secret_id: str) -> list[SecretVersion]:
        with self._session() as session:
            stmt = (
                select(SecretVersionModel)
                .where(SecretVersionModel.secret_id == secret_id)
                .order_by(SecretVersionModel.version)
            )
            return [self._to_secret_version(m) for m in session.execute(stmt).scalars()]

    def find_secret_version(self, secret_id: str, version: int) -> Optional[SecretVersion]:
        with self._session() as session:
            stmt = select(SecretVersionModel).where(
                SecretVersionModel.secret_id == secret_id,
                SecretVersionModel.version == version,
            )
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_secret_version(model) if model else None

    # access policies

    @staticmethod
    def _to_access_policy(model: SecretAccessPolicyModel) -> SecretAccessPolicy:
        return SecretAccessPolicy(
            id=model.id,
            name=model.name,
            secret_id=model.secret_id,
            principal_id=model.principal_id,
            principal_type=PrincipalType(model.principal_type),
            permissions=[SecretPermission(p) for p in model.permissions or []],
            expires_at=model.expires_at,
            created_by=model.created_by,
            created_at=model.created_at,
        )

    def create_access_policy(self, policy: SecretAccessPolicy) -> SecretAccessPolicy:
        with self._session() as session:
            session.add(
                SecretAccessPolicyModel(
                    id=policy.id,
                    name=policy.name,
                    secret_id=policy.secret_id,
                    principal_id=policy.principal_id,
                    principal_type=policy.principal_type.value,
                    permissions=[p.value for p in policy.permissions],
                    expires_at=policy.expires_at,
                    created_by=policy.created_by,
                    created_at=policy.created_at,
                )
            )
            session.commit()
        return policy

    def find_access_policies(
        self, secret_id: str, principal_id: Optional[str] = None
    ) -> list[SecretAccessPolicy]:
        with self._session() as session:
            stmt = select(SecretAccessPolicyModel).where(
                SecretAccessPolicyModel.secret_id == secret_id
            )
            if principal_id is not None:
                stmt = stmt.where(SecretAccessPolicyModel.principal_id == principal_id)
            stmt = stmt.order_by(SecretAccessPolicyModel.created_at)
            return [self._to_access_policy(m) for m in session.execute(stmt).scalars()]

    def delete_access_policies(self, secret_id: str, principal_id: str) -> list[SecretAccessPolicy]:
        with self._session() as session:
            stmt = select(SecretAccessPolicyModel).where(
                SecretAccessPolicyModel.secret_id == secret_id,
                SecretAccessPolicyModel.principal_id == principal_id,
            )
            models = session.execute(stmt).scalars().all()
            removed = [self._to_access_policy(m) for m in models]
            for model in models:
                session.delete(model)
            session.commit()
            return removed

    # audit

    @staticmethod
    def _to_audit_log(model: AuditLogModel) -> SecretAuditLog:
        return SecretAuditLog(
            id=model.id,
            secret_id=model.secret_id,
            action=SecretAction(model.action),
            principal_id=model.principal_id,
            principal_type=PrincipalType(model.principal_type),
            success=model.success,
            error_message=model.error_message,
            metadata=model.meta_data or {},
            timestamp=model.timestamp,
            prev_hash=model.prev_hash,
            entry_hash=model.entry_hash,
        )

    def append_audit_log(self, entry: SecretAuditLog) -> SecretAuditLog:
        with self._session() as session:
            model = AuditLogModel(
                secret_id=entry.secret_id,
                action=entry.action.value,
                principal_id=entry.principal_id,
                principal_type=entry.principal_type.value,
                success=entry.success,
                error_message=entry.error_message,
                meta_data=entry.metadata,
                timestamp=entry.timestamp,
                prev_hash=entry.prev_hash,
                entry_hash=entry.entry_hash,
            )
            session.add(model)
            session.commit()
            return self._to_audit_log(model)

    def last_audit_log(self) -> Optional[SecretAuditLog]:
        with self._session() as session:
            stmt = select(AuditLogModel).order_by(AuditLogModel.id.desc()).limit(1)
            model = session.execute(stmt).scalar_one_or_none()
            return self._to_audit_log(model) if model else None

    def find_audit_logs(
        self, secret_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[SecretAuditLog]:
        with self._session() as session:
            stmt = select(AuditLogModel)
            if secret_id is not None:
                stmt = stmt.where(AuditLogModel.secret_id == secret_id)
            stmt = stmt.order_by(AuditLogModel.id.desc())
            if limit:
                stmt = stmt.limit(limit)
            return [self._to_audit_log(m) for m in session.execute(stmt).scalars()]

    def iter_audit_logs(self) -> list[SecretAuditLog]:
        with self._session() as session:
            stmt = select(AuditLogModel).order_by(AuditLogModel.id)
            return [self._to_audit_log(m) for m in session.execute(stmt).scalars()]
