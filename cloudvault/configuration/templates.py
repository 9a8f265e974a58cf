import uuid
from typing import Any, Optional, Union

from cloudvault.configuration.store import ConfigurationStore
from cloudvault.configuration.validator import ConfigurationValidator
from cloudvault.errors import NotFoundError, ValidationError
from cloudvault.models import (
    SYSTEM_PRINCIPAL,
    BulkItem,
    BulkResult,
    ConfigurationBulkOperation,
    ConfigurationTemplate,
    ConfigurationType,
    TemplateCreate,
    parse_model,
    utc_now,
)
from cloudvault.storage.base import StorageBackend

SCHEMA_TYPE_MAP = {
    "string": ConfigurationType.STRING,
    "number": ConfigurationType.NUMBER,
    "integer": ConfigurationType.NUMBER,
    "boolean": ConfigurationType.BOOLEAN,
    "object": ConfigurationType.JSON,
    "array": ConfigurationType.JSON,
}

SECRET_KEY_MARKERS = ("secret", "password")


def schema_type_to_configuration_type(schema_type: Any) -> ConfigurationType:
    if isinstance(schema_type, list):
        schema_type = next((t for t in schema_type if t != "null"), "string")
    return SCHEMA_TYPE_MAP.get(schema_type, ConfigurationType.STRING)


def is_secret_property(key: str, prop: dict[str, Any]) -> bool:
    lowered = key.lower()
    return prop.get("format") == "password" or any(m in lowered for m in SECRET_KEY_MARKERS)


def extract_configurations(
    values: dict[str, Any], schema: dict[str, Any], prefix: str = ""
) -> list[BulkItem]:
    """Flatten values along the schema; keys absent from ``properties`` are dropped."""
    items: list[BulkItem] = []
    properties = schema.get("properties", {})

    for key, value in values.items():
        prop = properties.get(key)
        if prop is None:
            continue

        full_key = f"{prefix}.{key}" if prefix else key
        if prop.get("type") == "object" and prop.get("properties") and isinstance(value, dict):
            items.extend(extract_configurations(value, prop, full_key))
            continue

        items.append(
            BulkItem(
                key=full_key,
                value=value,
                type=schema_type_to_configuration_type(prop.get("type")).value,
                is_secret=is_secret_property(key, prop),
            )
        )

    return items


class ConfigurationTemplateService:
    """Schema-driven templates that expand into per-key configurations."""

    def __init__(
        self,
        storage: StorageBackend,
        configurations: ConfigurationStore,
        validator: Optional[ConfigurationValidator] = None,
    ) -> None:
        self.storage = storage
        self.configurations = configurations
        self.validator = validator or ConfigurationValidator()

    def validate_template(
        self, template: Union[TemplateCreate, dict[str, Any]]
    ) -> tuple[bool, list[str]]:
        violations = self.validator.validate_template(template)
        return not violations, [v.message for v in violations]

    def create_template(self, template: Union[TemplateCreate, dict[str, Any]]) -> ConfigurationTemplate:
        if isinstance(template, dict):
            template = parse_model(TemplateCreate, template)

        violations = self.validator.validate_template(template)
        if violations:
            raise ValidationError("Template validation failed", violations)

        now = utc_now()
        record = ConfigurationTemplate(
            id=str(uuid.uuid4()),
            name=template.name,
            description=template.description,
            schema_definition=template.schema_definition,
            default_values=template.default_values,
            tags=template.tags,
            created_by=template.created_by,
            created_at=now,
            updated_at=now,
        )
        return self.storage.create_template(record)

    def get_template(self, template_id: str) -> Optional[ConfigurationTemplate]:
        return self.storage.get_template(template_id)

    def get_template_by_name(self, name: str) -> Optional[ConfigurationTemplate]:
        return self.storage.get_template_by_name(name)

    def update_template(self, template_id: str, updates: dict[str, Any]) -> ConfigurationTemplate:
        existing = self.storage.get_template(template_id)
        if not existing:
            raise NotFoundError(f"Template with id {template_id} not found")

        merged = existing.model_dump()
        merged.update(updates)
        violations = self.validator.validate_template(
            TemplateCreate(
                name=merged.get("name"),
                description=merged.get("description") or "",
                schema_definition=merged.get("schema_definition"),
                default_values=merged.get("default_values") or {},
                tags=merged.get("tags") or {},
            )
        )
        if violations:
            raise ValidationError("Template validation failed", violations)

        return self.storage.update_template(template_id, updates)

    def delete_template(self, template_id: str) -> None:
        if not self.storage.delete_template(template_id):
            raise NotFoundError(f"Template with id {template_id} not found")

    def list_templates(self) -> list[ConfigurationTemplate]:
        return self.storage.list_templates()

    def apply_template(
        self,
        template_id: str,
        environment_id: str,
        overrides: Optional[dict[str, Any]] = None,
        created_by: str = SYSTEM_PRINCIPAL,
    ) -> BulkResult:
        template = self.storage.get_template(template_id)
        if not template:
            raise NotFoundError(f"Template with id {template_id} not found")

        values = {**template.default_values, **(overrides or {})}

        violations = self.validator.validate_against_schema(values, template.schema_definition)
        if violations:
            raise ValidationError("Template values validation failed", violations)

        items = extract_configurations(values, template.schema_definition)
        for item in items:
            item.description = f"Generated from template: {template.name}"

        return self.configurations.bulk_create(
            ConfigurationBulkOperation(
                environment_id=environment_id,
                configurations=items,
                change_description=f"Applied template: {template.name}",
                created_by=created_by,
            )
        )
