import json
import math
import re
from typing import Any, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from cloudvault.errors import Violation
from cloudvault.models import ConfigurationCreate, ConfigurationType, TemplateCreate, parse_model

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
VALID_TYPES = {t.value for t in ConfigurationType}


def _location(path: Any) -> str:
    parts = [str(p) for p in path]
    return "/" + "/".join(parts) if parts else "/"


class ConfigurationValidator:
    """Rule checks for configurations and templates.

    Every check collects all violations instead of stopping at the first.
    """

    def validate_configuration(
        self, config: Union[ConfigurationCreate, dict[str, Any]]
    ) -> list[Violation]:
        if isinstance(config, dict):
            config = parse_model(ConfigurationCreate, config)

        violations: list[Violation] = []

        def fail(field: str, message: str) -> None:
            violations.append(Violation(field=field, message=message))

        if not config.environment_id:
            fail("environment_id", "Environment ID is required")
        if not config.key:
            fail("key", "Configuration key is required")
        if not config.name:
            fail("name", "Configuration name is required")
        if config.value is None:
            fail("value", "Configuration value is required")
        if not config.type:
            fail("type", "Configuration type is required")
        elif config.type not in VALID_TYPES:
            fail("type", f"Configuration type '{config.type}' is not one of {sorted(VALID_TYPES)}")

        if config.key and not NAME_PATTERN.match(config.key):
            fail(
                "key",
                "Configuration key must contain only alphanumeric characters, "
                "underscores, dots, and hyphens",
            )

        if config.type in VALID_TYPES and config.value is not None:
            if not self.validate_value(ConfigurationType(config.type), config.value):
                fail("value", f"Configuration value is not valid for type {config.type}")

        for tag_key in config.tags:
            if not NAME_PATTERN.match(tag_key):
                fail(
                    f"tags.{tag_key}",
                    f"Tag key '{tag_key}' must contain only alphanumeric characters, "
                    "underscores, dots, and hyphens",
                )

        return violations

    @staticmethod
    def validate_value(type_: ConfigurationType, value: Any) -> bool:
        if type_ == ConfigurationType.NUMBER:
            return (
                isinstance(value, (int, float))
                and not isinstance(value, bool)
                and not (isinstance(value, float) and math.isnan(value))
            )
        if type_ == ConfigurationType.BOOLEAN:
            return isinstance(value, bool)
        if type_ == ConfigurationType.JSON:
            if isinstance(value, str):
                try:
                    json.loads(value)
                except ValueError:
                    return False
                return True
            return isinstance(value, (dict, list))
        # string, yaml and env are opaque strings
        return isinstance(value, str)

    @staticmethod
    def validate_schema(schema: dict[str, Any]) -> list[str]:
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            return [e.message]
        return []

    def validate_template(self, template: Union[TemplateCreate, dict[str, Any]]) -> list[Violation]:
        if isinstance(template, dict):
            template = parse_model(TemplateCreate, template)

        violations: list[Violation] = []

        if not template.name:
            violations.append(Violation(field="name", message="Template name is required"))
        elif not NAME_PATTERN.match(template.name):
            violations.append(
                Violation(
                    field="name",
                    message="Template name must contain only alphanumeric characters, "
                    "underscores, dots, and hyphens",
                )
            )

        if not template.schema_definition:
            violations.append(Violation(field="schema", message="Template schema is required"))
            return violations

        schema_errors = self.validate_schema(template.schema_definition)
        for err in schema_errors:
            violations.append(Violation(field="schema", message=f"Schema validation error: {err}"))

        if not schema_errors and template.default_values:
            for v in self.validate_against_schema(
                template.default_values, template.schema_definition
            ):
                violations.append(
                    Violation(field=f"default_values{v.field}", message=f"Default value error: {v.message}")
                )

        return violations

    @staticmethod
    def validate_against_schema(value: Any, schema: dict[str, Any]) -> list[Violation]:
        validator = Draft7Validator(schema)
        violations = []
        errors = sorted(validator.iter_errors(value), key=lambda e: [str(p) for p in e.absolute_path])
        for error in errors:
            location = _location(error.absolute_path)
            message = f"Validation error at {location}: {error.message}"
            violations.append(Violation(field=location, message=message))
        return violations
