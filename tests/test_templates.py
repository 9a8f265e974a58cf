import pytest

from cloudvault.configuration.store import ConfigurationStore
from cloudvault.configuration.templates import (
    ConfigurationTemplateService,
    extract_configurations,
    schema_type_to_configuration_type,
)
from cloudvault.errors import ConflictError, NotFoundError, ValidationError
from cloudvault.models import ConfigurationType

DATABASE_SCHEMA = {
    "type": "object",
    "properties": {
        "host": {"type": "string"},
        "port": {"type": "integer", "minimum": 1},
        "ssl": {"type": "boolean"},
        "password": {"type": "string"},
        "pool": {
            "type": "object",
            "properties": {
                "size": {"type": "integer"},
                "token": {"type": "string", "format": "password"},
            },
        },
        "replicas": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["host", "port"],
}


@pytest.fixture
def database_template(templates: ConfigurationTemplateService):
    return templates.create_template(
        {
            "name": "postgres",
            "description": "Postgres connection",
            "schema_definition": DATABASE_SCHEMA,
            "default_values": {"host": "localhost", "port": 5432, "ssl": False},
        }
    )


class TestTemplateValidation:
    def test_valid_template(self, templates: ConfigurationTemplateService) -> None:
        valid, errors = templates.validate_template(
            {"name": "cache", "schema_definition": {"type": "object"}}
        )

        assert valid
        assert errors == []

    def test_collects_every_violation(self, templates: ConfigurationTemplateService) -> None:
        valid, errors = templates.validate_template(
            {
                "name": "bad name",
                "schema_definition": DATABASE_SCHEMA,
                "default_values": {"host": 1, "port": 0},
            }
        )

        assert not valid
        assert errors[0].startswith("Template name must contain only")
        assert "Default value error: Validation error at /host: 1 is not of type 'string'" in errors
        assert any(e.startswith("Default value error: Validation error at /port") for e in errors)

    def test_missing_name_and_schema(self, templates: ConfigurationTemplateService) -> None:
        valid, errors = templates.validate_template({})

        assert not valid
        assert errors == ["Template name is required", "Template schema is required"]

    def test_malformed_schema(self, templates: ConfigurationTemplateService) -> None:
        valid, errors = templates.validate_template(
            {"name": "broken", "schema_definition": {"type": "not-a-type"}}
        )

        assert not valid
        assert errors[0].startswith("Schema validation error:")


class TestConfigurationTemplateService:
    def test_create_and_get(self, templates: ConfigurationTemplateService, database_template) -> None:
        assert templates.get_template(database_template.id).name == "postgres"
        assert templates.get_template_by_name("postgres").id == database_template.id
        assert [t.name for t in templates.list_templates()] == ["postgres"]

    def test_create_rejects_invalid(self, templates: ConfigurationTemplateService) -> None:
        with pytest.raises(ValidationError):
            templates.create_template({"name": "x y", "schema_definition": {"type": "object"}})

    def test_names_are_unique(self, templates: ConfigurationTemplateService, database_template) -> None:
        with pytest.raises(ConflictError):
            templates.create_template({"name": "postgres", "schema_definition": {"type": "object"}})

    def test_update_template(self, templates: ConfigurationTemplateService, database_template) -> None:
        updated = templates.update_template(database_template.id, {"description": "Primary database"})
        assert updated.description == "Primary database"

        with pytest.raises(ValidationError):
            templates.update_template(database_template.id, {"default_values": {"port": "x"}})

        with pytest.raises(NotFoundError):
            templates.update_template("missing", {"description": "x"})

    def test_delete_template(self, templates: ConfigurationTemplateService, database_template) -> None:
        templates.delete_template(database_template.id)

        assert templates.get_template(database_template.id) is None
        with pytest.raises(NotFoundError):
            templates.delete_template(database_template.id)

    def test_apply_template(
        self,
        templates: ConfigurationTemplateService,
        configurations: ConfigurationStore,
        database_template,
    ) -> None:
        result = templates.apply_template(
            database_template.id,
            "env-1",
            overrides={"password": "s3cret", "pool": {"size": 10, "token": "t0k"}, "unknown": "dropped"},
            created_by="alice",
        )

        assert result.ok
        created = {c.key: c for c in configurations.get_environment_configurations("env-1")}
        assert set(created) == {"host", "port", "ssl", "password", "pool.size", "pool.token"}

        assert created["port"].type == ConfigurationType.NUMBER
        assert created["port"].value == 5432
        assert created["ssl"].type == ConfigurationType.BOOLEAN
        assert created["password"].is_secret
        assert created["password"].value == "s3cret"
        assert created["pool.token"].is_secret
        assert not created["host"].is_secret
        assert created["host"].description == "Generated from template: postgres"
        assert created["host"].created_by == "alice"

        history = configurations.get_versions(created["host"].id)
        assert history[0].change_description == "Applied template: postgres"

    def test_apply_validates_merged_values(
        self, templates: ConfigurationTemplateService, database_template
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            templates.apply_template(database_template.id, "env-1", overrides={"port": "eighty"})

        assert exc_info.value.violations[0].field == "/port"

    def test_apply_unknown_template(self, templates: ConfigurationTemplateService) -> None:
        with pytest.raises(NotFoundError):
            templates.apply_template("missing", "env-1")

    def test_apply_twice_reports_conflicts(
        self, templates: ConfigurationTemplateService, database_template
    ) -> None:
        templates.apply_template(database_template.id, "env-1")

        second = templates.apply_template(database_template.id, "env-1")

        assert not second.ok
        assert {e.code for e in second.errors} == {"CONFLICT"}


class TestExtraction:
    def test_schema_type_mapping(self) -> None:
        assert schema_type_to_configuration_type("integer") == ConfigurationType.NUMBER
        assert schema_type_to_configuration_type("array") == ConfigurationType.JSON
        assert schema_type_to_configuration_type(["null", "boolean"]) == ConfigurationType.BOOLEAN
        assert schema_type_to_configuration_type(None) == ConfigurationType.STRING

    def test_extract_configurations(self) -> None:
        items = extract_configurations(
            {"host": "h", "replicas": ["a", "b"], "pool": {"size": 2}, "extra": 1}, DATABASE_SCHEMA
        )

        assert [(i.key, i.type) for i in items] == [
            ("host", "string"),
            ("replicas", "json"),
            ("pool.size", "number"),
        ]
