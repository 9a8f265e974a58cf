import json
import os

import pytest
from typer.testing import CliRunner

from cloudvault import cli
from cloudvault.cli import app
from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.models import REDACTED
from cloudvault.utils import utils

from conftest import ROOT_TOKEN, FakeVault

runner = CliRunner()

DATABASE_SCHEMA = {
    "type": "object",
    "properties": {
        "host": {"type": "string"},
        "port": {"type": "integer"},
        "password": {"type": "string"},
    },
    "required": ["host", "port"],
}


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CLOUDVAULT_ENCRYPTION_KEY", EncryptionEngine.key_to_string(EncryptionEngine.generate_key()))
    monkeypatch.setenv("CLOUDVAULT_LOG_LEVEL", "WARNING")
    monkeypatch.delenv("CLOUDVAULT_ENV", raising=False)
    monkeypatch.delenv("CLOUDVAULT_PRINCIPAL", raising=False)
    yield str(tmp_path)


@pytest.fixture
def fake_backend(temp_dir, monkeypatch) -> FakeVault:
    fake = FakeVault()
    monkeypatch.setenv("CLOUDVAULT_VAULT_ADDR", "http://vault.test")
    monkeypatch.setenv("CLOUDVAULT_VAULT_TOKEN", ROOT_TOKEN)
    monkeypatch.setattr(cli, "build_engine", lambda: utils.build_engine(transport=fake.transport()))
    return fake


class TestInit:
    def test_init_command(self, temp_dir: str) -> None:
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Initialized cloudvault" in result.output
        assert os.path.exists(".cloudvault/config.yaml")
        assert os.path.exists(".cloudvault/store.db")

    def test_init_already_initialized(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.output


class TestConfigCommands:
    def test_set_and_get(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "set", "DATABASE_URL", "postgres://localhost/app"])
        assert result.exit_code == 0
        assert "Set DATABASE_URL in development (version 1)" in result.output

        result = runner.invoke(app, ["config", "set", "DATABASE_URL", "postgres://db/app", "-m", "move db"])
        assert result.exit_code == 0
        assert "(version 2)" in result.output

        result = runner.invoke(app, ["config", "get", "DATABASE_URL", "--quiet"])
        assert result.exit_code == 0
        assert result.output.strip() == "postgres://db/app"

    def test_typed_values(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "set", "PORT", "8080", "--type", "number"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["config", "get", "PORT", "--json"])
        data = json.loads(result.stdout)
        assert data["value"] == 8080
        assert data["type"] == "number"

    def test_invalid_typed_value(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "set", "PORT", "eighty", "--type", "number"])

        assert result.exit_code == 1
        assert "Failed to set configuration" in result.output

    def test_invalid_tag(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "set", "KEY", "value", "--tag", "production"])

        assert result.exit_code == 1
        assert "Invalid tag" in result.output

    def test_secret_value_is_redacted(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "set", "API_TOKEN", "t0k3n", "--secret", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["value"] == REDACTED

        result = runner.invoke(app, ["config", "get", "API_TOKEN", "--quiet"])
        assert result.output.strip() == "t0k3n"

        with open(".cloudvault/store.db", "rb") as f:
            assert b"t0k3n" not in f.read()

    def test_get_nonexistent(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "get", "MISSING"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_list(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "postgres://localhost/app"])
        runner.invoke(app, ["config", "set", "CACHE_URL", "redis://localhost"])

        result = runner.invoke(app, ["config", "list"])
        assert result.exit_code == 0
        assert "Total: 2 configuration(s)" in result.output

        result = runner.invoke(app, ["config", "list", "--search", "CACHE", "--json"])
        assert [c["key"] for c in json.loads(result.stdout)] == ["CACHE_URL"]

    def test_list_empty(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["config", "list"])

        assert result.exit_code == 0
        assert "No configurations found" in result.output

    def test_environments_are_isolated(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DEBUG", "true", "--type", "boolean", "--env", "staging"])

        result = runner.invoke(app, ["config", "get", "DEBUG"])
        assert result.exit_code == 1

        result = runner.invoke(app, ["config", "get", "DEBUG", "--env", "staging", "--quiet"])
        assert result.output.strip() == "true"

    def test_history_and_rollback(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "v1"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "v2"])

        result = runner.invoke(app, ["config", "history", "DATABASE_URL"])
        assert result.exit_code == 0
        assert "History for DATABASE_URL" in result.output

        result = runner.invoke(app, ["config", "rollback", "DATABASE_URL", "1", "--force"])
        assert result.exit_code == 0
        assert "now version 3" in result.output

        result = runner.invoke(app, ["config", "get", "DATABASE_URL", "--quiet"])
        assert result.output.strip() == "v1"

        result = runner.invoke(app, ["config", "history", "DATABASE_URL", "--json"])
        assert [v["version"] for v in json.loads(result.stdout)] == [1, 2, 3]

    def test_rollback_to_missing_version(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "v1"])

        result = runner.invoke(app, ["config", "rollback", "DATABASE_URL", "7", "--force"])

        assert result.exit_code == 1
        assert "Failed to rollback" in result.output

    def test_delete(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "v1"])

        result = runner.invoke(app, ["config", "delete", "DATABASE_URL", "--force"])
        assert result.exit_code == 0
        assert "Deleted DATABASE_URL" in result.output

        result = runner.invoke(app, ["config", "get", "DATABASE_URL"])
        assert result.exit_code == 1

    def test_delete_cancelled(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "v1"])

        result = runner.invoke(app, ["config", "delete", "DATABASE_URL"], input="n\n")
        assert "Cancelled" in result.output

        result = runner.invoke(app, ["config", "get", "DATABASE_URL", "--quiet"])
        assert result.output.strip() == "v1"

    def test_export_and_import(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "postgres://localhost/app"])
        runner.invoke(app, ["config", "set", "WORKERS", "4", "--type", "number"])

        result = runner.invoke(app, ["config", "export", "-o", "development.json"])
        assert result.exit_code == 0
        assert os.path.exists("development.json")

        result = runner.invoke(app, ["config", "import", "development.json", "--env", "staging"])
        assert result.exit_code == 0
        assert "Imported 2 configuration(s) into staging" in result.output

        result = runner.invoke(app, ["config", "get", "WORKERS", "--env", "staging", "--quiet"])
        assert result.output.strip() == "4"

        result = runner.invoke(app, ["config", "import", "development.json", "--env", "staging"])
        assert result.exit_code == 1

    def test_export_env_format(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["config", "set", "DATABASE_URL", "postgres://localhost/app"])

        result = runner.invoke(app, ["config", "export", "--format", "env"])

        assert result.exit_code == 0
        assert "DATABASE_URL=postgres://localhost/app" in result.output


class TestTemplateCommands:
    def test_create_and_apply(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        with open("schema.json", "w") as f:
            json.dump(DATABASE_SCHEMA, f)
        with open("defaults.yaml", "w") as f:
            f.write("host: localhost\nport: 5432\n")

        result = runner.invoke(app, ["template", "create", "postgres", "schema.json", "--defaults", "defaults.yaml"])
        assert result.exit_code == 0
        assert "Created template postgres" in result.output

        result = runner.invoke(app, ["template", "list"])
        assert "postgres" in result.output

        result = runner.invoke(app, ["template", "apply", "postgres", "--set", "password=s3cret"])
        assert result.exit_code == 0
        assert "3 configuration(s) created" in result.output

        result = runner.invoke(app, ["config", "get", "port", "--quiet"])
        assert result.output.strip() == "5432"

        result = runner.invoke(app, ["config", "list", "--json"])
        secrets = {c["key"]: c["is_secret"] for c in json.loads(result.stdout)}
        assert secrets == {"host": False, "port": False, "password": True}

    def test_apply_invalid_override(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])
        with open("schema.json", "w") as f:
            json.dump(DATABASE_SCHEMA, f)
        runner.invoke(app, ["template", "create", "postgres", "schema.json"])

        result = runner.invoke(app, ["template", "apply", "postgres", "--set", "host=db", "--set", "port=high"])

        assert result.exit_code == 1
        assert "Failed to apply template" in result.output

    def test_apply_unknown_template(self, temp_dir: str) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["template", "apply", "missing"])

        assert result.exit_code == 1


class TestSecretCommands:
    def test_secret_lifecycle(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["secret", "create", "db-password", "--type", "password", "--value", "hunter2"])
        assert result.exit_code == 0
        assert "Created secret db-password" in result.output

        result = runner.invoke(app, ["secret", "get", "db-password"])
        assert result.exit_code == 0
        assert result.output.strip() == "hunter2"

        result = runner.invoke(app, ["secret", "set", "db-password", "correct-horse"])
        assert result.exit_code == 0
        assert "(version 3)" in result.output

        result = runner.invoke(app, ["secret", "rollback", "db-password", "2", "--force"])
        assert result.exit_code == 0
        assert "now version 4" in result.output

        result = runner.invoke(app, ["secret", "get", "db-password"])
        assert result.output.strip() == "hunter2"

        result = runner.invoke(app, ["secret", "list"])
        assert result.exit_code == 0
        assert "Total: 1 secret(s)" in result.output

        result = runner.invoke(app, ["secret", "audit", "db-password", "--json"])
        actions = [e["action"] for e in json.loads(result.stdout)]
        assert actions[0] == "read"
        assert actions[-1] == "create"

        result = runner.invoke(app, ["secret", "delete", "db-password", "--force"])
        assert result.exit_code == 0
        assert "Deleted secret db-password" in result.output
        assert fake_backend.count("DELETE", "/v1/secret/data/environments/development/secrets/db-password") == 1

    def test_plaintext_stays_in_backend(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["secret", "create", "stripe-key", "--value", "sk_live_abc123"])

        with open(".cloudvault/store.db", "rb") as f:
            assert b"sk_live_abc123" not in f.read()
        with open(".cloudvault/audit.log") as f:
            assert "sk_live_abc123" not in f.read()

    def test_rotate(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["secret", "create", "stripe-key", "--type", "api_key", "--rotation", "api_key"])

        result = runner.invoke(app, ["secret", "rotate", "stripe-key"])
        assert result.exit_code == 0
        assert "Rotated stripe-key (version 2)" in result.output

        result = runner.invoke(app, ["secret", "get", "stripe-key"])
        assert result.output.strip().startswith("ak_")

    def test_rotate_without_rotation(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["secret", "create", "plain"])

        result = runner.invoke(app, ["secret", "rotate", "plain"])

        assert result.exit_code == 1
        assert "Failed to rotate secret" in result.output

    def test_other_principal_is_denied(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])
        runner.invoke(app, ["secret", "create", "db-password", "--value", "hunter2", "--principal", "alice"])

        result = runner.invoke(app, ["secret", "get", "db-password", "--principal", "mallory"])
        assert result.exit_code == 1
        assert "Failed to get secret" in result.output

        result = runner.invoke(app, ["secret", "get", "db-password", "--principal", "alice"])
        assert result.output.strip() == "hunter2"

    def test_get_missing_secret(self, fake_backend: FakeVault) -> None:
        runner.invoke(app, ["init"])

        result = runner.invoke(app, ["secret", "get", "missing"])

        assert result.exit_code == 1
        assert "Failed to get secret" in result.output
