import pytest

from cloudvault.errors import (
    ConnectionError as VaultConnectionError,
    NotFoundError,
    PermissionDeniedError,
    SecretRetrievalError,
    ValidationError,
)
from cloudvault.models import SecretAction, SecretFilter, SecretType
from cloudvault.secrets.service import SecretsService, calculate_checksum, generate_secret_path
from cloudvault.storage.local import SQLiteStorage

from conftest import FakeVault


@pytest.fixture
def secret(secrets_service: SecretsService):
    return secrets_service.create_secret(
        {
            "name": "db-password",
            "environment_id": "env-1",
            "type": SecretType.PASSWORD,
            "description": "primary database",
            "created_by": "alice",
        }
    )


def backend_path(secret) -> str:
    return f"/v1/secret/data/{secret.path}"


class TestSecretPaths:
    def test_generate_secret_path_sanitizes_name(self) -> None:
        assert generate_secret_path("env-1", "api key/v2!") == "environments/env-1/secrets/api_key_v2_"

    def test_checksum_is_sha256_hex(self) -> None:
        assert calculate_checksum("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestSecretMetadata:
    def test_create_secret(self, secrets_service: SecretsService, secret) -> None:
        assert secret.version == 1
        assert secret.path == "environments/env-1/secrets/db-password"
        assert secrets_service.get_secret(secret.id).name == "db-password"
        assert secrets_service.get_secret_by_path(secret.path).id == secret.id

        logs = secrets_service.get_audit_logs(secret.id)
        assert [e.action for e in logs] == [SecretAction.CREATE]
        assert logs[0].principal_id == "alice"

    def test_update_secret(self, secrets_service: SecretsService, secret) -> None:
        updated = secrets_service.update_secret(
            secret.id, {"description": "replica", "tags": {"team": "db"}}, principal_id="alice"
        )

        assert updated.description == "replica"
        assert updated.tags == {"team": "db"}
        assert updated.version == 1
        assert secrets_service.get_audit_logs(secret.id)[0].metadata == {"fields": ["description", "tags"]}

    def test_list_and_search(self, secrets_service: SecretsService, secret) -> None:
        secrets_service.create_secret({"name": "stripe-key", "environment_id": "env-1", "type": "api_key"})
        secrets_service.create_secret({"name": "db-password", "environment_id": "env-2"})

        assert len(secrets_service.list_secrets(SecretFilter(environment_id="env-1"))) == 2
        assert [s.name for s in secrets_service.list_secrets(SecretFilter(type=SecretType.API_KEY))] == ["stripe-key"]
        assert [s.environment_id for s in secrets_service.search_secrets("db-pass")] == ["env-1", "env-2"]

    def test_missing_secret(self, secrets_service: SecretsService) -> None:
        assert secrets_service.get_secret("missing") is None
        with pytest.raises(NotFoundError):
            secrets_service.get_secret_value("missing")
        with pytest.raises(NotFoundError):
            secrets_service.delete_secret("missing")

    def test_malformed_request_names_bad_fields(self, secrets_service: SecretsService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            secrets_service.create_secret({"environment_id": "env-1", "rotation_config": {"interval": -1}})

        fields = {v.field for v in exc_info.value.violations}
        assert fields == {"name", "rotation_config.interval"}
        assert secrets_service.list_secrets() == []


class TestSecretValues:
    def test_set_and_get_value(
        self, secrets_service: SecretsService, storage: SQLiteStorage, secret
    ) -> None:
        version = secrets_service.set_secret_value(secret.id, "hunter2", principal_id="alice")

        assert version.version == 2
        assert version.backend_version == 1
        assert version.is_active
        assert version.value_hash == calculate_checksum("hunter2")
        assert version.metadata.size == 7

        assert secrets_service.get_secret_value(secret.id, principal_id="alice") == "hunter2"
        assert storage.get_secret(secret.id).last_accessed_at is not None

        actions = [e.action for e in reversed(secrets_service.get_audit_logs(secret.id))]
        assert actions == [SecretAction.CREATE, SecretAction.UPDATE, SecretAction.READ]

    def test_plaintext_never_stored_locally(
        self, secrets_service: SecretsService, storage: SQLiteStorage, fake_vault: FakeVault, secret
    ) -> None:
        plaintext = "correct-horse-battery-staple"
        secrets_service.set_secret_value(secret.id, plaintext)

        assert plaintext not in storage.get_secret(secret.id).model_dump_json()
        for version in storage.find_secret_versions(secret.id):
            assert plaintext not in version.model_dump_json()
        for entry in storage.iter_audit_logs():
            assert plaintext not in entry.model_dump_json()

        # the value lives in the backend only
        assert fake_vault.kv[secret.path]["versions"][1]["data"] == {"value": plaintext}

    def test_only_newest_version_is_active(self, secrets_service: SecretsService, secret) -> None:
        for value in ("one", "two", "three"):
            secrets_service.set_secret_value(secret.id, value)

        versions = secrets_service.get_secret_versions(secret.id)
        assert [(v.version, v.is_active) for v in versions] == [(2, False), (3, False), (4, True)]
        assert secrets_service.get_secret_version(secret.id, 3).backend_version == 2
        assert secrets_service.get_secret(secret.id).version == 4

    def test_read_without_value_fails(self, secrets_service: SecretsService, secret) -> None:
        with pytest.raises(SecretRetrievalError):
            secrets_service.get_secret_value(secret.id)

        failed = secrets_service.get_audit_logs(secret.id)[0]
        assert failed.action == SecretAction.READ
        assert not failed.success

    def test_backend_outage_on_write(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        fake_vault.fail_next(503, count=3, path_prefix=backend_path(secret))

        with pytest.raises(VaultConnectionError):
            secrets_service.set_secret_value(secret.id, "hunter2")

        assert secrets_service.get_secret(secret.id).version == 1
        assert secrets_service.get_secret_versions(secret.id) == []
        failed = secrets_service.get_audit_logs(secret.id)[0]
        assert failed.action == SecretAction.UPDATE and not failed.success

    def test_backend_outage_on_read(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        secrets_service.set_secret_value(secret.id, "hunter2")
        fake_vault.fail_next(500, count=3, path_prefix=backend_path(secret))

        with pytest.raises(SecretRetrievalError):
            secrets_service.get_secret_value(secret.id)


class TestSecretRollback:
    def test_rollback_writes_new_version(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        secrets_service.set_secret_value(secret.id, "one")
        secrets_service.set_secret_value(secret.id, "two")

        rolled_back = secrets_service.rollback_secret(secret.id, 2, reason="bad deploy")

        assert rolled_back.version == 4
        assert secrets_service.get_secret_value(secret.id) == "one"
        assert secrets_service.get_secret_version(secret.id, 2).value_hash == calculate_checksum("one")
        assert len(fake_vault.kv[secret.path]["versions"]) == 3

        entry = [e for e in secrets_service.get_audit_logs(secret.id) if e.action == SecretAction.UPDATE][0]
        assert entry.metadata == {"version": 4, "rollback_to": 2, "reason": "bad deploy"}

    def test_rollback_to_unknown_version(self, secrets_service: SecretsService, secret) -> None:
        with pytest.raises(NotFoundError):
            secrets_service.rollback_secret(secret.id, 9)

    def test_rollback_detects_tampered_backend_value(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        secrets_service.set_secret_value(secret.id, "one")
        secrets_service.set_secret_value(secret.id, "two")
        fake_vault.kv[secret.path]["versions"][1]["data"] = {"value": "forged"}

        with pytest.raises(SecretRetrievalError):
            secrets_service.rollback_secret(secret.id, 2)

        assert secrets_service.get_secret(secret.id).version == 3


class TestSecretAccessChecks:
    def test_denied_read_is_audited_and_skips_backend(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        secrets_service.set_secret_value(secret.id, "hunter2", principal_id="alice")
        reads_before = fake_vault.count("GET", backend_path(secret))

        with pytest.raises(PermissionDeniedError):
            secrets_service.get_secret_value(secret.id, principal_id="mallory")

        assert fake_vault.count("GET", backend_path(secret)) == reads_before
        denied = secrets_service.get_audit_logs(secret.id)[0]
        assert denied.principal_id == "mallory"
        assert denied.action == SecretAction.READ
        assert not denied.success
        assert "lacks 'read'" in denied.error_message

    def test_denied_mutations(self, secrets_service: SecretsService, secret) -> None:
        with pytest.raises(PermissionDeniedError):
            secrets_service.set_secret_value(secret.id, "x", principal_id="mallory")
        with pytest.raises(PermissionDeniedError):
            secrets_service.update_secret(secret.id, {"description": "x"}, principal_id="mallory")
        with pytest.raises(PermissionDeniedError):
            secrets_service.delete_secret(secret.id, principal_id="mallory")
        with pytest.raises(PermissionDeniedError):
            secrets_service.grant_access(
                secret.id, {"name": "p", "principal_id": "mallory", "permissions": ["read"]}, principal_id="mallory"
            )

        failures = [e for e in secrets_service.get_audit_logs(secret.id) if not e.success]
        assert len(failures) == 4
        assert secrets_service.get_secret(secret.id) is not None

    def test_granted_read_only(self, secrets_service: SecretsService, secret) -> None:
        secrets_service.set_secret_value(secret.id, "hunter2", principal_id="alice")
        secrets_service.grant_access(
            secret.id,
            {"name": "bob-read", "principal_id": "bob", "permissions": ["read"]},
            principal_id="alice",
        )

        assert secrets_service.get_secret_value(secret.id, principal_id="bob") == "hunter2"
        assert secrets_service.check_access(secret.id, "bob", "read")
        assert not secrets_service.check_access(secret.id, "bob", "write")
        with pytest.raises(PermissionDeniedError):
            secrets_service.set_secret_value(secret.id, "x", principal_id="bob")

        secrets_service.revoke_access(secret.id, "bob", principal_id="alice")
        with pytest.raises(PermissionDeniedError):
            secrets_service.get_secret_value(secret.id, principal_id="bob")

        actions = {e.action for e in secrets_service.get_audit_logs(secret.id)}
        assert {SecretAction.GRANT_ACCESS, SecretAction.REVOKE_ACCESS} <= actions


class TestSecretDeletion:
    def test_delete_secret(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        secrets_service.set_secret_value(secret.id, "hunter2")

        secrets_service.delete_secret(secret.id, principal_id="alice")

        assert secrets_service.get_secret(secret.id) is None
        assert secrets_service.get_secret_versions(secret.id) == []
        assert fake_vault.count("DELETE", backend_path(secret)) == 1
        assert secrets_service.get_audit_logs(secret.id)[0].action == SecretAction.DELETE

    def test_delete_survives_backend_failure(
        self, secrets_service: SecretsService, fake_vault: FakeVault, secret
    ) -> None:
        fake_vault.fail_next(500, count=3, path_prefix=backend_path(secret))

        secrets_service.delete_secret(secret.id)

        assert secrets_service.get_secret(secret.id) is None
