import pytest

from cloudvault import CloudVault
from cloudvault.config import ConfigManager
from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.errors import ValidationError
from cloudvault.models import AppConfig, RotationSettings, VaultConfig
from cloudvault.storage.local import SQLiteStorage

from conftest import ROOT_TOKEN, FakeVault


@pytest.fixture
def project(tmp_path, monkeypatch) -> ConfigManager:
    monkeypatch.chdir(tmp_path)
    for name in ("CLOUDVAULT_VAULT_ADDR", "CLOUDVAULT_VAULT_TOKEN", "CLOUDVAULT_ENV", "CLOUDVAULT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    manager = ConfigManager()
    manager.initialize()
    return manager


class TestConfigManager:
    def test_initialize_writes_defaults(self, project: ConfigManager) -> None:
        assert project.is_initialized()

        config = project.load_config()
        assert config == AppConfig()

    def test_round_trip(self, project: ConfigManager) -> None:
        config = AppConfig(environment="staging", vault=VaultConfig(endpoint="https://vault.internal:8200"))

        project.save_config(config)

        loaded = project.load_config()
        assert loaded.environment == "staging"
        assert loaded.vault.endpoint == "https://vault.internal:8200"

    def test_env_overrides(self, project: ConfigManager, monkeypatch) -> None:
        monkeypatch.setenv("CLOUDVAULT_VAULT_ADDR", "http://vault.test")
        monkeypatch.setenv("CLOUDVAULT_VAULT_TOKEN", "s.abc")
        monkeypatch.setenv("CLOUDVAULT_ENV", "production")
        monkeypatch.setenv("CLOUDVAULT_LOG_LEVEL", "DEBUG")

        config = project.load_config()

        assert config.vault.endpoint == "http://vault.test"
        assert config.vault.token == "s.abc"
        assert config.environment == "production"
        assert config.logging.level == "DEBUG"

    def test_invalid_yaml(self, project: ConfigManager) -> None:
        project.config_path.write_text("vault: [unclosed\n")

        with pytest.raises(ValidationError):
            project.load_config()

    def test_non_mapping_config(self, project: ConfigManager) -> None:
        project.config_path.write_text("- just\n- a list\n")

        with pytest.raises(ValidationError):
            project.load_config()

    def test_bad_field_is_reported(self, project: ConfigManager) -> None:
        project.config_path.write_text("vault:\n  max_retries: lots\n")

        with pytest.raises(ValidationError) as exc_info:
            project.load_config()

        assert [v.field for v in exc_info.value.violations] == ["vault.max_retries"]

    def test_found_from_subdirectory(self, project: ConfigManager, tmp_path, monkeypatch) -> None:
        nested = tmp_path / "services" / "api"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        manager = ConfigManager()
        assert manager.is_initialized()
        assert manager.get_storage_path() == str(tmp_path / ".cloudvault" / "store.db")
        assert manager.get_audit_path() == str(tmp_path / ".cloudvault" / "audit.log")

    def test_storage_url_passes_through(self, project: ConfigManager) -> None:
        config = AppConfig()
        config.storage.path = "sqlite:///:memory:"

        assert project.get_storage_path(config) == "sqlite:///:memory:"

    def test_audit_mirror_can_be_disabled(self, project: ConfigManager) -> None:
        config = AppConfig()
        config.audit.path = None

        assert project.get_audit_path(config) is None


class TestCloudVault:
    def test_wires_services(self, tmp_path) -> None:
        storage = SQLiteStorage(str(tmp_path / "store.db"))
        storage.initialize()
        key = EncryptionEngine.key_to_string(EncryptionEngine.generate_key())
        fake = FakeVault()
        config = AppConfig(vault=VaultConfig(endpoint="http://vault.test", token=ROOT_TOKEN, retry_delay=0))

        with CloudVault(config, storage=storage, master_key=key, transport=fake.transport()) as vault:
            vault.configurations.create(
                {"environment_id": "env-1", "name": "db", "key": "DB_PASSWORD", "value": "pw", "is_secret": True}
            )
            secret = vault.secrets.create_secret({"name": "api", "environment_id": "env-1"})
            vault.secrets.set_secret_value(secret.id, "v")

            assert vault.connector.is_connected()
            assert vault.scheduler.scheduler.running
            assert vault.configurations.get_by_key("env-1", "DB_PASSWORD").value == "pw"
            assert vault.secrets.get_secret_value(secret.id) == "v"

        assert not vault.connector.is_connected()
        assert fake.revoked == [ROOT_TOKEN]

    def test_rotation_can_be_disabled(self, tmp_path) -> None:
        storage = SQLiteStorage(str(tmp_path / "store.db"))
        storage.initialize()
        key = EncryptionEngine.key_to_string(EncryptionEngine.generate_key())
        config = AppConfig(rotation=RotationSettings(enabled=False))

        vault = CloudVault(config, storage=storage, master_key=key)
        try:
            assert vault.scheduler is None
            assert vault.secrets.scheduler is None
        finally:
            vault.close()
