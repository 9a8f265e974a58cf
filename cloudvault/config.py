import os
from pathlib import Path
from typing import Any, Optional

import yaml

from cloudvault.errors import ValidationError
from cloudvault.models import AppConfig, parse_model

ENV_OVERRIDES = {
    "CLOUDVAULT_VAULT_ADDR": ("vault", "endpoint"),
    "CLOUDVAULT_VAULT_TOKEN": ("vault", "token"),
    "CLOUDVAULT_VAULT_ROLE_ID": ("vault", "role_id"),
    "CLOUDVAULT_VAULT_SECRET_ID": ("vault", "secret_id"),
    "CLOUDVAULT_ENV": (None, "environment"),
    "CLOUDVAULT_LOG_LEVEL": ("logging", "level"),
}


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, field) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        if section is None:
            data[field] = value
        else:
            data.setdefault(section, {})[field] = value
    return data


class ConfigManager:

    DEFAULT_CONFIG_DIR = ".cloudvault"
    DEFAULT_CONFIG_FILE = "config.yaml"

    def __init__(self, config_dir: str = DEFAULT_CONFIG_DIR) -> None:
        self.config_dir = config_dir

    def initialize(self) -> None:
        Path(self.config_dir).mkdir(parents=True, exist_ok=True)

        if self.config_path is None or not self.config_path.exists():
            self.save_config(AppConfig())

    @property
    def config_path(self) -> Optional[Path]:
        return self.get_config_path()

    def find_root(self) -> Optional[Path]:
        current = Path.cwd()
        while current != current.parent:
            if (current / self.config_dir).is_dir():
                return current
            current = current.parent
        return None

    def get_config_path(self) -> Optional[Path]:
        root = self.find_root()
        if root is None:
            return None
        return root / self.config_dir / self.DEFAULT_CONFIG_FILE

    def is_initialized(self) -> bool:
        return self.config_path is not None and self.config_path.exists()

    def load_config(self) -> AppConfig:
        """Read ``config.yaml`` (defaults when absent) and apply environment overrides."""
        data: dict[str, Any] = {}
        path = self.config_path
        if path is not None and path.exists():
            try:
                with open(path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValidationError.from_messages(
                    "Invalid configuration file", [(str(path), str(e))]
                ) from e
            if not isinstance(data, dict):
                raise ValidationError.from_messages(
                    "Invalid configuration file", [(str(path), "Top level must be a mapping")]
                )

        return parse_model(AppConfig, apply_env_overrides(data), "Invalid configuration file")

    def save_config(self, config: AppConfig) -> None:
        path = self.config_path or Path(self.config_dir) / self.DEFAULT_CONFIG_FILE
        with open(path, "w") as f:
            yaml.safe_dump(config.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

    def _resolve(self, configured: str) -> str:
        if os.path.isabs(configured):
            return configured
        root = self.find_root() or Path.cwd()
        return str(root / self.config_dir / os.path.basename(configured))

    def get_storage_path(self, config: Optional[AppConfig] = None) -> str:
        config = config or self.load_config()
        if "://" in config.storage.path:
            return config.storage.path
        return self._resolve(config.storage.path)

    def get_audit_path(self, config: Optional[AppConfig] = None) -> Optional[str]:
        config = config or self.load_config()
        if not config.audit.path:
            return None
        return self._resolve(config.audit.path)
