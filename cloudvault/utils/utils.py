from typing import Optional

import httpx

from cloudvault import CloudVault
from cloudvault.config import ConfigManager
from cloudvault.models import AppConfig
from cloudvault.storage.local import SQLiteStorage
from cloudvault.utils.logging_config import configure_logging


def load_project(config_manager: Optional[ConfigManager] = None) -> tuple[ConfigManager, AppConfig]:
    config_manager = config_manager or ConfigManager()
    config = config_manager.load_config()
    configure_logging(config.logging.level)
    return config_manager, config


def get_storage(config_manager: ConfigManager, config: AppConfig) -> SQLiteStorage:
    storage = SQLiteStorage(config_manager.get_storage_path(config))
    storage.initialize()
    return storage


def build_engine(
    config_manager: Optional[ConfigManager] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> CloudVault:
    """Wire a :class:`CloudVault` for the project found from the working directory."""
    config_manager, config = load_project(config_manager)
    return CloudVault(
        config,
        storage=get_storage(config_manager, config),
        audit_path=config_manager.get_audit_path(config),
        transport=transport,
    )
