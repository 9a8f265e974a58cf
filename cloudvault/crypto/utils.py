import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError

from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.errors import EncryptionKeyError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "cloudvault"
KEYRING_USERNAME = "master-key"
DEFAULT_KEY_ENV = "CLOUDVAULT_ENCRYPTION_KEY"


def load_master_key(
    explicit: Optional[str] = None,
    *,
    key_env: str = DEFAULT_KEY_ENV,
    use_keyring: bool = True,
    environment: str = "development",
) -> bytes:
    """Resolve the 256-bit master key.

    Order: explicit hex key, ``key_env`` environment variable, system keyring,
    then a freshly generated key. The generated fallback is refused in
    production and stored in the keyring when one is available.
    """
    if explicit:
        return EncryptionEngine.string_to_key(explicit)

    env_key = os.getenv(key_env)
    if env_key:
        return EncryptionEngine.string_to_key(env_key)

    if use_keyring:
        try:
            key_string = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
        except KeyringError as e:
            logger.debug("System keyring unavailable: %s", e)
            key_string = None
        if key_string:
            return EncryptionEngine.string_to_key(key_string)

    if environment == "production":
        raise EncryptionKeyError(
            f"No encryption key configured. Set {key_env} to a 64-character hex key."
        )

    key = EncryptionEngine.generate_key()
    logger.warning(
        "GENERATED A RANDOM ENCRYPTION KEY. This is for development only; set %s "
        "to keep encrypted configuration readable across restarts.",
        key_env,
    )
    if use_keyring:
        try:
            keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, EncryptionEngine.key_to_string(key))
        except KeyringError as e:
            logger.warning("Could not save generated key to the system keyring: %s", e)
    return key
