import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cloudvault.errors import DecryptionError, EncryptionKeyError, ValueNotEncryptedError

logger = logging.getLogger(__name__)

PREFIX = "enc:"
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


class EncryptionEngine:
    """AES-256-GCM for configuration values flagged secret.

    Tokens look like ``enc:`` + base64(iv || ciphertext || tag). Every call to
    :meth:`encrypt` draws a fresh 16-byte IV, so the same plaintext never
    produces the same token twice.
    """

    def __init__(self, master_key: Optional[bytes] = None) -> None:
        if master_key is None:
            master_key = self.generate_key()
            logger.warning(
                "No encryption key supplied; using a generated key. Values encrypted now "
                "cannot be decrypted after restart. Set CLOUDVAULT_ENCRYPTION_KEY for production."
            )
        elif len(master_key) != KEY_LENGTH:
            raise EncryptionKeyError(f"Encryption key must be {KEY_LENGTH} bytes long")

        self.master_key = master_key
        self.aesgcm = AESGCM(master_key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        ciphertext = self.aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return PREFIX + base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not self.is_encrypted(token):
            raise ValueNotEncryptedError("Value is not encrypted")

        try:
            combined = base64.b64decode(token[len(PREFIX):].encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise DecryptionError(f"Decryption failed: malformed token ({e})") from e

        if len(combined) < IV_LENGTH + TAG_LENGTH:
            raise DecryptionError("Decryption failed: token too short")

        iv = combined[:IV_LENGTH]
        ciphertext = combined[IV_LENGTH:]
        try:
            plaintext = self.aesgcm.decrypt(iv, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("Decryption failed: integrity check failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    @staticmethod
    def is_encrypted(value: object) -> bool:
        return isinstance(value, str) and value.startswith(PREFIX)

    def safe_encrypt(self, value: str) -> str:
        if self.is_encrypted(value):
            return value
        return self.encrypt(value)

    def safe_decrypt(self, value: str) -> str:
        if self.is_encrypted(value):
            return self.decrypt(value)
        return value

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=256)

    @staticmethod
    def key_to_string(key: bytes) -> str:
        return key.hex()

    @staticmethod
    def string_to_key(key_string: str) -> bytes:
        try:
            return bytes.fromhex(key_string.strip())
        except ValueError as e:
            raise EncryptionKeyError(f"Encryption key is not valid hex: {e}") from e
