"""Exception classes for cloudvault.

Every error carries a stable ``code`` so callers can build precise messages
without parsing free text.
"""

from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError


class Violation(BaseModel):
    field: str
    message: str


class CloudVaultError(Exception):
    """Base exception for cloudvault."""

    code = "CLOUDVAULT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(CloudVaultError):
    """Input failed one or more validation rules."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, violations: Optional[list[Violation]] = None) -> None:
        self.violations = violations or []
        if self.violations:
            message = f"{message}: " + "; ".join(v.message for v in self.violations)
        super().__init__(message)

    @classmethod
    def from_messages(cls, message: str, errors: list[tuple[str, str]]) -> "ValidationError":
        return cls(message, [Violation(field=f, message=m) for f, m in errors])

    @classmethod
    def from_pydantic(cls, message: str, error: PydanticValidationError) -> "ValidationError":
        """One violation per pydantic error, keyed by the dotted location of the bad field."""
        return cls.from_messages(
            message,
            [(".".join(str(p) for p in e["loc"]) or "input", e["msg"]) for e in error.errors()],
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = [v.model_dump() for v in self.violations]
        return data


class ConflictError(CloudVaultError):
    code = "CONFLICT"


class ConcurrentModificationError(ConflictError):
    """A versioned write lost the compare-and-swap race."""

    code = "CONCURRENT_MODIFICATION"


class NotFoundError(CloudVaultError):
    code = "NOT_FOUND"


class DecryptionError(CloudVaultError):
    code = "DECRYPTION_FAILED"


class ValueNotEncryptedError(DecryptionError):
    code = "VALUE_NOT_ENCRYPTED"


class EncryptionKeyError(CloudVaultError):
    code = "INVALID_ENCRYPTION_KEY"


class ConnectionError(CloudVaultError):
    """Connection to the secret backend failed."""

    code = "CONNECTION_ERROR"


class NotConnectedError(ConnectionError):
    code = "NOT_CONNECTED"


class VaultRequestError(CloudVaultError):
    """The secret backend rejected a request (4xx)."""

    code = "BACKEND_REQUEST_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class SecretRetrievalError(CloudVaultError):
    code = "SECRET_RETRIEVAL_FAILED"


class RotationDisabledError(CloudVaultError):
    code = "ROTATION_DISABLED"


class UnknownRotationTypeError(CloudVaultError):
    code = "UNKNOWN_ROTATION_TYPE"


class RotationInProgressError(ConflictError):
    code = "ROTATION_IN_PROGRESS"


class PermissionDeniedError(CloudVaultError):
    code = "PERMISSION_DENIED"


class DataSourceUnavailableError(CloudVaultError):
    """Durable storage could not be reached. Never papered over with fallback data."""

    code = "DATA_SOURCE_UNAVAILABLE"
