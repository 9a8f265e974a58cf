import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional, Union

from cloudvault.models import (
    SYSTEM_PRINCIPAL,
    PrincipalType,
    SecretAction,
    SecretAuditLog,
    utc_now,
)
from cloudvault.storage.base import StorageBackend

logger = logging.getLogger(__name__)

SERVICE_PREFIXES = ("svc:", "service:")


def infer_principal_type(principal_id: str) -> PrincipalType:
    if principal_id == SYSTEM_PRINCIPAL:
        return PrincipalType.SYSTEM
    if principal_id.startswith(SERVICE_PREFIXES):
        return PrincipalType.SERVICE
    return PrincipalType.USER


def compute_entry_hash(entry: SecretAuditLog, prev_hash: str) -> str:
    payload = {
        "secret_id": entry.secret_id,
        "action": entry.action.value,
        "principal_id": entry.principal_id,
        "principal_type": entry.principal_type.value,
        "success": entry.success,
        "error_message": entry.error_message,
        "metadata": entry.metadata,
        "timestamp": entry.timestamp.isoformat(),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256((prev_hash + canonical).encode("utf-8")).hexdigest()


class AuditLog:
    """Append-only trail of secret access and mutation.

    Entries go to the storage backend, each one chained to its predecessor by
    ``entry_hash = sha256(prev_hash + canonical entry)``. When ``mirror_path``
    is set every entry is also appended to a JSON-lines file.

    ``enabled=False`` and ``log_reads=False`` are operator overrides from the
    ``audit`` config section. Both default to recording everything and both
    log a warning when the log is built with them switched off.
    """

    def __init__(
        self,
        storage: StorageBackend,
        mirror_path: Optional[str] = None,
        enabled: bool = True,
        log_reads: bool = True,
    ) -> None:
        self.storage = storage
        self.mirror_path = mirror_path
        self.enabled = enabled
        self.log_reads = log_reads
        self._lock = threading.Lock()

        if not enabled:
            logger.warning("Audit logging is disabled: secret operations will not be recorded")
        elif not log_reads:
            logger.warning("Audit logging of secret reads is disabled: read entries will not be recorded")

        if mirror_path:
            log_dir = os.path.dirname(mirror_path)
            if log_dir:
                Path(log_dir).mkdir(parents=True, exist_ok=True)

    def record(
        self,
        secret_id: str,
        principal_id: str,
        action: Union[SecretAction, str],
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        principal_type: Optional[PrincipalType] = None,
    ) -> Optional[SecretAuditLog]:
        if not self.enabled:
            return None

        action = SecretAction(action)
        if not self.log_reads and action == SecretAction.READ:
            return None

        with self._lock:
            last = self.storage.last_audit_log()
            prev_hash = last.entry_hash if last else ""

            entry = SecretAuditLog(
                id=0,
                secret_id=secret_id,
                action=action,
                principal_id=principal_id,
                principal_type=principal_type or infer_principal_type(principal_id),
                success=success,
                error_message=error_message,
                metadata=metadata or {},
                timestamp=utc_now(),
                prev_hash=prev_hash,
            )
            entry.entry_hash = compute_entry_hash(entry, prev_hash)
            stored = self.storage.append_audit_log(entry)

        self._mirror(stored)
        return stored

    def _mirror(self, entry: SecretAuditLog) -> None:
        if not self.mirror_path:
            return
        try:
            with open(self.mirror_path, "a") as f:
                f.write(json.dumps(entry.model_dump(mode="json")) + "\n")
        except OSError as e:
            logger.warning("Could not write audit mirror %s: %s", self.mirror_path, e)

    def get_audit_logs(
        self, secret_id: Optional[str] = None, limit: Optional[int] = 100
    ) -> list[SecretAuditLog]:
        return self.storage.find_audit_logs(secret_id=secret_id, limit=limit)

    def verify_chain(self) -> bool:
        """Recompute every hash in append order; False on the first broken link."""
        prev_hash = ""
        for entry in self.storage.iter_audit_logs():
            if entry.prev_hash != prev_hash:
                logger.warning("Audit chain broken at entry %s: prev_hash mismatch", entry.id)
                return False
            if compute_entry_hash(entry, prev_hash) != entry.entry_hash:
                logger.warning("Audit chain broken at entry %s: entry_hash mismatch", entry.id)
                return False
            prev_hash = entry.entry_hash
        return True
