import logging
import uuid
from collections.abc import Callable
from typing import Optional, Union

from cloudvault.errors import NotFoundError, ValidationError
from cloudvault.models import (
    SYSTEM_PRINCIPAL,
    AccessPolicyRequest,
    Secret,
    SecretAccessPolicy,
    SecretPermission,
    parse_model,
    utc_now,
)
from cloudvault.secrets.connector import VaultConnector
from cloudvault.storage.base import StorageBackend

logger = logging.getLogger(__name__)

# (principal_id, resource, action) -> allowed
PermissionOracle = Callable[[str, str, str], bool]

CAPABILITY_MAP = {
    SecretPermission.READ: "read",
    SecretPermission.WRITE: "create",
    SecretPermission.UPDATE: "update",
    SecretPermission.DELETE: "delete",
    SecretPermission.LIST: "list",
    SecretPermission.ROTATE: "update",
    SecretPermission.MANAGE_ACCESS: "sudo",
}


def parse_permissions(permissions: list[str]) -> list[SecretPermission]:
    valid = {p.value for p in SecretPermission}
    unknown = [p for p in permissions if p not in valid]
    if unknown:
        raise ValidationError.from_messages(
            "Invalid access policy",
            [("permissions", f"Unknown permission '{p}'") for p in unknown],
        )
    if not permissions:
        raise ValidationError.from_messages(
            "Invalid access policy", [("permissions", "At least one permission is required")]
        )
    return [SecretPermission(p) for p in dict.fromkeys(permissions)]


class AccessControlGate:
    """Grants on individual secrets, mirrored as backend ACL policies.

    :meth:`check_permission` allows the ``system`` principal, the secret's
    creator, anything the external permission oracle allows, and principals
    holding an unexpired grant. Everything else is denied.
    """

    def __init__(
        self,
        storage: StorageBackend,
        connector: VaultConnector,
        has_permission: Optional[PermissionOracle] = None,
    ) -> None:
        self.storage = storage
        self.connector = connector
        self.has_permission = has_permission

    def _get_secret(self, secret_id: str) -> Secret:
        secret = self.storage.get_secret(secret_id)
        if not secret:
            raise NotFoundError(f"Secret with ID {secret_id} not found")
        return secret

    def render_policy(self, secret: Secret, permissions: list[SecretPermission]) -> str:
        mount = self.connector.config.mount_path
        capabilities = list(dict.fromkeys(CAPABILITY_MAP[p] for p in permissions))
        rendered = ", ".join(f'"{c}"' for c in capabilities)

        blocks = [f'path "{mount}/data/{secret.path}" {{\n  capabilities = [{rendered}]\n}}']
        if SecretPermission.LIST in permissions:
            blocks.append(f'path "{mount}/metadata/{secret.path}" {{\n  capabilities = ["list", "read"]\n}}')
        return "\n\n".join(blocks)

    def grant_access(
        self,
        secret_id: str,
        request: Union[AccessPolicyRequest, dict],
        granted_by: str = SYSTEM_PRINCIPAL,
    ) -> SecretAccessPolicy:
        if isinstance(request, dict):
            request = parse_model(AccessPolicyRequest, request)

        permissions = parse_permissions(request.permissions)
        secret = self._get_secret(secret_id)

        self.connector.create_policy(request.name, self.render_policy(secret, permissions))

        policy = SecretAccessPolicy(
            id=str(uuid.uuid4()),
            name=request.name,
            secret_id=secret_id,
            principal_id=request.principal_id,
            principal_type=request.principal_type,
            permissions=permissions,
            expires_at=request.expires_at,
            created_by=granted_by,
        )
        self.storage.create_access_policy(policy)
        logger.info(
            "Granted %s on secret %s to %s",
            ",".join(p.value for p in permissions),
            secret_id,
            request.principal_id,
        )
        return policy

    def revoke_access(self, secret_id: str, principal_id: str) -> list[SecretAccessPolicy]:
        grants = self.storage.find_access_policies(secret_id, principal_id)
        for name in dict.fromkeys(g.name for g in grants):
            self.connector.delete_policy(name)
        removed = self.storage.delete_access_policies(secret_id, principal_id)
        logger.info("Revoked %d grant(s) on secret %s from %s", len(removed), secret_id, principal_id)
        return removed

    def _active_grants(self, secret_id: str, principal_id: Optional[str] = None) -> list[SecretAccessPolicy]:
        now = utc_now()
        return [
            g
            for g in self.storage.find_access_policies(secret_id, principal_id)
            if g.expires_at is None or g.expires_at > now
        ]

    def check_permission(
        self, secret_id: str, principal_id: str, permission: Union[SecretPermission, str]
    ) -> bool:
        permission = SecretPermission(permission)

        if principal_id == SYSTEM_PRINCIPAL:
            return True

        secret = self.storage.get_secret(secret_id)
        if secret is None:
            return False
        if secret.created_by == principal_id:
            return True

        if self.has_permission and self.has_permission(
            principal_id, f"secret:{secret_id}", permission.value
        ):
            return True

        return any(permission in g.permissions for g in self._active_grants(secret_id, principal_id))

    def list_principals(self, secret_id: str) -> list[dict]:
        merged: dict[str, list[str]] = {}
        for grant in self._active_grants(secret_id):
            perms = merged.setdefault(grant.principal_id, [])
            for p in grant.permissions:
                if p.value not in perms:
                    perms.append(p.value)
        return [{"principal_id": pid, "permissions": perms} for pid, perms in merged.items()]
