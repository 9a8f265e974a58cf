import json
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import pytest

from cloudvault.audit.logger import AuditLog
from cloudvault.configuration.store import ConfigurationStore
from cloudvault.configuration.templates import ConfigurationTemplateService
from cloudvault.crypto.encryption import EncryptionEngine
from cloudvault.models import VaultConfig
from cloudvault.secrets.access import AccessControlGate
from cloudvault.secrets.connector import VaultConnector
from cloudvault.secrets.rotation import RotationScheduler
from cloudvault.secrets.service import SecretsService
from cloudvault.storage.local import SQLiteStorage

ROOT_TOKEN = "root-token"
MOUNT = "secret"


def _reply(status: int, body: Optional[dict[str, Any]] = None) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    return httpx.Response(status, json=body)


class FakeVault:
    """In-memory KV v2 backend served through ``httpx.MockTransport``."""

    def __init__(self, role_id: str = "role", secret_id: str = "secret-id") -> None:
        self.role_id = role_id
        self.secret_id = secret_id
        self.kv: dict[str, dict[str, Any]] = {}
        self.policies: dict[str, str] = {}
        self.tokens: dict[str, dict[str, Any]] = {ROOT_TOKEN: {"policies": ["root"]}}
        self.revoked: list[str] = []
        self.calls: list[tuple[str, str]] = []

        # (status, path prefix) consumed one per matching request
        self._failures: list[tuple[int, str]] = []
        self._transport_failures = 0
        self.fail_writes_with: Optional[int] = None

        self.write_gate: Optional[threading.Event] = None
        self.write_started = threading.Event()
        self._lock = threading.Lock()
        self._token_seq = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    # failure injection

    def fail_next(self, status: int, count: int = 1, path_prefix: str = "") -> None:
        self._failures.extend([(status, path_prefix)] * count)

    def drop_next(self, count: int = 1) -> None:
        self._transport_failures += count

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.calls if m == method and p == path)

    # request handling

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        with self._lock:
            self.calls.append((method, path))

            if self._transport_failures:
                self._transport_failures -= 1
                raise httpx.ConnectError("connection refused", request=request)

            for i, (status, prefix) in enumerate(self._failures):
                if path.startswith(prefix):
                    del self._failures[i]
                    return _reply(status, {"errors": [f"injected {status}"]})

        body = json.loads(request.content) if request.content else {}

        if path == "/v1/auth/approle/login":
            if body.get("role_id") == self.role_id and body.get("secret_id") == self.secret_id:
                self.tokens["approle-token"] = {"policies": ["default"]}
                return _reply(200, {"auth": {"client_token": "approle-token", "lease_duration": 3600}})
            return _reply(400, {"errors": ["invalid role or secret ID"]})

        token = request.headers.get("X-Vault-Token")
        if token not in self.tokens:
            return _reply(403, {"errors": ["permission denied"]})

        if path == "/v1/sys/health":
            return _reply(200, {"initialized": True, "sealed": False})
        if path.startswith("/v1/auth/token/"):
            return self._token_op(path.rsplit("/", 1)[-1], token, body)
        if path.startswith("/v1/sys/policies/acl/"):
            return self._policy_op(method, path.rsplit("/", 1)[-1], body)

        prefix = f"/v1/{MOUNT}/"
        if path.startswith(prefix):
            kind, _, secret_path = path[len(prefix):].partition("/")
            return self._kv_op(method, kind, secret_path, request, body)
        return _reply(404, {"errors": []})

    def _token_op(self, op: str, token: str, body: dict[str, Any]) -> httpx.Response:
        if op == "revoke-self":
            self.revoked.append(token)
            return _reply(204)
        if op == "create":
            self._token_seq += 1
            issued = f"issued-{self._token_seq}"
            self.tokens[issued] = {"policies": body.get("policies", [])}
            return _reply(
                200,
                {"auth": {"client_token": issued, "accessor": f"acc-{self._token_seq}", "lease_duration": 600}},
            )
        if op == "revoke":
            self.tokens.pop(body.get("token"), None)
            return _reply(204)
        if op == "renew":
            return _reply(200, {"auth": {"client_token": body.get("token"), "lease_duration": 1200}})
        return _reply(404, {"errors": []})

    def _policy_op(self, method: str, name: str, body: dict[str, Any]) -> httpx.Response:
        if method == "PUT":
            self.policies[name] = body["policy"]
            return _reply(204)
        if method == "DELETE":
            self.policies.pop(name, None)
            return _reply(204)
        if name not in self.policies:
            return _reply(404, {"errors": []})
        return _reply(200, {"data": {"name": name, "policy": self.policies[name]}})

    def _kv_op(
        self, method: str, kind: str, path: str, request: httpx.Request, body: dict[str, Any]
    ) -> httpx.Response:
        entry = self.kv.get(path)

        if kind == "data" and method == "POST":
            if self.write_gate is not None:
                self.write_started.set()
                self.write_gate.wait(5)
            if self.fail_writes_with:
                return _reply(self.fail_writes_with, {"errors": ["write failed"]})
            entry = self.kv.setdefault(path, {"versions": {}, "custom_metadata": {}})
            version = len(entry["versions"]) + 1
            created = datetime.now(timezone.utc).isoformat()
            entry["versions"][version] = {
                "data": body["data"],
                "created_time": created,
                "deletion_time": "",
                "destroyed": False,
            }
            return _reply(200, {"data": {"version": version, "created_time": created}})

        if kind == "data" and method == "GET":
            if not entry:
                return _reply(404, {"errors": []})
            wanted = int(request.url.params.get("version") or max(entry["versions"]))
            stored = entry["versions"].get(wanted)
            if not stored or stored["destroyed"] or stored["deletion_time"]:
                return _reply(404, {"errors": []})
            return _reply(
                200,
                {"data": {"data": stored["data"], "metadata": {"version": wanted, "created_time": stored["created_time"]}}},
            )

        if kind == "data" and method == "DELETE":
            if entry:
                latest = entry["versions"][max(entry["versions"])]
                latest["deletion_time"] = datetime.now(timezone.utc).isoformat()
            return _reply(204)

        if kind == "destroy" and method == "POST":
            for version in body.get("versions", []):
                if entry and version in entry["versions"]:
                    entry["versions"][version]["destroyed"] = True
            return _reply(204)

        if kind == "metadata" and method == "GET":
            if request.url.params.get("list") == "true":
                base = path.rstrip("/") + "/" if path else ""
                children = set()
                for key in self.kv:
                    if key.startswith(base):
                        head, sep, _ = key[len(base):].partition("/")
                        children.add(head + sep)
                keys = sorted(children)
                if not keys:
                    return _reply(404, {"errors": []})
                return _reply(200, {"data": {"keys": keys}})
            if not entry:
                return _reply(404, {"errors": []})
            versions = {
                str(v): {
                    "created_time": info["created_time"],
                    "deletion_time": info["deletion_time"],
                    "destroyed": info["destroyed"],
                }
                for v, info in entry["versions"].items()
            }
            return _reply(
                200,
                {
                    "data": {
                        "current_version": max(entry["versions"]),
                        "versions": versions,
                        "custom_metadata": entry["custom_metadata"],
                    }
                },
            )

        if kind == "metadata" and method == "POST":
            if not entry:
                return _reply(404, {"errors": []})
            entry["custom_metadata"].update(body.get("custom_metadata", {}))
            return _reply(204)

        return _reply(405, {"errors": ["unsupported"]})


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "store.db"))
    storage.initialize()
    yield storage
    storage.close()


@pytest.fixture
def encryption() -> EncryptionEngine:
    return EncryptionEngine(EncryptionEngine.generate_key())


@pytest.fixture
def configurations(storage: SQLiteStorage, encryption: EncryptionEngine) -> ConfigurationStore:
    return ConfigurationStore(storage, encryption)


@pytest.fixture
def templates(storage: SQLiteStorage, configurations: ConfigurationStore) -> ConfigurationTemplateService:
    return ConfigurationTemplateService(storage, configurations)


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest.fixture
def vault_config() -> VaultConfig:
    return VaultConfig(endpoint="http://vault.test", token=ROOT_TOKEN, retry_delay=0, max_retries=3)


@pytest.fixture
def connector(vault_config: VaultConfig, fake_vault: FakeVault) -> VaultConnector:
    connector = VaultConnector(vault_config, transport=fake_vault.transport())
    connector.connect()
    yield connector
    connector.close()


@pytest.fixture
def audit(storage: SQLiteStorage) -> AuditLog:
    return AuditLog(storage)


@pytest.fixture
def access(storage: SQLiteStorage, connector: VaultConnector) -> AccessControlGate:
    return AccessControlGate(storage, connector)


@pytest.fixture
def scheduler(storage: SQLiteStorage) -> RotationScheduler:
    scheduler = RotationScheduler(storage, max_workers=2)
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
def secrets_service(
    storage: SQLiteStorage,
    connector: VaultConnector,
    audit: AuditLog,
    access: AccessControlGate,
    scheduler: RotationScheduler,
) -> SecretsService:
    return SecretsService(storage, connector, audit, access, scheduler)
