"""
Vault connector

Client for a HashiCorp-Vault compatible KV v2 secret backend.
"""

import logging
import ssl
import threading
from typing import Any, Optional

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from cloudvault.errors import CloudVaultError, NotConnectedError, VaultRequestError
from cloudvault.errors import ConnectionError as VaultConnectionError
from cloudvault.models import VaultConfig
from cloudvault.secrets.session import TokenSessionStore

logger = logging.getLogger(__name__)


def _should_retry(exc: BaseException) -> bool:
    """Connection resets, timeouts, DNS failures and 5xx answers are retried; 4xx never."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return "; ".join(str(e) for e in errors)
    return response.reason_phrase


def _json(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class VaultConnector:
    """
    Connection to the external secret backend.

    Authentication happens once in :meth:`connect`; the resulting token is
    attached to every later call. Each call is retried with linear backoff
    (``retry_delay * attempt``) up to ``max_retries`` attempts and carries a
    fixed per-request timeout. ``connect``/``disconnect`` wait for in-flight
    requests to drain before swapping the token.
    """

    def __init__(
        self,
        config: VaultConfig,
        sessions: Optional[TokenSessionStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the connector.

        Args:
            config: Backend endpoint, credentials and retry settings
            sessions: Store for tokens issued through :meth:`create_token`
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.config = config
        self.sessions = sessions or TokenSessionStore(default_ttl=config.token_ttl)

        headers = {"Content-Type": "application/json"}
        if config.namespace:
            headers["X-Vault-Namespace"] = config.namespace

        verify: Any = config.verify_ssl
        if config.ca_bundle:
            verify = ssl.create_default_context(cafile=config.ca_bundle)

        self._client = httpx.Client(
            base_url=config.endpoint.rstrip("/"),
            timeout=config.timeout,
            verify=verify,
            headers=headers,
            transport=transport,
        )

        self._token: Optional[str] = None
        self._connected = False
        self._in_flight = 0
        self._state = threading.Condition()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # retry plumbing

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Backend request failed (attempt %d/%d), retrying: %s",
            retry_state.attempt_number,
            self.config.max_retries,
            exc,
        )

    def _retrier(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_incrementing(start=self.config.retry_delay, increment=self.config.retry_delay),
            retry=retry_if_exception(_should_retry),
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _send(self, method: str, path: str, token: Optional[str], **kwargs: Any) -> httpx.Response:
        headers = {"X-Vault-Token": token} if token else {}
        response = self._client.request(method, path, headers=headers, **kwargs)
        response.raise_for_status()
        return response

    def _call(
        self,
        method: str,
        path: str,
        token: Optional[str],
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Optional[httpx.Response]:
        try:
            return self._retrier()(self._send, method, path, token, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404 and allow_not_found:
                return None
            detail = _error_detail(e.response)
            if status >= 500:
                raise VaultConnectionError(
                    f"Backend error {status} on {method} {path} after "
                    f"{self.config.max_retries} attempts: {detail}"
                ) from e
            raise VaultRequestError(
                f"Backend rejected {method} {path} ({status}): {detail}", status_code=status
            ) from e
        except httpx.TransportError as e:
            raise VaultConnectionError(
                f"Failed to reach backend for {method} {path} after "
                f"{self.config.max_retries} attempts: {e}"
            ) from e

    def _request(
        self, method: str, path: str, allow_not_found: bool = False, **kwargs: Any
    ) -> Optional[httpx.Response]:
        with self._state:
            if not self._connected:
                raise NotConnectedError("Not connected to the secret backend. Call connect() first.")
            self._in_flight += 1
            token = self._token
        try:
            return self._call(method, path, token, allow_not_found=allow_not_found, **kwargs)
        finally:
            with self._state:
                self._in_flight -= 1
                self._state.notify_all()

    def _mount(self, kind: str, path: str) -> str:
        return f"/v1/{self.config.mount_path}/{kind}/{path.strip('/')}"

    # lifecycle

    def _authenticate(self) -> str:
        if self.config.token:
            return self.config.token
        if self.config.role_id and self.config.secret_id:
            response = self._call(
                "POST",
                "/v1/auth/approle/login",
                None,
                json={"role_id": self.config.role_id, "secret_id": self.config.secret_id},
            )
            token = _json(response).get("auth", {}).get("client_token")
            if not token:
                raise VaultConnectionError("AppRole authentication returned no client token")
            return token
        raise VaultConnectionError("No authentication method configured")

    def connect(self) -> None:
        with self._state:
            self._state.wait_for(lambda: self._in_flight == 0)
            try:
                token = self._authenticate()
                self._call("GET", "/v1/sys/health", token)
            except CloudVaultError as e:
                self._connected = False
                self._token = None
                raise VaultConnectionError(f"Failed to connect to the secret backend: {e}") from e

            self._token = token
            self._connected = True
        logger.info("Connected to secret backend at %s", self.config.endpoint)

    def disconnect(self) -> None:
        with self._state:
            self._state.wait_for(lambda: self._in_flight == 0)
            if self._token and self._connected:
                try:
                    self._call("POST", "/v1/auth/token/revoke-self", self._token)
                except CloudVaultError as e:
                    logger.warning("Failed to revoke backend token: %s", e)

            self._token = None
            self._connected = False
            self.sessions.clear()

    def close(self) -> None:
        self.disconnect()
        self._client.close()

    def is_connected(self) -> bool:
        with self._state:
            return self._connected

    # KV v2 secrets

    def write_secret(
        self, path: str, data: dict[str, Any], metadata: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """Write a new version; returns the backend's write info (``version``, ``created_time``)."""
        payload: dict[str, Any] = {"data": data}
        if metadata:
            payload["metadata"] = metadata
        response = self._request("POST", self._mount("data", path), json=payload)
        return _json(response).get("data") or {}

    def read_secret(self, path: str, version: Optional[int] = None) -> Optional[dict[str, Any]]:
        params = {"version": str(version)} if version else None
        response = self._request("GET", self._mount("data", path), allow_not_found=True, params=params)
        if response is None:
            return None

        body = _json(response).get("data")
        if not body:
            return None
        return {"data": body.get("data") or {}, "metadata": body.get("metadata") or {}}

    def delete_secret(self, path: str) -> None:
        self._request("DELETE", self._mount("data", path))

    def list_secrets(self, path: str) -> list[str]:
        response = self._request(
            "GET", self._mount("metadata", path), allow_not_found=True, params={"list": "true"}
        )
        if response is None:
            return []
        return _json(response).get("data", {}).get("keys", [])

    def get_secret_versions(self, path: str) -> list[dict[str, Any]]:
        metadata = self.get_secret_metadata(path)
        if not metadata:
            return []

        versions = []
        for version, info in (metadata.get("versions") or {}).items():
            entry = {"version": int(version), "created_at": info.get("created_time")}
            if info.get("deletion_time"):
                entry["deleted_at"] = info["deletion_time"]
            if info.get("destroyed"):
                entry["destroyed"] = True
            versions.append(entry)
        return sorted(versions, key=lambda v: v["version"])

    def destroy_secret_version(self, path: str, version: int) -> None:
        self._request("POST", self._mount("destroy", path), json={"versions": [version]})

    def get_secret_metadata(self, path: str) -> Optional[dict[str, Any]]:
        response = self._request("GET", self._mount("metadata", path), allow_not_found=True)
        if response is None:
            return None
        return _json(response).get("data") or None

    def update_secret_metadata(self, path: str, metadata: dict[str, Any]) -> None:
        self._request("POST", self._mount("metadata", path), json=metadata)

    # policies

    def create_policy(self, name: str, policy: str) -> None:
        self._request("PUT", f"/v1/sys/policies/acl/{name}", json={"policy": policy})

    def update_policy(self, name: str, policy: str) -> None:
        # PUT creates or replaces
        self.create_policy(name, policy)

    def delete_policy(self, name: str) -> None:
        self._request("DELETE", f"/v1/sys/policies/acl/{name}")

    def get_policy(self, name: str) -> Optional[str]:
        response = self._request("GET", f"/v1/sys/policies/acl/{name}", allow_not_found=True)
        if response is None:
            return None
        return _json(response).get("data", {}).get("policy")

    # tokens

    def create_token(self, policies: list[str], ttl: Optional[str] = None) -> dict[str, str]:
        payload: dict[str, Any] = {"policies": policies}
        if ttl:
            payload["ttl"] = ttl
        response = self._request("POST", "/v1/auth/token/create", json=payload)

        auth = _json(response).get("auth") or {}
        token = auth.get("client_token")
        if not token:
            raise VaultRequestError("Token creation returned no client token")

        self.sessions.add(
            token,
            accessor=auth.get("accessor"),
            policies=policies,
            ttl=auth.get("lease_duration") or None,
        )
        return {"token": token, "accessor": auth.get("accessor", "")}

    def revoke_token(self, token: str) -> None:
        self._request("POST", "/v1/auth/token/revoke", json={"token": token})
        self.sessions.remove(token)

    def renew_token(self, token: str, increment: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"token": token}
        if increment:
            payload["increment"] = increment
        response = self._request("POST", "/v1/auth/token/renew", json=payload)
        lease = (_json(response).get("auth") or {}).get("lease_duration")
        self.sessions.refresh(token, ttl=lease or None)
