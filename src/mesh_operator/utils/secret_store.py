"""
External secret store clients.

The secret synchronizer only needs a versioned key/value fetch. VaultKVStore
implements it against a Vault-compatible KV v2 API, authenticating with the
pod's projected service-account token: a short-lived client token is
obtained at runtime, nothing static is stored locally.

Failure mapping:
- a missing or forbidden key is a TransientFetchError for that binding only
- connection failures, 5xx answers and an open circuit are
  SecretStoreUnavailable, which flags the store as degraded
"""

import logging
import time
from pathlib import Path
from typing import Any, Protocol

import aiobreaker
import httpx

from ..errors import SecretStoreUnavailable, TransientFetchError
from ..models.secret import ExternalReference, ExternalSecretValue
from ..models.types import SecretData
from .circuit_breaker import ServiceCircuitBreaker

logger = logging.getLogger(__name__)


class ExternalSecretStore(Protocol):
    """Versioned key/value fetch interface of an external secret store."""

    name: str

    async def fetch(self, ref: ExternalReference) -> ExternalSecretValue: ...


def select_properties(
    store: str, ref: ExternalReference, data: dict[str, Any]
) -> SecretData:
    """
    Reduce a fetched secret to the requested property, or stringify all.

    Raises:
        TransientFetchError: If the requested property is absent
    """
    if ref.property is None:
        return {str(k): str(v) for k, v in data.items()}
    if ref.property not in data:
        raise TransientFetchError(
            store, ref.key, f"property '{ref.property}' not present"
        )
    return {ref.property: str(data[ref.property])}


class VaultKVStore:
    """KV v2 client authenticated with a projected service-account token."""

    def __init__(
        self,
        name: str,
        server_url: str,
        role: str,
        token_path: str,
        auth_path: str = "auth/kubernetes/login",
        mount: str = "secret",
        timeout: float = 10.0,
        breaker_fail_max: int = 5,
        breaker_reset_seconds: int = 60,
    ) -> None:
        self.name = name
        self.server_url = server_url.rstrip("/")
        self.role = role
        self.token_path = token_path
        self.auth_path = auth_path.strip("/")
        self.mount = mount.strip("/")
        self.timeout = timeout

        self.client_token: str | None = None
        self.token_expires_at: float | None = None
        self._client: httpx.AsyncClient | None = None
        self._breaker = ServiceCircuitBreaker(
            service=f"secret-store/{name}",
            fail_max=breaker_fail_max,
            timeout_duration=breaker_reset_seconds,
            exclude=[TransientFetchError],
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.server_url,
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.client_token = None
        self.token_expires_at = None

    def _read_service_account_token(self) -> str:
        try:
            return Path(self.token_path).read_text().strip()
        except OSError as e:
            raise SecretStoreUnavailable(
                self.name, "-", f"service account token unreadable: {e}"
            ) from e

    async def authenticate(self) -> None:
        """Exchange the service-account token for a short-lived client token."""
        jwt = self._read_service_account_token()
        response = await self._get_client().post(
            f"/v1/{self.auth_path}", json={"jwt": jwt, "role": self.role}
        )
        response.raise_for_status()
        try:
            auth = response.json()["auth"]
            client_token = auth["client_token"]
            lease = float(auth.get("lease_duration", 300))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SecretStoreUnavailable(
                self.name, "-", f"malformed login response: {type(e).__name__}"
            ) from e
        self.client_token = client_token
        self.token_expires_at = time.time() + lease
        logger.debug(f"Authenticated with secret store {self.name}")

    async def _ensure_authenticated(self) -> None:
        # Renew 30s before the lease ends
        if not self.client_token or (
            self.token_expires_at and time.time() >= self.token_expires_at - 30
        ):
            await self.authenticate()

    async def _read(self, key: str) -> httpx.Response:
        await self._ensure_authenticated()
        client = self._get_client()
        url = f"/v1/{self.mount}/data/{key.strip('/')}"

        response = await client.get(url, headers={"X-Vault-Token": self.client_token})
        if response.status_code == 403:
            # Client token revoked or expired early
            await self.authenticate()
            response = await client.get(
                url, headers={"X-Vault-Token": self.client_token}
            )

        if 400 <= response.status_code < 500:
            raise TransientFetchError(
                self.name, key, f"store answered {response.status_code}"
            )
        response.raise_for_status()
        return response

    async def fetch(self, ref: ExternalReference) -> ExternalSecretValue:
        """
        Fetch the current version of a secret.

        Raises:
            TransientFetchError: If this key cannot be read
            SecretStoreUnavailable: If the store as a whole is unreachable
        """
        try:
            response = await self._breaker.call(self._read, ref.key)
        except aiobreaker.CircuitBreakerError as e:
            raise SecretStoreUnavailable(self.name, ref.key, "circuit open") from e
        except httpx.HTTPError as e:
            logger.warning(f"Secret store {self.name} request failed: {e}")
            raise SecretStoreUnavailable(
                self.name, ref.key, type(e).__name__
            ) from e

        try:
            payload = response.json().get("data") or {}
            data = dict(payload.get("data") or {})
            version = (payload.get("metadata") or {}).get("version")
        except (ValueError, TypeError, AttributeError) as e:
            raise TransientFetchError(
                self.name, ref.key, f"malformed response: {type(e).__name__}"
            ) from e
        return ExternalSecretValue(
            data=select_properties(self.name, ref, data),
            version=str(version) if version is not None else None,
        )


class InMemorySecretStore:
    """
    Secret store backed by a dict, used in dry-run mode and tests.

    Values can be replaced with set() and failures injected with fail().
    """

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._values: dict[str, tuple[dict[str, Any], int]] = {}
        self._failures: dict[str, Exception] = {}
        self.fetch_count = 0

    def set(self, key: str, data: dict[str, Any]) -> None:
        _, version = self._values.get(key, ({}, 0))
        self._values[key] = (dict(data), version + 1)
        self._failures.pop(key, None)

    def fail(self, key: str, error: Exception | None = None) -> None:
        self._failures[key] = error or TransientFetchError(
            self.name, key, "injected failure"
        )

    async def fetch(self, ref: ExternalReference) -> ExternalSecretValue:
        self.fetch_count += 1
        if ref.key in self._failures:
            raise self._failures[ref.key]
        if ref.key not in self._values:
            raise TransientFetchError(self.name, ref.key, "key not found")
        data, version = self._values[ref.key]
        return ExternalSecretValue(
            data=select_properties(self.name, ref, data), version=str(version)
        )
