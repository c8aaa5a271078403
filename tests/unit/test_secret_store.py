"""Unit tests for external secret store clients."""

import httpx
import pytest

from mesh_operator.errors import SecretStoreUnavailable, TransientFetchError
from mesh_operator.models.secret import ExternalReference
from mesh_operator.utils.secret_store import InMemorySecretStore, VaultKVStore, select_properties

STRIPE_REF = ExternalReference(store="vault", key="payments/stripe", property="api-key")


class FakeVault:
    """Minimal KV v2 API served through httpx.MockTransport."""

    def __init__(self):
        self.secrets = {"payments/stripe": ({"api-key": "sk_live_1", "other": "x"}, 3)}
        self.logins = 0
        self.revoke_next_read = False
        self.down = False
        self.login_reply: dict | None = None
        self.read_body: bytes | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/v1/auth/kubernetes/login":
            self.logins += 1
            if self.login_reply is not None:
                return httpx.Response(200, json=self.login_reply)
            return httpx.Response(
                200,
                json={"auth": {"client_token": f"token-{self.logins}", "lease_duration": 600}},
            )
        if request.headers.get("X-Vault-Token") != f"token-{self.logins}" or (
            self.revoke_next_read
        ):
            self.revoke_next_read = False
            return httpx.Response(403, json={"errors": ["permission denied"]})
        key = request.url.path.removeprefix("/v1/secret/data/")
        if key not in self.secrets:
            return httpx.Response(404, json={"errors": []})
        if self.read_body is not None:
            return httpx.Response(200, content=self.read_body)
        data, version = self.secrets[key]
        return httpx.Response(
            200, json={"data": {"data": data, "metadata": {"version": version}}}
        )


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def store(vault, tmp_path):
    token_path = tmp_path / "token"
    token_path.write_text("service-account-jwt\n")
    store = VaultKVStore(
        name="vault",
        server_url="http://vault.vault.svc:8200/",
        role="mesh-operator",
        token_path=str(token_path),
        breaker_fail_max=2,
    )
    store._client = httpx.AsyncClient(
        base_url=store.server_url, transport=httpx.MockTransport(vault)
    )
    return store


class TestSelectProperties:
    def test_single_property(self):
        assert select_properties("vault", STRIPE_REF, {"api-key": "sk", "x": 1}) == {
            "api-key": "sk"
        }

    def test_all_properties_are_stringified(self):
        ref = ExternalReference(store="vault", key="k")
        assert select_properties("vault", ref, {"port": 5432}) == {"port": "5432"}

    def test_missing_property(self):
        with pytest.raises(TransientFetchError):
            select_properties("vault", STRIPE_REF, {})


class TestVaultKVStore:
    """Test fetching from a KV v2 store."""

    @pytest.mark.asyncio
    async def test_fetch_authenticates_and_reads_version(self, store, vault):
        value = await store.fetch(STRIPE_REF)

        assert value.data == {"api-key": "sk_live_1"}
        assert value.version == "3"
        assert vault.logins == 1

        await store.fetch(STRIPE_REF)
        assert vault.logins == 1
        await store.aclose()

    @pytest.mark.asyncio
    async def test_revoked_token_is_renewed_once(self, store, vault):
        await store.fetch(STRIPE_REF)
        vault.revoke_next_read = True

        value = await store.fetch(STRIPE_REF)

        assert value.data == {"api-key": "sk_live_1"}
        assert vault.logins == 2

    @pytest.mark.asyncio
    async def test_missing_key_fails_only_that_binding(self, store):
        ref = ExternalReference(store="vault", key="payments/unknown")

        for _ in range(3):
            with pytest.raises(TransientFetchError) as exc_info:
                await store.fetch(ref)
            assert not isinstance(exc_info.value, SecretStoreUnavailable)

        assert store._breaker.is_open is False

    @pytest.mark.asyncio
    async def test_unreachable_store_opens_circuit(self, store, vault):
        await store.fetch(STRIPE_REF)
        vault.down = True

        for _ in range(2):
            with pytest.raises(SecretStoreUnavailable):
                await store.fetch(STRIPE_REF)

        assert store._breaker.is_open is True
        with pytest.raises(SecretStoreUnavailable) as exc_info:
            await store.fetch(STRIPE_REF)
        assert "circuit open" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_login_reply_without_auth(self, store, vault):
        vault.login_reply = {"errors": []}

        with pytest.raises(SecretStoreUnavailable) as exc_info:
            await store.fetch(STRIPE_REF)

        assert "malformed login response" in exc_info.value.message
        assert store.client_token is None

    @pytest.mark.asyncio
    async def test_non_json_read_is_a_fetch_error(self, store, vault):
        vault.read_body = b"<html>maintenance</html>"

        with pytest.raises(TransientFetchError) as exc_info:
            await store.fetch(STRIPE_REF)

        assert not isinstance(exc_info.value, SecretStoreUnavailable)
        assert "malformed response" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unreadable_token_file(self, store, tmp_path):
        store.token_path = str(tmp_path / "missing")

        with pytest.raises(SecretStoreUnavailable):
            await store.fetch(STRIPE_REF)


class TestInMemorySecretStore:
    @pytest.mark.asyncio
    async def test_set_and_fail(self):
        store = InMemorySecretStore("vault")
        store.set("payments/stripe", {"api-key": "sk"})

        assert (await store.fetch(STRIPE_REF)).data == {"api-key": "sk"}

        store.fail("payments/stripe")
        with pytest.raises(TransientFetchError):
            await store.fetch(STRIPE_REF)
