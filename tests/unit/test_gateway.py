"""
Unit tests for the authorization endpoint and the ingress gateway.

aiohttp handlers are called with mocked requests; upstream services are
served by an httpx mock transport.
"""

import json
import ssl
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from pydantic import ValidationError

from mesh_operator.gateway.authz import AuthorizationServer, AuthorizeRequest
from mesh_operator.gateway.ingress import (
    IngressGateway,
    ServerContexts,
    forwardable_headers,
    upstream_url,
)
from mesh_operator.models.policy import MeshAuthorizationPolicySpec
from mesh_operator.models.route import MeshRouteSpec, TargetService
from mesh_operator.models.secret import TlsCertificate
from mesh_operator.services.policy_engine import PolicyDecisionEngine, StaticIdentityProvider
from mesh_operator.services.router import TrafficRouter
from mesh_operator.services.secret_sync import CertificateRegistry
from mesh_operator.utils.certificates import identity_from_certificate
from tests.fixtures.mesh_resources import CHECKOUT_ROUTE, make_certificate


def json_request(payload=None, error=None):
    request = MagicMock()
    request.json = AsyncMock(return_value=payload, side_effect=error)
    return request


def body_of(response):
    return json.loads(response.text)


class TestAuthorizeRequest:
    """Test request body validation."""

    def test_target_is_required(self):
        with pytest.raises(ValidationError):
            AuthorizeRequest.model_validate({"path": "/"})

    def test_certificate_and_identity_are_exclusive(self):
        with pytest.raises(ValidationError):
            AuthorizeRequest.model_validate(
                {
                    "certificate": "pem",
                    "identity": {
                        "subject": "shop/frontend",
                        "publicKeyFingerprint": "fp",
                        "notBefore": "2026-01-01T00:00:00Z",
                        "notAfter": "2027-01-01T00:00:00Z",
                    },
                    "target": "shop/checkout",
                }
            )

    def test_port_range(self):
        with pytest.raises(ValidationError):
            AuthorizeRequest.model_validate({"target": "shop/checkout", "port": 70000})


class TestAuthorizationServer:
    """Test the /v1/authorize handler."""

    @pytest.fixture
    def frontend_cert(self):
        cert_pem, _ = make_certificate(spiffe_subject="shop/frontend")
        return cert_pem

    @pytest.fixture
    def server(self, frontend_cert, events):
        provider = StaticIdentityProvider([identity_from_certificate(frontend_cert)])
        engine = PolicyDecisionEngine(provider, events=events)
        engine.apply_policy(
            "shop/graph",
            MeshAuthorizationPolicySpec.model_validate(
                {"dependencies": {"frontend": ["catalog"]}}
            ).to_rules("shop", "graph"),
        )
        return AuthorizationServer(engine)

    @pytest.mark.asyncio
    async def test_allowed_call_returns_200(self, server, frontend_cert):
        response = await server._authorize_handler(
            json_request({"certificate": frontend_cert, "target": "shop/catalog"})
        )

        assert response.status == 200
        body = body_of(response)
        assert body["allowed"] is True
        assert body["rule"] == "frontend-to-catalog"

    @pytest.mark.asyncio
    async def test_denied_call_returns_403_with_reason(self, server, frontend_cert):
        response = await server._authorize_handler(
            json_request({"certificate": frontend_cert, "target": "shop/payments"})
        )

        assert response.status == 403
        body = body_of(response)
        assert body["outcome"] == "denied"
        assert "shop/payments" in body["reason"]

    @pytest.mark.asyncio
    async def test_certificate_without_workload_identity_is_identity_invalid(self, server):
        cert_pem, _ = make_certificate(dns_names=["frontend.shop.svc"])

        response = await server._authorize_handler(
            json_request({"certificate": cert_pem, "target": "shop/catalog"})
        )

        assert response.status == 403
        assert body_of(response)["outcome"] == "identity_invalid"

    @pytest.mark.asyncio
    async def test_evaluation_failure_is_internal_error(
        self, server, frontend_cert, monkeypatch
    ):
        def broken_authorize(*args):
            raise RuntimeError("snapshot unavailable")

        monkeypatch.setattr(server.engine, "authorize", broken_authorize)

        response = await server._authorize_handler(
            json_request({"certificate": frontend_cert, "target": "shop/catalog"})
        )

        assert response.status == 500
        assert body_of(response) == {
            "allowed": False,
            "outcome": "error",
            "reason": "internal error",
        }

    @pytest.mark.asyncio
    async def test_naive_identity_timestamps_are_bad_request(self, server):
        response = await server._authorize_handler(
            json_request(
                {
                    "identity": {
                        "subject": "shop/frontend",
                        "publicKeyFingerprint": "fp-1",
                        "notBefore": "2026-01-01T00:00:00",
                        "notAfter": "2027-01-01T00:00:00",
                    },
                    "target": "shop/catalog",
                }
            )
        )

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_malformed_body_is_bad_request(self, server):
        response = await server._authorize_handler(
            json_request(error=json.JSONDecodeError("Expecting value", "", 0))
        )

        assert response.status == 400
        assert body_of(response)["error"] == "invalid request"

    @pytest.mark.asyncio
    async def test_missing_target_is_bad_request(self, server):
        response = await server._authorize_handler(json_request({"path": "/"}))
        assert response.status == 400


class TestIngressHelpers:
    """Test upstream addressing and header filtering."""

    def test_upstream_url(self):
        target = TargetService(namespace="shop", service="checkout", port=8080)

        assert upstream_url(target, "/cart?step=2", "cluster.local") == (
            "http://checkout.shop.svc.cluster.local:8080/cart?step=2"
        )

    def test_hop_by_hop_headers_are_dropped(self):
        headers = {
            "Host": "shop.example.com",
            "Connection": "keep-alive",
            "Content-Length": "10",
            "Accept": "text/html",
        }

        assert forwardable_headers(headers) == {"Accept": "text/html"}
        assert forwardable_headers({"Content-Encoding": "gzip"}, drop={"content-encoding"}) == {}


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def gateway_request(host, path, query="", method="GET", body=b""):
    request = MagicMock()
    request.host = host
    request.path = path
    request.query_string = query
    request.path_qs = f"{path}?{query}" if query else path
    request.method = method
    request.headers = {"Host": host, "Accept": "application/json"}
    request.remote = "10.0.0.7"
    request.read = AsyncMock(return_value=body)
    return request


class TestIngressGateway:
    """Test the plain and TLS listeners' handlers."""

    @pytest.fixture
    def certificates(self):
        registry = CertificateRegistry()
        registry.publish(
            "shop/tls",
            TlsCertificate(
                hosts=("shop.example.com",),
                cert_pem="cert",
                key_pem="key",
                not_after=NOW + timedelta(days=30),
                value_hash="h1",
            ),
        )
        return registry

    @pytest.fixture
    def router(self, certificates, events):
        router = TrafficRouter(certificates, events=events, clock=lambda: NOW)
        router.apply_route(
            "shop/storefront",
            MeshRouteSpec.model_validate(CHECKOUT_ROUTE).to_rules("shop", "storefront"),
        )
        return router

    @pytest.mark.asyncio
    async def test_plain_http_redirects(self, router):
        gateway = IngressGateway(router, https_port=443)

        response = await gateway._plain_handler(
            gateway_request("shop.example.com", "/checkout", "step=2")
        )

        assert response.status == 308
        assert response.headers["Location"] == "https://shop.example.com/checkout?step=2"

    @pytest.mark.asyncio
    async def test_tls_request_is_proxied_to_target(self, router):
        seen = []

        def upstream(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"cart": []}, headers={"Connection": "close"})

        gateway = IngressGateway(router, transport=httpx.MockTransport(upstream))

        response = await gateway._tls_handler(
            gateway_request("shop.example.com", "/checkout/cart", "id=7")
        )

        assert response.status == 200
        assert json.loads(response.body) == {"cart": []}
        assert "Connection" not in response.headers
        forwarded = seen[0]
        assert str(forwarded.url) == (
            "http://checkout.shop.svc.cluster.local:8080/checkout/cart?id=7"
        )
        assert forwarded.headers["X-Forwarded-Proto"] == "https"
        assert forwarded.headers["X-Forwarded-Host"] == "shop.example.com"
        assert forwarded.headers["X-Forwarded-For"] == "10.0.0.7"
        await gateway.stop()

    @pytest.mark.asyncio
    async def test_unrouted_host_returns_404(self, router):
        gateway = IngressGateway(router)

        response = await gateway._tls_handler(gateway_request("blog.example.com", "/"))

        assert response.status == 404
        assert body_of(response)["outcome"] == "not_found"

    @pytest.mark.asyncio
    async def test_upstream_failure_is_bad_gateway(self, router):
        def upstream(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        gateway = IngressGateway(router, transport=httpx.MockTransport(upstream))

        response = await gateway._tls_handler(gateway_request("shop.example.com", "/"))

        assert response.status == 502
        assert response.text == "Bad Gateway"
        await gateway.stop()


class TestServerContexts:
    """Test SNI certificate selection."""

    @pytest.fixture
    def registry(self):
        cert_pem, key_pem = make_certificate(dns_names=["shop.example.com"])
        registry = CertificateRegistry()
        registry.publish(
            "shop/tls",
            TlsCertificate(
                hosts=("shop.example.com",),
                cert_pem=cert_pem,
                key_pem=key_pem,
                not_after=datetime.now(UTC) + timedelta(days=30),
                value_hash="h1",
            ),
        )
        return registry

    def test_known_host_switches_context(self, registry):
        contexts = ServerContexts(registry, clock=lambda: datetime.now(UTC))
        ssl_object = MagicMock()

        assert contexts.select(ssl_object, "shop.example.com", None) is None
        assert isinstance(ssl_object.context, ssl.SSLContext)

        again = MagicMock()
        contexts.select(again, "shop.example.com", None)
        assert again.context is ssl_object.context

    def test_rotation_releases_previous_context(self, registry):
        contexts = ServerContexts(registry, clock=lambda: datetime.now(UTC))
        contexts.select(MagicMock(), "shop.example.com", None)
        cert_pem, key_pem = make_certificate(dns_names=["shop.example.com"])
        registry.publish(
            "shop/tls",
            TlsCertificate(
                hosts=("shop.example.com",),
                cert_pem=cert_pem,
                key_pem=key_pem,
                not_after=datetime.now(UTC) + timedelta(days=30),
                value_hash="h2",
            ),
        )

        rotated = MagicMock()
        contexts.select(rotated, "shop.example.com", None)

        assert set(contexts._contexts) == {"h2"}
        assert rotated.context is contexts._contexts["h2"]

    def test_unknown_host_fails_handshake(self, registry):
        contexts = ServerContexts(registry, clock=lambda: datetime.now(UTC))

        alert = contexts.select(MagicMock(), "blog.example.com", None)

        assert alert == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

    def test_expired_certificate_fails_handshake(self, registry):
        contexts = ServerContexts(
            registry, clock=lambda: datetime.now(UTC) + timedelta(days=60)
        )

        alert = contexts.select(MagicMock(), "shop.example.com", None)

        assert alert == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

    def test_missing_server_name_fails_handshake(self, registry):
        contexts = ServerContexts(registry, clock=lambda: datetime.now(UTC))
        assert contexts.select(MagicMock(), None, None) == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
