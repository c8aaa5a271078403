"""
Ingress gateway - the single external entry point.

Serves two listeners:
- plain HTTP, which answers every request with a redirect to HTTPS and
  never reads or forwards a request body
- TLS, which picks the certificate for the requested host from the
  certificate registry during the handshake (SNI), asks the traffic router
  where the request goes and proxies it to the target service

Hosts without a current, non-expired certificate fail the handshake, so no
traffic for them is served with stale or borrowed TLS material.
"""

import logging
import os
import ssl
import tempfile
from collections.abc import Callable
from datetime import datetime

import httpx
from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)

from ..models.route import TargetService
from ..models.secret import TlsCertificate
from ..observability.tracing import get_tracer, inject_trace_context
from ..services.router import TrafficRouter
from ..services.secret_sync import CertificateRegistry

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# httpx hands back decoded bodies
DECODED_HEADERS = frozenset({"content-encoding"})


def upstream_url(target: TargetService, path_qs: str, cluster_domain: str) -> str:
    return (
        f"http://{target.service}.{target.namespace}.svc.{cluster_domain}"
        f":{target.port}{path_qs}"
    )


def forwardable_headers(headers, drop: frozenset[str] = frozenset()) -> dict[str, str]:
    return {
        k: v
        for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in drop
    }


class ServerContexts:
    """
    Per-certificate SSL contexts for SNI selection.

    Contexts are cached by the certificate's value hash, so a rotated
    certificate gets a fresh context on the next handshake. Contexts of
    certificates no longer published are dropped whenever a new one is built.
    """

    def __init__(
        self,
        certificates: CertificateRegistry,
        clock: Callable[[], datetime],
    ):
        self.certificates = certificates
        self.clock = clock
        self._contexts: dict[str, ssl.SSLContext] = {}

    def context_for(self, certificate: TlsCertificate) -> ssl.SSLContext:
        context = self._contexts.get(certificate.value_hash)
        if context is None:
            self._evict_unpublished()
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            # load_cert_chain only reads from files
            with tempfile.TemporaryDirectory() as tmp:
                cert_file = os.path.join(tmp, "tls.crt")
                key_file = os.path.join(tmp, "tls.key")
                with open(cert_file, "w") as f:
                    f.write(certificate.cert_pem)
                with open(key_file, "w") as f:
                    f.write(certificate.key_pem)
                context.load_cert_chain(cert_file, key_file)
            self._contexts[certificate.value_hash] = context
        return context

    def _evict_unpublished(self) -> None:
        published = self.certificates.value_hashes()
        for value_hash in [h for h in self._contexts if h not in published]:
            del self._contexts[value_hash]

    def select(
        self, ssl_object: ssl.SSLObject, server_name: str | None, _: ssl.SSLContext
    ) -> int | None:
        """sni_callback: switch to the context of the requested host."""
        if not server_name:
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        certificate = self.certificates.lookup(server_name)
        if certificate is None or certificate.is_expired(self.clock()):
            logger.info(f"Refusing TLS handshake for {server_name}: no current certificate")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            ssl_object.context = self.context_for(certificate)
        except (ssl.SSLError, OSError) as e:
            logger.error(f"Unusable certificate for {server_name}: {e}")
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def server_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.sni_callback = self.select
        return context


class IngressGateway:
    """aiohttp front end of the traffic router."""

    def __init__(
        self,
        router: TrafficRouter,
        host: str = "0.0.0.0",
        http_port: int = 8080,
        https_port: int = 8443,
        upstream_timeout: float = 30.0,
        cluster_domain: str = "cluster.local",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.router = router
        self.host = host
        self.http_port = http_port
        self.https_port = https_port
        self.upstream_timeout = upstream_timeout
        self.cluster_domain = cluster_domain
        self.contexts = ServerContexts(router.certificates, router.clock)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._runners: list[AppRunner] = []

        self.http_app = Application()
        self.http_app.router.add_route("*", "/{tail:.*}", self._plain_handler)
        self.https_app = Application()
        self.https_app.router.add_route("*", "/{tail:.*}", self._tls_handler)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.upstream_timeout),
                limits=httpx.Limits(max_connections=200, max_keepalive_connections=50),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def _plain_handler(self, request: Request) -> Response:
        decision = self.router.route(
            request.host, request.path, "http", request.query_string
        )
        return Response(status=decision.status_code, headers={"Location": decision.location})

    async def _tls_handler(self, request: Request) -> Response:
        decision = self.router.route(
            request.host, request.path, "https", request.query_string
        )
        if decision.outcome != "forward" or decision.target is None:
            return json_response(
                {"outcome": decision.outcome, "reason": decision.reason},
                status=decision.status_code,
            )
        return await self._proxy(request, decision.target)

    async def _proxy(self, request: Request, target: TargetService) -> Response:
        url = upstream_url(target, request.path_qs, self.cluster_domain)
        headers = forwardable_headers(request.headers)
        headers["X-Forwarded-Proto"] = "https"
        headers["X-Forwarded-Host"] = request.host
        if request.remote:
            headers["X-Forwarded-For"] = request.remote
        inject_trace_context(headers)

        with tracer.start_as_current_span("gateway.proxy") as span:
            span.set_attribute("mesh.target", str(target))
            try:
                upstream = await self._get_client().request(
                    request.method, url, headers=headers, content=await request.read()
                )
            except httpx.HTTPError as e:
                logger.warning(f"Upstream {target} failed: {type(e).__name__}: {e}")
                span.set_attribute("mesh.upstream_error", type(e).__name__)
                return Response(status=502, text="Bad Gateway")
            span.set_attribute("http.status_code", upstream.status_code)

        return Response(
            status=upstream.status_code,
            body=upstream.content,
            headers=forwardable_headers(upstream.headers, drop=DECODED_HEADERS),
        )

    async def start(self) -> None:
        """Start both listeners."""
        plain = AppRunner(self.http_app)
        await plain.setup()
        await TCPSite(plain, self.host, self.http_port).start()
        self._runners.append(plain)

        secure = AppRunner(self.https_app)
        await secure.setup()
        await TCPSite(
            secure, self.host, self.https_port, ssl_context=self.contexts.server_context()
        ).start()
        self._runners.append(secure)
        logger.info(
            f"Ingress gateway listening on {self.host}:{self.http_port} (redirect) "
            f"and {self.host}:{self.https_port} (TLS)"
        )

    async def stop(self) -> None:
        for runner in self._runners:
            await runner.cleanup()
        self._runners.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Ingress gateway stopped")
