"""
Traffic router.

Maps external requests to internal services. Plain HTTP is always answered
with a redirect to HTTPS before any rule is consulted, so no request body is
ever forwarded unencrypted. TLS requests are matched against the route table
snapshot (most specific rule first) and only forwarded while a non-expired
certificate for the host is available.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from ..constants import COMPONENT_ROUTER, DEFAULT_HTTPS_PORT
from ..errors import RouteNotFound
from ..models.route import (
    RouteDecision,
    RouteRule,
    RouteTable,
    TargetService,
    normalize_host,
)
from ..observability.events import EventRecorder, get_event_recorder
from ..observability.metrics import metrics_collector
from .secret_sync import CertificateRegistry
from .snapshots import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)

# Scheme names are compared case-insensitively
TLS_SCHEMES = frozenset({"https", "wss", "tls"})


class TrafficRouter:
    """Routes requests from the single ingress entry point."""

    def __init__(
        self,
        certificates: CertificateRegistry,
        https_port: int = DEFAULT_HTTPS_PORT,
        events: EventRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.certificates = certificates
        self.https_port = https_port
        self.events = events or get_event_recorder()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.snapshots: SnapshotStore[RouteTable] = SnapshotStore(
            RouteTable(), name="routes"
        )

    def current(self) -> Snapshot[RouteTable]:
        return self.snapshots.current()

    def apply_route(self, route: str, rules: list[RouteRule]) -> int:
        snapshot = self.snapshots.update(lambda t: t.with_route(route, rules))
        metrics_collector.record_snapshot("routes", snapshot.version)
        return snapshot.version

    def remove_route(self, route: str) -> int:
        snapshot = self.snapshots.update(lambda t: t.without_route(route))
        metrics_collector.record_snapshot("routes", snapshot.version)
        return snapshot.version

    def redirect_location(self, host: str, path: str, query: str = "") -> str:
        authority = normalize_host(host)
        if self.https_port != DEFAULT_HTTPS_PORT:
            authority = f"{authority}:{self.https_port}"
        location = f"https://{authority}{path or '/'}"
        return f"{location}?{query}" if query else location

    def route(self, host: str, path: str, scheme: str, query: str = "") -> RouteDecision:
        """
        Decide what to do with one external request.

        The scheme is the one the request arrived on: "https", "wss" and
        "tls" count as TLS, anything else (such as "http") is plain.

        Returns:
            forward (200), redirect (308), not_found (404) or
            tls_unavailable (503)
        """
        normalized = normalize_host(host)
        path = path or "/"

        if scheme.strip().lower() not in TLS_SCHEMES:
            decision = RouteDecision(
                outcome="redirect",
                status_code=308,
                host=normalized,
                path=path,
                location=self.redirect_location(host, path, query),
                reason="plain HTTP is redirected to HTTPS",
            )
            return self._record(decision)

        table = self.snapshots.current().value
        rule = table.match(normalized, path)
        if rule is None:
            decision = RouteDecision(
                outcome="not_found",
                status_code=404,
                host=normalized,
                path=path,
                reason=f"no route for {normalized}{path}",
            )
            return self._record(decision)

        certificate = self.certificates.lookup(normalized)
        if certificate is None or certificate.is_expired(self.clock()):
            reason = (
                f"certificate for {normalized} expired at "
                f"{certificate.not_after.isoformat()}"
                if certificate is not None
                else f"no synced certificate covers {normalized}"
            )
            decision = RouteDecision(
                outcome="tls_unavailable",
                status_code=503,
                host=normalized,
                path=path,
                rule=rule.name,
                reason=reason,
            )
            return self._record(decision)

        decision = RouteDecision(
            outcome="forward",
            status_code=200,
            host=normalized,
            path=path,
            target=rule.target,
            rule=rule.name,
            reason=f"matched rule '{rule.name}' of route '{rule.route}'",
        )
        return self._record(decision)

    def resolve(self, host: str, path: str) -> TargetService:
        """
        Target service for a TLS request.

        Raises:
            RouteNotFound: If no rule matches host and path
        """
        rule = self.snapshots.current().value.match(host, path or "/")
        if rule is None:
            raise RouteNotFound(normalize_host(host), path)
        return rule.target

    def _record(self, decision: RouteDecision) -> RouteDecision:
        metrics_collector.record_route(decision.outcome)
        self.events.emit(
            COMPONENT_ROUTER,
            "route",
            decision.outcome,
            decision.reason,
            host=decision.host,
            path=decision.path,
            target=str(decision.target) if decision.target else None,
        )
        return decision
