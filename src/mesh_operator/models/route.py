"""
Pydantic models for ingress route rules.

Route rules map an external host and path to an internal service. A
RouteTable keeps rules ordered by specificity, so the first match is the
most specific one; equally specific rules keep declaration order.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Host specificity classes
HOST_EXACT = 2
HOST_WILDCARD = 1
HOST_ANY = 0


def normalize_host(host: str) -> str:
    """Lower-case a host header value and strip any port."""
    host = host.strip().lower()
    if host.startswith("["):
        return host.split("]", 1)[0] + "]"
    return host.split(":", 1)[0]


class TargetService(BaseModel):
    """Internal workload endpoint a route forwards to."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    service: str
    port: int = Field(80, ge=1, le=65535)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.service}:{self.port}"


class RouteRule(BaseModel):
    """A host/path match bound to a target service."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    route: str = Field("", description="namespace/name of the declaring MeshRoute")
    host: str = Field(..., description="Exact host, '*.suffix' or '*'")
    path: str = "/"
    path_type: Literal["Exact", "Prefix"] = Field("Prefix", alias="pathType")
    target: TargetService
    protocol: Literal["https"] = Field(
        "https", description="Routes are only served over TLS"
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v):
        v = v.strip().lower()
        if v != "*" and "*" in v and not (v.startswith("*.") and "*" not in v[1:]):
            raise ValueError("wildcard hosts must be of the form '*.example.com'")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v

    def host_score(self, host: str) -> tuple[int, int] | None:
        if self.host == host:
            return (HOST_EXACT, len(self.host))
        if self.host.startswith("*.") and host.endswith(self.host[1:]):
            return (HOST_WILDCARD, len(self.host))
        if self.host == "*":
            return (HOST_ANY, 0)
        return None

    def matches_path(self, path: str) -> bool:
        if self.path_type == "Exact":
            return path == self.path
        prefix = self.path.rstrip("/")
        # Prefix matching is segment aware: /api matches /api and /api/x, not /apix
        return prefix == "" or path == prefix or path.startswith(prefix + "/")

    @property
    def sort_key(self) -> tuple[int, int, int, int]:
        if self.host == "*":
            host_class, host_len = HOST_ANY, 0
        elif self.host.startswith("*."):
            host_class, host_len = HOST_WILDCARD, len(self.host)
        else:
            host_class, host_len = HOST_EXACT, len(self.host)
        path_class = 1 if self.path_type == "Exact" else 0
        return (host_class, host_len, path_class, len(self.path.rstrip("/")))


class RouteRuleSpec(BaseModel):
    """One rule as declared in a MeshRoute."""

    model_config = {"populate_by_name": True}

    path: str = "/"
    path_type: Literal["Exact", "Prefix"] = Field("Prefix", alias="pathType")
    service: str
    port: int = Field(80, ge=1, le=65535)
    namespace: str | None = None


class MeshRouteSpec(BaseModel):
    """Specification of a MeshRoute resource."""

    model_config = {"populate_by_name": True}

    hosts: list[str] = Field(..., min_length=1)
    rules: list[RouteRuleSpec] = Field(..., min_length=1)

    def to_rules(self, route_namespace: str, route_name: str) -> list[RouteRule]:
        route_id = f"{route_namespace}/{route_name}"
        rules = []
        for host in self.hosts:
            for index, spec in enumerate(self.rules):
                rules.append(
                    RouteRule(
                        name=f"{route_name}-{index}",
                        route=route_id,
                        host=host,
                        path=spec.path,
                        path_type=spec.path_type,
                        target=TargetService(
                            namespace=spec.namespace or route_namespace,
                            service=spec.service,
                            port=spec.port,
                        ),
                    )
                )
        return rules


@dataclass(frozen=True)
class RouteTable:
    """Immutable route rules in declaration order."""

    rules: tuple[RouteRule, ...] = ()

    def with_route(self, route: str, rules: list[RouteRule]) -> "RouteTable":
        kept = tuple(rule for rule in self.rules if rule.route != route)
        return RouteTable(kept + tuple(rules))

    def without_route(self, route: str) -> "RouteTable":
        return RouteTable(tuple(rule for rule in self.rules if rule.route != route))

    @cached_property
    def ordered(self) -> tuple[RouteRule, ...]:
        # sorted() is stable, so ties keep declaration order
        return tuple(sorted(self.rules, key=lambda r: r.sort_key, reverse=True))

    def match(self, host: str, path: str) -> RouteRule | None:
        """Return the most specific rule matching host and path."""
        host = normalize_host(host)
        for rule in self.ordered:
            if rule.host_score(host) is not None and rule.matches_path(path):
                return rule
        return None


RouteOutcome = Literal["forward", "redirect", "not_found", "tls_unavailable"]


class RouteDecision(BaseModel):
    """Result of routing one external request."""

    outcome: RouteOutcome
    status_code: int
    host: str
    path: str
    target: TargetService | None = None
    rule: str | None = None
    location: str | None = None
    reason: str = ""
