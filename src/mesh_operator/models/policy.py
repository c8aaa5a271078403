"""
Pydantic models for workload identities and authorization rules.

Rules only ever grant access (default-deny otherwise). A PolicySet is an
immutable collection of rules grouped by the policy that declared them;
evaluators read one PolicySet per decision.
"""

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import cached_property
from typing import Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator

# Specificity levels per matched dimension
EXACT = 2
WILDCARD = 1
ABSENT = 0


def split_subject(subject: str, default_namespace: str | None = None) -> tuple[str, str]:
    """Split 'namespace/service' into its parts, defaulting the namespace."""
    if "/" in subject:
        namespace, service = subject.split("/", 1)
        return namespace, service
    return default_namespace or "default", subject


class Identity(BaseModel):
    """A workload identity issued by the identity provider."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    subject: str = Field(..., description="namespace/service the identity is bound to")
    public_key_fingerprint: str = Field(..., alias="publicKeyFingerprint")
    not_before: AwareDatetime = Field(..., alias="notBefore")
    not_after: AwareDatetime = Field(..., alias="notAfter")

    @field_validator("subject")
    @classmethod
    def validate_subject(cls, v):
        if "/" not in v or v.startswith("/") or v.endswith("/"):
            raise ValueError("subject must be of the form 'namespace/service'")
        return v

    def is_valid_at(self, now: datetime | None = None, skew_seconds: int = 0) -> bool:
        """Check the validity window, tolerating clock skew at both edges."""
        now = now or datetime.now(UTC)
        skew = timedelta(seconds=skew_seconds)
        return self.not_before - skew <= now <= self.not_after + skew


class AuthorizationRule(BaseModel):
    """Grants a principal pattern access to a target service."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(..., description="Rule name, unique within its policy")
    policy: str = Field("", description="namespace/name of the declaring policy")
    principal: str | None = Field(
        None, description="Subject pattern; None matches any verified identity"
    )
    target_namespace: str = Field(..., alias="targetNamespace")
    target_service: str = Field(..., alias="targetService")
    path: str | None = Field(None, description="Exact path or '/prefix/*'")
    port: int | None = Field(None, ge=1, le=65535)
    effect: Literal["ALLOW"] = "ALLOW"

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        if v is not None and not v.startswith("/") and v != "*":
            raise ValueError("path must start with '/' or be '*'")
        return v

    @property
    def target(self) -> str:
        return f"{self.target_namespace}/{self.target_service}"

    def _principal_score(self, subject: str) -> int | None:
        if self.principal is None:
            return ABSENT
        pattern = self.principal
        if "/" not in pattern and pattern != "*":
            pattern = f"{self.target_namespace}/{pattern}"
        if pattern == subject:
            return EXACT
        if any(ch in pattern for ch in "*?[") and fnmatch.fnmatchcase(subject, pattern):
            return WILDCARD
        return None

    def _path_score(self, path: str) -> int | None:
        if self.path is None:
            return ABSENT
        if self.path == path:
            return EXACT
        if self.path == "*":
            return WILDCARD
        if self.path.endswith("/*") and (
            path == self.path[:-2] or path.startswith(self.path[:-1])
        ):
            return WILDCARD
        return None

    def _port_score(self, port: int | None) -> int | None:
        if self.port is None:
            return ABSENT
        return EXACT if self.port == port else None

    def specificity(
        self, subject: str, path: str, port: int | None
    ) -> tuple[int, int, int] | None:
        """
        Score how specifically this rule matches a call.

        Returns:
            (principal, path, port) scores, or None if the rule does not match
        """
        scores = (
            self._principal_score(subject),
            self._path_score(path),
            self._port_score(port),
        )
        if any(score is None for score in scores):
            return None
        return scores  # type: ignore[return-value]


class RuleSpec(BaseModel):
    """A rule as declared in a MeshAuthorizationPolicy."""

    model_config = {"populate_by_name": True}

    name: str
    principal: str | None = None
    target_service: str = Field(..., alias="targetService")
    paths: list[str] = Field(default_factory=list)
    ports: list[int] = Field(default_factory=list)


class MeshAuthorizationPolicySpec(BaseModel):
    """Specification of a MeshAuthorizationPolicy resource."""

    model_config = {"populate_by_name": True}

    target_namespace: str | None = Field(
        None,
        alias="targetNamespace",
        description="Namespace of the target services (defaults to the policy namespace)",
    )
    rules: list[RuleSpec] = Field(default_factory=list)
    dependencies: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Service dependency edges: caller -> callees",
    )
    dependency_ports: list[int] = Field(default_factory=list, alias="dependencyPorts")

    def to_rules(self, policy_namespace: str, policy_name: str) -> list[AuthorizationRule]:
        """Expand declared rules and dependency edges into AuthorizationRules."""
        target_namespace = self.target_namespace or policy_namespace
        policy_id = f"{policy_namespace}/{policy_name}"
        rules: list[AuthorizationRule] = []

        for spec in self.rules:
            paths: list[str | None] = list(spec.paths) or [None]
            ports: list[int | None] = list(spec.ports) or [None]
            for path in paths:
                for port in ports:
                    rules.append(
                        AuthorizationRule(
                            name=spec.name,
                            policy=policy_id,
                            principal=spec.principal,
                            target_namespace=target_namespace,
                            target_service=spec.target_service,
                            path=path,
                            port=port,
                        )
                    )

        graph = ServiceGraph.from_mapping(self.dependencies)
        rules.extend(
            graph.to_rules(
                namespace=target_namespace,
                policy=policy_id,
                ports=self.dependency_ports,
            )
        )
        return rules


@dataclass(frozen=True)
class ServiceGraph:
    """Declarative service dependency edges keyed by caller name."""

    edges: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, list[str]]) -> "ServiceGraph":
        return cls({caller: frozenset(callees) for caller, callees in mapping.items()})

    def to_rules(
        self, namespace: str, policy: str, ports: list[int] | None = None
    ) -> list[AuthorizationRule]:
        rules = []
        for caller in sorted(self.edges):
            for callee in sorted(self.edges[caller]):
                for port in list(ports or []) or [None]:
                    rules.append(
                        AuthorizationRule(
                            name=f"{caller}-to-{callee}",
                            policy=policy,
                            principal=f"{namespace}/{caller}",
                            target_namespace=namespace,
                            target_service=callee,
                            port=port,
                        )
                    )
        return rules


@dataclass(frozen=True)
class PolicySet:
    """Immutable, ordered collection of authorization rules."""

    rules: tuple[AuthorizationRule, ...] = ()

    def with_policy(self, policy: str, rules: list[AuthorizationRule]) -> "PolicySet":
        """Replace all rules declared by one policy, keeping everything else."""
        kept = tuple(rule for rule in self.rules if rule.policy != policy)
        return PolicySet(kept + tuple(rules))

    def without_policy(self, policy: str) -> "PolicySet":
        return PolicySet(tuple(rule for rule in self.rules if rule.policy != policy))

    @cached_property
    def by_target(self) -> dict[str, tuple[AuthorizationRule, ...]]:
        index: dict[str, list[AuthorizationRule]] = {}
        for rule in self.rules:
            index.setdefault(rule.target, []).append(rule)
        return {target: tuple(rules) for target, rules in index.items()}

    def rules_for(self, target: str) -> tuple[AuthorizationRule, ...]:
        return self.by_target.get(target, ())


DecisionOutcome = Literal["allowed", "denied", "identity_invalid", "timeout", "error"]


class AuthorizationDecision(BaseModel):
    """Result of evaluating one inbound call."""

    allowed: bool
    outcome: DecisionOutcome
    source: str
    target: str
    reason: str
    rule: str | None = None
    snapshot_version: int | None = None
