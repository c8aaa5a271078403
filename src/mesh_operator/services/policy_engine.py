"""
Policy decision engine.

Authorizes calls between workloads from the caller's mesh identity and the
rules declared for the target service. Access is default-deny; rules only
grant. Among matching rules the most specific one (principal, then path,
then port; exact beats wildcard beats absent) is reported as the reason,
ties going to the earliest declared rule.

Identity verification is a precondition evaluated before any rule: an
expired identity, or one whose key is not the identity provider's current
key for the subject, yields ``identity_invalid`` rather than ``denied``.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from ..constants import (
    COMPONENT_POLICY,
    DEFAULT_AUTHORIZATION_TIMEOUT,
    ERROR_NO_MATCHING_RULE,
)
from ..errors import AuthorizationDenied, IdentityInvalid
from ..models.policy import (
    AuthorizationDecision,
    AuthorizationRule,
    Identity,
    PolicySet,
    split_subject,
)
from ..observability.events import EventRecorder, get_event_recorder
from ..observability.metrics import metrics_collector
from ..observability.tracing import get_tracer
from .snapshots import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class IdentityProvider(Protocol):
    """Lookup of the currently valid identity issued for a subject."""

    def current_identity(self, subject: str) -> Identity | None: ...


class StaticIdentityProvider:
    """
    In-memory identity registry.

    Rotation is modelled by registering a new identity for the same subject,
    which replaces the previous one.
    """

    def __init__(self, identities: list[Identity] | None = None):
        self._lock = threading.Lock()
        self._identities: dict[str, Identity] = {}
        for identity in identities or []:
            self.register(identity)

    def register(self, identity: Identity) -> None:
        with self._lock:
            self._identities[identity.subject] = identity
        logger.debug(f"Registered identity for {identity.subject}")

    def revoke(self, subject: str) -> None:
        with self._lock:
            self._identities.pop(subject, None)

    def current_identity(self, subject: str) -> Identity | None:
        with self._lock:
            return self._identities.get(subject)


def _target_id(target_service: str, source_subject: str | None) -> str:
    default_namespace = source_subject.split("/", 1)[0] if source_subject else None
    namespace, service = split_subject(target_service, default_namespace)
    return f"{namespace}/{service}"


def select_rule(
    policies: PolicySet, subject: str, target: str, path: str, port: int | None
) -> AuthorizationRule | None:
    """Most specific rule granting subject access to target, if any."""
    best: AuthorizationRule | None = None
    best_score: tuple[int, int, int] | None = None
    for rule in policies.rules_for(target):
        score = rule.specificity(subject, path, port)
        if score is None:
            continue
        if best_score is None or score > best_score:
            best, best_score = rule, score
    return best


class PolicyDecisionEngine:
    """Evaluates authorization requests against the active policy snapshot."""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        timeout: float = DEFAULT_AUTHORIZATION_TIMEOUT,
        clock_skew_seconds: int = 30,
        events: EventRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.identity_provider = identity_provider
        self.timeout = timeout
        self.clock_skew_seconds = clock_skew_seconds
        self.events = events or get_event_recorder()
        self.clock = clock or (lambda: datetime.now(UTC))
        self.snapshots: SnapshotStore[PolicySet] = SnapshotStore(
            PolicySet(), name="policies"
        )

    def current(self) -> Snapshot[PolicySet]:
        return self.snapshots.current()

    def apply_policy(self, policy: str, rules: list[AuthorizationRule]) -> int:
        """Replace the rules declared by one policy (namespace/name)."""
        snapshot = self.snapshots.update(lambda s: s.with_policy(policy, rules))
        metrics_collector.record_snapshot("policies", snapshot.version)
        return snapshot.version

    def remove_policy(self, policy: str) -> int:
        snapshot = self.snapshots.update(lambda s: s.without_policy(policy))
        metrics_collector.record_snapshot("policies", snapshot.version)
        return snapshot.version

    def verify_identity(self, identity: Identity | None) -> str | None:
        """
        Check an identity presented by a caller.

        Returns:
            None when the identity is valid, otherwise the rejection reason
        """
        if identity is None:
            return "no identity presented"
        now = self.clock()
        if now + timedelta(seconds=self.clock_skew_seconds) < identity.not_before:
            return "identity is not yet valid"
        if not identity.is_valid_at(now, self.clock_skew_seconds):
            return f"identity expired at {identity.not_after.isoformat()}"
        try:
            current = self.identity_provider.current_identity(identity.subject)
        except Exception as e:
            logger.error(f"Identity provider lookup for {identity.subject} failed: {e}")
            return "identity could not be verified"
        if current is None:
            return "subject is unknown to the identity provider"
        if current.public_key_fingerprint != identity.public_key_fingerprint:
            return "identity is not the current identity issued for the subject"
        return None

    def authorize(
        self,
        source_identity: Identity | None,
        target_service: str,
        path: str = "/",
        port: int | None = None,
    ) -> AuthorizationDecision:
        """
        Decide whether a call may proceed.

        Binds to a single policy snapshot for the whole evaluation.
        """
        snapshot = self.snapshots.current()
        subject = source_identity.subject if source_identity else None
        target = _target_id(target_service, subject)
        subject = subject or "unknown"

        problem = self.verify_identity(source_identity)
        if problem is not None:
            return AuthorizationDecision(
                allowed=False,
                outcome="identity_invalid",
                source=subject,
                target=target,
                reason=problem,
                snapshot_version=snapshot.version,
            )

        rule = select_rule(snapshot.value, subject, target, path, port)
        if rule is None:
            reason = ERROR_NO_MATCHING_RULE.format(subject, target)
            details = f" on path {path}" + (f" port {port}" if port else "")
            return AuthorizationDecision(
                allowed=False,
                outcome="denied",
                source=subject,
                target=target,
                reason=reason + details,
                snapshot_version=snapshot.version,
            )
        return AuthorizationDecision(
            allowed=True,
            outcome="allowed",
            source=subject,
            target=target,
            reason=f"granted by rule '{rule.name}' of policy '{rule.policy}'",
            rule=rule.name,
            snapshot_version=snapshot.version,
        )

    async def authorize_with_timeout(
        self,
        source_identity: Identity | None,
        target_service: str,
        path: str = "/",
        port: int | None = None,
        timeout: float | None = None,
    ) -> AuthorizationDecision:
        """Bounded authorization; exceeding the budget denies the call."""
        timeout = self.timeout if timeout is None else timeout
        start = time.monotonic()
        with tracer.start_as_current_span("policy.authorize") as span:
            span.set_attribute("mesh.target", target_service)
            try:
                decision = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.authorize, source_identity, target_service, path, port
                    ),
                    timeout,
                )
            except TimeoutError:
                subject = source_identity.subject if source_identity else "unknown"
                decision = AuthorizationDecision(
                    allowed=False,
                    outcome="timeout",
                    source=subject,
                    target=target_service,
                    reason=f"authorization exceeded {timeout}s; denied",
                )
            except Exception as e:
                subject = source_identity.subject if source_identity else "unknown"
                logger.error(
                    f"Authorization of {subject} -> {target_service} failed: {e}",
                    exc_info=True,
                )
                decision = AuthorizationDecision(
                    allowed=False,
                    outcome="error",
                    source=subject,
                    target=target_service,
                    reason="authorization evaluation failed; denied",
                )
            span.set_attribute("mesh.outcome", decision.outcome)

        metrics_collector.record_authorization(
            decision.target, decision.outcome, time.monotonic() - start
        )
        self.events.emit(
            COMPONENT_POLICY,
            "authorize",
            decision.outcome,
            decision.reason,
            source=decision.source,
            target=decision.target,
            path=path,
            snapshot_version=decision.snapshot_version,
        )
        return decision

    async def ensure_authorized(
        self,
        source_identity: Identity | None,
        target_service: str,
        path: str = "/",
        port: int | None = None,
    ) -> AuthorizationDecision:
        """
        Authorize or raise.

        Raises:
            IdentityInvalid: If the identity precondition failed
            AuthorizationDenied: If no rule grants the call, or on timeout
        """
        decision = await self.authorize_with_timeout(
            source_identity, target_service, path, port
        )
        if decision.outcome == "identity_invalid":
            raise IdentityInvalid(decision.source, decision.reason)
        if not decision.allowed:
            raise AuthorizationDenied(decision.source, decision.target, decision.reason)
        return decision
