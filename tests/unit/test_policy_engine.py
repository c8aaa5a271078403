"""Unit tests for the policy decision engine."""

import time
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from mesh_operator.errors import AuthorizationDenied, IdentityInvalid
from mesh_operator.models.policy import (
    AuthorizationRule,
    Identity,
    MeshAuthorizationPolicySpec,
    PolicySet,
)
from mesh_operator.services.policy_engine import (
    PolicyDecisionEngine,
    StaticIdentityProvider,
    select_rule,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def identity(subject="shop/frontend", fingerprint="fp-1", not_before=None, not_after=None):
    return Identity(
        subject=subject,
        public_key_fingerprint=fingerprint,
        not_before=not_before or NOW - timedelta(hours=1),
        not_after=not_after or NOW + timedelta(hours=1),
    )


def policy_rules(spec, name="checkout-access", namespace="shop"):
    return MeshAuthorizationPolicySpec.model_validate(spec).to_rules(namespace, name)


@pytest.fixture
def provider():
    return StaticIdentityProvider([identity(), identity("shop/catalog")])


@pytest.fixture
def engine(provider, events):
    return PolicyDecisionEngine(provider, timeout=1.0, events=events, clock=lambda: NOW)


class TestAuthorize:
    """Test rule evaluation for verified identities."""

    def test_no_rules_means_deny(self, engine):
        decision = engine.authorize(identity(), "checkout", "/api/orders")

        assert decision.allowed is False
        assert decision.outcome == "denied"
        assert decision.target == "shop/checkout"
        assert decision.reason.startswith(
            "no authorization rule grants 'shop/frontend' access to 'shop/checkout'"
        )

    def test_declared_rule_grants_access(self, engine):
        engine.apply_policy(
            "shop/checkout-access",
            policy_rules(
                {
                    "rules": [
                        {
                            "name": "frontend-checkout",
                            "principal": "frontend",
                            "targetService": "checkout",
                            "paths": ["/api/*"],
                        }
                    ]
                }
            ),
        )

        allowed = engine.authorize(identity(), "checkout", "/api/orders")
        denied = engine.authorize(identity(), "checkout", "/admin")

        assert allowed.allowed is True
        assert allowed.rule == "frontend-checkout"
        assert allowed.reason == (
            "granted by rule 'frontend-checkout' of policy 'shop/checkout-access'"
        )
        assert denied.outcome == "denied"

    def test_dependency_graph_grants_declared_edges_only(self, engine):
        engine.apply_policy(
            "shop/graph",
            policy_rules({"dependencies": {"frontend": ["catalog", "checkout"]}}, "graph"),
        )

        assert engine.authorize(identity(), "catalog").rule == "frontend-to-catalog"
        assert engine.authorize(identity("shop/catalog"), "frontend").allowed is False

    def test_rules_are_scoped_to_their_target_namespace(self, engine):
        engine.apply_policy(
            "billing/invoices",
            policy_rules(
                {"rules": [{"name": "shop-frontend", "principal": "shop/frontend",
                            "targetService": "invoices"}]},
                "invoices",
                "billing",
            ),
        )

        assert engine.authorize(identity(), "billing/invoices").allowed is True
        assert engine.authorize(identity(), "invoices").allowed is False

    def test_port_restriction(self, engine):
        engine.apply_policy(
            "shop/ports",
            policy_rules(
                {"rules": [{"name": "grpc", "targetService": "checkout", "ports": [9090]}]},
                "ports",
            ),
        )

        assert engine.authorize(identity(), "checkout", port=9090).allowed is True
        denied = engine.authorize(identity(), "checkout", port=8080)
        assert denied.allowed is False
        assert denied.reason.endswith("on path / port 8080")

    def test_grant_for_other_principal_does_not_cover_caller(self, engine):
        engine.apply_policy(
            "shop/cart",
            policy_rules(
                {"rules": [{"name": "checkout-cart", "principal": "checkoutservice",
                            "targetService": "cartservice"}]},
                "cart",
            ),
        )

        decision = engine.authorize(
            identity(), "cartservice", "/hipstershop.CartService/GetCart", 7070
        )

        assert decision.allowed is False
        assert decision.outcome == "denied"

    def test_adding_rules_keeps_existing_grants(self, engine):
        engine.apply_policy(
            "shop/checkout-access",
            policy_rules(
                {"rules": [{"name": "frontend-api", "principal": "frontend",
                            "targetService": "checkout", "paths": ["/api/*"]}]}
            ),
        )
        before = [
            engine.authorize(identity(), "checkout", path).allowed
            for path in ("/api/orders", "/api", "/admin")
        ]

        engine.apply_policy(
            "shop/more",
            policy_rules(
                {"rules": [
                    {"name": "catalog-any", "principal": "catalog", "targetService": "checkout"},
                    {"name": "frontend-orders", "principal": "frontend",
                     "targetService": "checkout", "paths": ["/api/orders"]},
                ]},
                "more",
            ),
        )
        after = [
            engine.authorize(identity(), "checkout", path).allowed
            for path in ("/api/orders", "/api", "/admin")
        ]

        assert before == [True, True, False]
        assert after == before
        assert engine.authorize(identity(), "checkout", "/api/orders").rule == "frontend-orders"

    def test_removing_policy_revokes_its_grants(self, engine):
        engine.apply_policy(
            "shop/graph", policy_rules({"dependencies": {"frontend": ["catalog"]}}, "graph")
        )
        engine.remove_policy("shop/graph")

        assert engine.authorize(identity(), "catalog").allowed is False
        assert engine.current().version == 2

    def test_decision_is_bound_to_one_snapshot(self, engine):
        version = engine.apply_policy(
            "shop/graph", policy_rules({"dependencies": {"frontend": ["catalog"]}}, "graph")
        )

        assert engine.authorize(identity(), "catalog").snapshot_version == version


class TestRuleSelection:
    """Test specificity ordering among matching rules."""

    def rule(self, name, **kwargs):
        return AuthorizationRule(
            name=name,
            policy="shop/p",
            target_namespace="shop",
            target_service="checkout",
            **kwargs,
        )

    def test_exact_principal_beats_wildcard(self):
        policies = PolicySet(
            (self.rule("any-shop", principal="shop/*"), self.rule("frontend", principal="frontend"))
        )

        chosen = select_rule(policies, "shop/frontend", "shop/checkout", "/", None)

        assert chosen.name == "frontend"

    def test_exact_path_beats_prefix(self):
        policies = PolicySet(
            (self.rule("prefix", path="/api/*"), self.rule("exact", path="/api/orders"))
        )

        chosen = select_rule(policies, "shop/frontend", "shop/checkout", "/api/orders", None)

        assert chosen.name == "exact"

    def test_ties_go_to_earliest_rule(self):
        policies = PolicySet((self.rule("first"), self.rule("second")))

        chosen = select_rule(policies, "shop/frontend", "shop/checkout", "/", None)

        assert chosen.name == "first"

    def test_prefix_path_matches_on_segment(self):
        rule = self.rule("prefix", path="/api/*")

        assert rule.specificity("shop/a", "/api", None) is not None
        assert rule.specificity("shop/a", "/api/v1", None) is not None
        assert rule.specificity("shop/a", "/apiv2", None) is None


class TestIdentityVerification:
    """Test that identity problems are reported separately from denials."""

    def test_missing_identity(self, engine):
        decision = engine.authorize(None, "shop/checkout")

        assert decision.outcome == "identity_invalid"
        assert decision.source == "unknown"
        assert decision.reason == "no identity presented"

    def test_expired_identity(self, engine):
        expired = identity(
            not_before=NOW - timedelta(days=1), not_after=NOW - timedelta(hours=2)
        )

        decision = engine.authorize(expired, "checkout")

        assert decision.outcome == "identity_invalid"
        assert decision.reason.startswith("identity expired at")

    def test_clock_skew_is_tolerated(self, engine):
        just_expired = identity(not_after=NOW - timedelta(seconds=10))
        assert engine.verify_identity(just_expired) is None

    def test_not_yet_valid_identity(self, engine):
        early = identity(not_before=NOW + timedelta(hours=1), not_after=NOW + timedelta(hours=2))
        assert engine.verify_identity(early) == "identity is not yet valid"

    def test_rotated_identity_is_rejected(self, engine, provider):
        provider.register(identity(fingerprint="fp-2"))

        decision = engine.authorize(identity(fingerprint="fp-1"), "checkout")

        assert decision.outcome == "identity_invalid"
        assert "not the current identity" in decision.reason

    def test_unknown_subject(self, engine):
        decision = engine.authorize(identity("shop/intruder"), "checkout")
        assert decision.reason == "subject is unknown to the identity provider"

    def test_provider_failure_rejects_identity(self, events):
        class BrokenProvider:
            def current_identity(self, subject):
                raise ConnectionError("provider down")

        engine = PolicyDecisionEngine(BrokenProvider(), events=events, clock=lambda: NOW)

        decision = engine.authorize(identity(), "checkout")

        assert decision.outcome == "identity_invalid"
        assert decision.reason == "identity could not be verified"

    def test_subject_must_name_namespace_and_service(self):
        with pytest.raises(PydanticValidationError):
            identity(subject="frontend")

    def test_validity_window_must_carry_a_timezone(self):
        with pytest.raises(PydanticValidationError):
            Identity.model_validate(
                {
                    "subject": "shop/frontend",
                    "publicKeyFingerprint": "fp-1",
                    "notBefore": "2026-01-01T00:00:00",
                    "notAfter": "2027-01-01T00:00:00",
                }
            )


class TestAuthorizeWithTimeout:
    """Test the bounded request-path wrapper."""

    @pytest.mark.asyncio
    async def test_decision_is_recorded_as_event(self, engine, events):
        decision = await engine.authorize_with_timeout(identity(), "checkout", "/cart")

        recorded = events.recent(component="policy", action="authorize")[-1]
        assert recorded.outcome == decision.outcome == "denied"
        assert recorded.fields["target"] == "shop/checkout"
        assert recorded.fields["path"] == "/cart"

    @pytest.mark.asyncio
    async def test_slow_evaluation_times_out_closed(self, engine, monkeypatch):
        def slow_authorize(*args):
            time.sleep(0.2)

        monkeypatch.setattr(engine, "authorize", slow_authorize)

        decision = await engine.authorize_with_timeout(identity(), "checkout", timeout=0.01)

        assert decision.allowed is False
        assert decision.outcome == "timeout"

    @pytest.mark.asyncio
    async def test_evaluation_failure_denies(self, engine, events, monkeypatch):
        def broken_authorize(*args):
            raise TypeError("can't compare offset-naive and offset-aware datetimes")

        monkeypatch.setattr(engine, "authorize", broken_authorize)

        decision = await engine.authorize_with_timeout(identity(), "checkout")

        assert decision.allowed is False
        assert decision.outcome == "error"
        assert decision.reason == "authorization evaluation failed; denied"
        assert events.recent(component="policy", action="authorize")[-1].outcome == "error"

    @pytest.mark.asyncio
    async def test_ensure_authorized_raises_on_evaluation_failure(self, engine, monkeypatch):
        def broken_authorize(*args):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine, "authorize", broken_authorize)

        with pytest.raises(AuthorizationDenied):
            await engine.ensure_authorized(identity(), "checkout")

    @pytest.mark.asyncio
    async def test_ensure_authorized_raises_on_denial(self, engine):
        with pytest.raises(AuthorizationDenied) as exc_info:
            await engine.ensure_authorized(identity(), "checkout")

        assert exc_info.value.source == "shop/frontend"
        assert exc_info.value.target == "shop/checkout"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_ensure_authorized_raises_on_invalid_identity(self, engine):
        with pytest.raises(IdentityInvalid):
            await engine.ensure_authorized(identity("shop/intruder"), "checkout")

    @pytest.mark.asyncio
    async def test_ensure_authorized_returns_granting_decision(self, engine):
        engine.apply_policy(
            "shop/graph", policy_rules({"dependencies": {"frontend": ["catalog"]}}, "graph")
        )

        decision = await engine.ensure_authorized(identity(), "catalog")

        assert decision.rule == "frontend-to-catalog"
