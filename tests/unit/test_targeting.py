"""Tests for segments, percentage rollouts and weighted variants."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone

import pytest

from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.targeting import (
    evaluate_segment,
    evaluate_targeting,
    percentage_bucket,
    select_variant,
    should_rollout,
)
from flageval.core.feature_flags.types import FlagConfig, FlagVariant, TargetingRule


def _bucket(identity: str) -> int:
    return int(hashlib.md5(identity.encode()).hexdigest()[:8], 16) % 100


class TestRollout:
    """Tests for percentage rollouts."""

    def test_bucket_matches_md5_prefix(self):
        """Test the bucket is the first 8 hex digits of md5 modulo 100."""
        for identity in ("user-1", "user-2", "anonymous"):
            assert percentage_bucket(identity) == _bucket(identity)

    def test_bounds(self):
        """Test 100% always and 0% never roll out."""
        assert should_rollout("anyone", 100) is True
        assert should_rollout("anyone", 150) is True
        assert should_rollout("anyone", 0) is False
        assert should_rollout("anyone", -5) is False

    def test_deterministic(self):
        """Test the same identity always gets the same answer."""
        ctx = EvaluationContext(user={"user_id": "stable-user"})
        answers = {should_rollout(ctx, 37) for _ in range(20)}
        assert answers == {_bucket("stable-user") < 37}

    def test_uses_context_identity(self):
        """Test contexts bucket by user id, then targeting key."""
        by_user = EvaluationContext(targeting_key="tk", user={"user_id": "u9"})
        by_key = EvaluationContext(targeting_key="tk")
        pct = 50
        assert should_rollout(by_user, pct) == (_bucket("u9") < pct)
        assert should_rollout(by_key, pct) == (_bucket("tk") < pct)

    def test_distribution(self):
        """Test a 30% rollout admits roughly 30% of users."""
        admitted = sum(should_rollout(f"user-{i}", 30) for i in range(2000))
        assert 500 < admitted < 700


class TestSegments:
    """Tests for built-in segments."""

    def test_beta_users(self):
        """Test beta membership requires opting in."""
        assert evaluate_segment("beta_users", EvaluationContext(user={"user_type": "beta", "beta_opted_in": True}))
        assert not evaluate_segment("beta_users", EvaluationContext(user={"user_type": "beta"}))

    def test_premium_users(self):
        """Test premium requires an active premium or enterprise plan."""
        active = EvaluationContext(user={"subscription_tier": "enterprise", "subscription_active": True})
        lapsed = EvaluationContext(user={"subscription_tier": "premium", "subscription_active": False})
        assert evaluate_segment("premium_users", active)
        assert not evaluate_segment("premium_users", lapsed)

    def test_internal_users(self):
        """Test internal users are matched by email domain or role."""
        assert evaluate_segment("internal_users", EvaluationContext(user={"email": "dev@company.com"}))
        assert evaluate_segment("internal_users", EvaluationContext(user={"user_role": "internal"}))
        assert not evaluate_segment("internal_users", EvaluationContext(user={"email": "dev@example.com"}))

    def test_mobile_users(self):
        """Test mobile users are matched by device type."""
        assert evaluate_segment("mobile_users", EvaluationContext(system={"device_type": "mobile"}))
        assert not evaluate_segment("mobile_users", EvaluationContext(system={"device_type": "desktop"}))

    def test_geographic(self):
        """Test country segments check the user and system custom attributes."""
        assert evaluate_segment("geographic_us", EvaluationContext(user={"country": "US"}))
        assert evaluate_segment(
            "geographic_de", EvaluationContext(system={"custom_attributes": {"country": "DE"}})
        )
        assert not evaluate_segment("geographic_us", EvaluationContext(user={"country": "FR"}))

    def test_new_users(self):
        """Test users registered in the last 30 days are new."""
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        recent = EvaluationContext(user={"registration_date": (now - timedelta(days=3)).isoformat()})
        old = EvaluationContext(user={"registration_date": (now - timedelta(days=45)).isoformat()})
        assert evaluate_segment("new_users", recent, now=now)
        assert not evaluate_segment("new_users", old, now=now)
        assert not evaluate_segment("new_users", EvaluationContext(), now=now)

    def test_high_traffic_times(self):
        """Test weekday business hours are high traffic."""
        ctx = EvaluationContext()
        assert evaluate_segment("high_traffic_times", ctx, now=datetime(2024, 3, 6, 10, 0))  # Wednesday
        assert not evaluate_segment("high_traffic_times", ctx, now=datetime(2024, 3, 6, 20, 0))
        assert not evaluate_segment("high_traffic_times", ctx, now=datetime(2024, 3, 9, 10, 0))  # Saturday

    def test_unknown_segment_logs_warning(self, caplog):
        """Test unknown segments never match and are reported."""
        with caplog.at_level(logging.WARNING):
            assert evaluate_segment("vip_martians", EvaluationContext()) is False
        assert "vip_martians" in caplog.text

    def test_custom_segment(self):
        """Test custom predicates take precedence."""
        custom = {"tenant_acme": lambda ctx: ctx.attributes.get("tenant") == "acme"}
        assert evaluate_segment("tenant_acme", EvaluationContext(attributes={"tenant": "acme"}), custom)


class TestEvaluateTargeting:
    """Tests for rule walking."""

    def test_first_matching_rule_wins(self):
        """Test rules are evaluated in declared order."""
        flag = FlagConfig(
            key="newDashboardUi",
            default_value=False,
            targeting=[
                TargetingRule(segment="internal_users", value_override=True, variant_override="internal"),
                TargetingRule(segment="mobile_users", value_override=True, variant_override="mobile"),
            ],
        )
        ctx = EvaluationContext(user={"email": "a@company.com"}, system={"device_type": "mobile"})
        result = evaluate_targeting(flag, ctx)
        assert result is not None
        assert result.segment == "internal_users"
        assert result.variant == "internal"
        assert result.value is True

    def test_disabled_rules_are_skipped(self):
        """Test disabled rules never match."""
        flag = FlagConfig(
            key="f",
            default_value=False,
            targeting=[TargetingRule(segment="mobile_users", enabled=False, value_override=True)],
        )
        assert evaluate_targeting(flag, EvaluationContext(system={"device_type": "mobile"})) is None

    def test_rollout_miss_continues_to_later_rules(self):
        """Test a segment match failing rollout falls through."""
        flag = FlagConfig(
            key="f",
            default_value=False,
            targeting=[
                TargetingRule(segment="mobile_users", rollout_percentage=0, value_override=True),
                TargetingRule(segment="geographic_us", value_override=True, variant_override="us"),
            ],
        )
        ctx = EvaluationContext(user={"country": "US"}, system={"device_type": "mobile"})
        result = evaluate_targeting(flag, ctx)
        assert result is not None
        assert result.segment == "geographic_us"

    def test_default_value_without_override(self):
        """Test the flag default is used when the rule has no override."""
        flag = FlagConfig(key="f", default_value="blue", targeting=[TargetingRule(segment="mobile_users")])
        result = evaluate_targeting(flag, EvaluationContext(system={"device_type": "mobile"}))
        assert result.value == "blue"

    def test_no_match(self):
        """Test None is returned when nothing matches."""
        flag = FlagConfig(key="f", default_value=False, targeting=[TargetingRule(segment="beta_users")])
        assert evaluate_targeting(flag, EvaluationContext()) is None


class TestSelectVariant:
    """Tests for weighted variant selection."""

    VARIANTS = [
        FlagVariant(key="control", weight=50),
        FlagVariant(key="variant_a", weight=25),
        FlagVariant(key="variant_b", weight=25),
    ]

    def test_deterministic(self):
        """Test a user always lands in the same variant."""
        ctx = EvaluationContext(user={"user_id": "user-7"})
        picks = {select_variant(self.VARIANTS, ctx).key for _ in range(10)}
        assert len(picks) == 1

    def test_weights_respected(self):
        """Test the split roughly follows the weights."""
        counts = {"control": 0, "variant_a": 0, "variant_b": 0}
        for i in range(4000):
            counts[select_variant(self.VARIANTS, EvaluationContext(user={"user_id": f"u{i}"})).key] += 1
        assert 1700 < counts["control"] < 2300
        assert 800 < counts["variant_a"] < 1200

    def test_zero_weights_pick_first(self):
        """Test all-zero weights fall back to the first variant."""
        variants = [FlagVariant(key="a"), FlagVariant(key="b")]
        assert select_variant(variants, EvaluationContext()).key == "a"

    def test_empty(self):
        """Test an empty variant list is rejected."""
        with pytest.raises(ValueError):
            select_variant([], EvaluationContext())
