"""Tests for evaluation contexts, merging and cache fingerprints."""

from __future__ import annotations

import pytest

from flageval.core.feature_flags.context import (
    EvaluationContext,
    create_context_key,
    create_evaluation_context,
    merge_contexts,
)


class TestEvaluationContext:
    """Tests for the immutable context."""

    def test_bags_are_read_only(self):
        """Test attribute bags cannot be mutated after construction."""
        ctx = EvaluationContext(user={"user_id": "u1"})
        with pytest.raises(TypeError):
            ctx.user["user_id"] = "u2"  # type: ignore[index]

    def test_input_is_copied(self):
        """Test later changes to the source dict do not leak in."""
        source = {"user_id": "u1", "custom_attributes": {"plan": "pro"}}
        ctx = EvaluationContext(user=source)
        source["user_id"] = "u2"
        source["custom_attributes"]["plan"] = "free"
        assert ctx.user["user_id"] == "u1"
        assert ctx.user["custom_attributes"]["plan"] == "pro"

    def test_identity_order(self):
        """Test identity prefers user id, then targeting key, then anonymous."""
        assert EvaluationContext(targeting_key="tk", user={"user_id": "u"}).identity == "u"
        assert EvaluationContext(targeting_key="tk").identity == "tk"
        assert EvaluationContext().identity == "anonymous"

    def test_round_trip_dict(self):
        """Test from_dict keeps unknown top-level keys as attributes."""
        ctx = EvaluationContext.from_dict({"targeting_key": "t", "user": {"user_id": "u"}, "tenant": "acme"})
        assert ctx.targeting_key == "t"
        assert ctx.attributes["tenant"] == "acme"
        assert ctx.to_dict()["user"] == {"user_id": "u"}


class TestMergeContexts:
    """Tests for per-bag context merging."""

    def test_later_values_win(self):
        """Test call-site values override defaults bag by bag."""
        base = EvaluationContext(system={"environment": "production", "version": "1"})
        call = EvaluationContext(system={"version": "2"}, user={"user_id": "u1"})
        merged = merge_contexts(base, call)
        assert merged.system["environment"] == "production"
        assert merged.system["version"] == "2"
        assert merged.user["user_id"] == "u1"

    def test_empty_targeting_key_never_overrides(self):
        """Test a missing targeting key keeps the earlier one."""
        merged = merge_contexts(EvaluationContext(targeting_key="first"), EvaluationContext(targeting_key=""))
        assert merged.targeting_key == "first"

    def test_custom_attributes_merge(self):
        """Test nested custom attributes are merged rather than replaced."""
        merged = merge_contexts(
            {"user": {"custom_attributes": {"a": 1}}},
            {"user": {"custom_attributes": {"b": 2}}},
        )
        assert dict(merged.user["custom_attributes"]) == {"a": 1, "b": 2}

    def test_none_is_skipped(self):
        """Test None entries are ignored."""
        merged = merge_contexts(None, {"targeting_key": "k"}, None)
        assert merged.targeting_key == "k"


class TestContextKey:
    """Tests for context fingerprints."""

    def test_insertion_order_does_not_matter(self):
        """Test semantically identical contexts collide."""
        a = EvaluationContext(user={"user_id": "u1", "country": "US", "email": "a@b.c"})
        b = EvaluationContext(user={"email": "a@b.c", "country": "US", "user_id": "u1"})
        assert create_context_key(a) == create_context_key(b)

    def test_timestamp_is_ignored(self):
        """Test the per-call timestamp does not change the key."""
        ctx = EvaluationContext(user={"user_id": "u1"})
        first = ctx.with_timestamp("2024-01-01T00:00:00+00:00")
        second = ctx.with_timestamp("2024-06-01T12:00:00+00:00")
        assert create_context_key(first) == create_context_key(second)

    def test_different_attributes_differ(self):
        """Test any attribute difference changes the hash part."""
        a = EvaluationContext(user={"user_id": "u1", "country": "US"})
        b = EvaluationContext(user={"user_id": "u1", "country": "DE"})
        assert create_context_key(a) != create_context_key(b)

    def test_readable_parts(self):
        """Test the key carries the main identifying fields before the hash."""
        ctx = EvaluationContext(
            targeting_key="tk",
            user={"user_id": "u1", "user_type": "beta"},
            system={"environment": "test", "device_type": "mobile"},
        )
        key = create_context_key(ctx)
        assert key.startswith("tk:tk|uid:u1|ut:beta|env:test|dt:mobile|h:")
        assert len(key.rsplit("h:", 1)[1]) == 16


class TestCreateEvaluationContext:
    """Tests for the context builder."""

    def test_builds_bags(self, monkeypatch):
        """Test the builder fills identity and system defaults."""
        monkeypatch.setenv("FLAGEVAL_ENVIRONMENT", "staging")
        ctx = create_evaluation_context(
            user_id="u42",
            user_attributes={"subscription_tier": "premium"},
            system_attributes={"device_type": "mobile"},
            tenant="acme",
        )
        assert ctx.targeting_key == "u42"
        assert ctx.user["user_id"] == "u42"
        assert ctx.user["subscription_tier"] == "premium"
        assert ctx.system["environment"] == "staging"
        assert ctx.system["device_type"] == "mobile"
        assert "timestamp" in ctx.system
        assert ctx.attributes["tenant"] == "acme"

    def test_anonymous(self):
        """Test a context without identity is anonymous."""
        assert create_evaluation_context().targeting_key == "anonymous"
