"""Tests for configuration loading."""

import json

import pytest

from governor.config import (
    DEFAULT_TIER_PLANS,
    FailMode,
    get_fail_mode,
    get_db_path,
    get_store_timeout,
    get_tier_plans,
    load_tier_plans,
    parse_tier_plans,
    reset_tier_plans,
    set_tier_plans,
)
from governor.models import EndpointLimit, Surface, TierPlan


class TestDefaultPlans:
    """Test the built-in tier plans."""

    def test_four_tiers(self):
        """Four tiers ship by default."""
        assert set(DEFAULT_TIER_PLANS) == {"lite", "pro", "master", "unlimited"}

    def test_pro_plan(self):
        """pro has the documented budgets and IDE access."""
        pro = DEFAULT_TIER_PLANS["pro"]
        assert pro.requests_per_minute == 30
        assert pro.monthly_token_limit == 2_500_000
        assert pro.requests_per_day == 1000
        assert pro.allows_surface(Surface.VSCODE)

    def test_lite_excludes_vscode(self):
        """lite covers web and mobile only."""
        lite = DEFAULT_TIER_PLANS["lite"]
        assert lite.allows_surface(Surface.WEB)
        assert lite.allows_surface(Surface.MOBILE)
        assert not lite.allows_surface(Surface.VSCODE)

    def test_endpoint_override(self):
        """pro caps oscar/ask below its tier defaults."""
        pro = DEFAULT_TIER_PLANS["pro"]
        assert pro.limits_for("oscar/ask") == EndpointLimit(per_minute=15, per_day=500)

    def test_endpoint_without_override_uses_tier_defaults(self):
        """Endpoints without overrides use the tier caps."""
        pro = DEFAULT_TIER_PLANS["pro"]
        assert pro.limits_for("chat") == EndpointLimit(per_minute=30, per_day=1000)


class TestParseTierPlans:
    """Test tier plan validation."""

    def test_parse_minimal_plan(self):
        """Optional plan keys take their defaults."""
        plans = parse_tier_plans({
            "team": {
                "requests_per_minute": 20,
                "monthly_token_limit": 1000,
                "requests_per_day": 200,
            }
        })
        team = plans["team"]
        assert team.name == "team"
        assert team.allowed_surfaces == frozenset({Surface.WEB, Surface.MOBILE})
        assert team.endpoint_limits == {}

    def test_parse_full_plan(self):
        """Surfaces and endpoint overrides are parsed."""
        plans = parse_tier_plans({
            "team": {
                "requests_per_minute": 20,
                "monthly_token_limit": 1000,
                "requests_per_day": 200,
                "allowed_surfaces": ["web", "vscode"],
                "endpoint_limits": {"oscar/ask": {"per_minute": 5, "per_day": 50}},
            }
        })
        team = plans["team"]
        assert team.allows_surface(Surface.VSCODE)
        assert not team.allows_surface(Surface.MOBILE)
        assert team.limits_for("oscar/ask").per_minute == 5

    def test_plans_are_read_only(self):
        """Endpoint overrides cannot be changed once a plan is built."""
        source = {"oscar/ask": EndpointLimit(per_minute=5, per_day=50)}
        plan = TierPlan(
            name="team",
            requests_per_minute=20,
            monthly_token_limit=1000,
            requests_per_day=200,
            endpoint_limits=source,
        )

        with pytest.raises(TypeError):
            plan.endpoint_limits["chat"] = EndpointLimit(per_minute=1, per_day=1)
        source["chat"] = EndpointLimit(per_minute=1, per_day=1)

        assert "chat" not in plan.endpoint_limits
        assert plan.limits_for("chat").per_minute == 20
        with pytest.raises(TypeError):
            DEFAULT_TIER_PLANS["pro"].endpoint_limits["chat"] = EndpointLimit(per_minute=1, per_day=1)

    def test_unknown_key_rejected(self):
        """Unknown plan keys are rejected."""
        with pytest.raises(ValueError, match="Unknown keys"):
            parse_tier_plans({
                "team": {
                    "requests_per_minute": 20,
                    "monthly_token_limit": 1000,
                    "requests_per_day": 200,
                    "burst": 5,
                }
            })

    def test_missing_key_rejected(self):
        """Missing required keys are named in the error."""
        with pytest.raises(ValueError, match="requests_per_day"):
            parse_tier_plans({
                "team": {"requests_per_minute": 20, "monthly_token_limit": 1000}
            })

    @pytest.mark.parametrize("value", [0, -1, 1.5, "10", True])
    def test_non_positive_int_rejected(self, value):
        """Limits must be positive integers."""
        with pytest.raises(ValueError, match="positive integer"):
            parse_tier_plans({
                "team": {
                    "requests_per_minute": value,
                    "monthly_token_limit": 1000,
                    "requests_per_day": 200,
                }
            })

    def test_unknown_surface_rejected(self):
        """Unknown surfaces are rejected."""
        with pytest.raises(ValueError, match="allowed_surfaces"):
            parse_tier_plans({
                "team": {
                    "requests_per_minute": 20,
                    "monthly_token_limit": 1000,
                    "requests_per_day": 200,
                    "allowed_surfaces": ["desktop"],
                }
            })

    def test_empty_rejected(self):
        """At least one plan is required."""
        with pytest.raises(ValueError):
            parse_tier_plans({})


class TestRuntimeConfig:
    """Test env overrides and runtime setters."""

    def test_env_override(self, monkeypatch):
        """GOVERNOR_TIERS_JSON replaces the plans."""
        monkeypatch.setenv("GOVERNOR_TIERS_JSON", json.dumps({
            "solo": {
                "requests_per_minute": 1,
                "monthly_token_limit": 10,
                "requests_per_day": 2,
            }
        }))
        assert set(get_tier_plans()) == {"solo"}

    def test_set_and_reset(self):
        """Plans set at runtime can be reset to the defaults."""
        set_tier_plans({
            "solo": {
                "requests_per_minute": 1,
                "monthly_token_limit": 10,
                "requests_per_day": 2,
            }
        })
        assert set(get_tier_plans()) == {"solo"}

        reset_tier_plans()
        assert "pro" in get_tier_plans()

    def test_load_from_file(self, tmp_path):
        """Plans load from a JSON file."""
        path = tmp_path / "tiers.json"
        path.write_text(json.dumps({
            "solo": {
                "requests_per_minute": 1,
                "monthly_token_limit": 10,
                "requests_per_day": 2,
            }
        }))
        assert load_tier_plans(path)["solo"].requests_per_day == 2

    def test_load_missing_file(self, tmp_path):
        """A missing plan file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_tier_plans(tmp_path / "missing.json")

    def test_fail_mode_defaults_to_closed(self):
        """Fail mode defaults to closed."""
        assert get_fail_mode() == FailMode.CLOSED

    def test_fail_mode_from_env(self, monkeypatch):
        """Fail mode is read case-insensitively from the env."""
        monkeypatch.setenv("GOVERNOR_FAIL_MODE", "OPEN")
        assert get_fail_mode() == FailMode.OPEN

    def test_invalid_fail_mode(self, monkeypatch):
        """An unknown fail mode is rejected."""
        monkeypatch.setenv("GOVERNOR_FAIL_MODE", "maybe")
        with pytest.raises(ValueError):
            get_fail_mode()

    def test_db_path_and_timeout(self, monkeypatch):
        """Store path and timeout have defaults and env overrides."""
        assert get_db_path() == "governor.db"
        assert get_store_timeout() == 5.0

        monkeypatch.setenv("GOVERNOR_DB_PATH", "/tmp/other.db")
        monkeypatch.setenv("GOVERNOR_STORE_TIMEOUT", "0.5")
        assert get_db_path() == "/tmp/other.db"
        assert get_store_timeout() == 0.5
