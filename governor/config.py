"""Global configuration for governor."""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping

from governor.models import EndpointLimit, Surface, TierPlan


class FailMode(str, Enum):
    """What admission does when the backing store is unreachable."""
    CLOSED = "closed"  # Deny with store_unavailable
    OPEN = "open"  # Allow with zero remaining
    RAISE = "raise"  # Propagate the StoreError to the caller


_ALL_SURFACES = frozenset({Surface.WEB, Surface.MOBILE, Surface.VSCODE})

DEFAULT_TIER_PLANS: Dict[str, TierPlan] = {
    "lite": TierPlan(
        name="lite",
        requests_per_minute=15,
        monthly_token_limit=500_000,
        requests_per_day=100,
        allowed_surfaces=frozenset({Surface.WEB, Surface.MOBILE}),
        endpoint_limits={
            "oscar/ask": EndpointLimit(per_minute=10, per_day=50),
            "oscar/refine": EndpointLimit(per_minute=15, per_day=100),
            "knowledge/search": EndpointLimit(per_minute=30, per_day=500),
        },
    ),
    "pro": TierPlan(
        name="pro",
        requests_per_minute=30,
        monthly_token_limit=2_500_000,
        requests_per_day=1000,
        allowed_surfaces=_ALL_SURFACES,
        endpoint_limits={
            "oscar/ask": EndpointLimit(per_minute=15, per_day=500),
            "oscar/refine": EndpointLimit(per_minute=30, per_day=1000),
            "knowledge/search": EndpointLimit(per_minute=60, per_day=2000),
        },
    ),
    "master": TierPlan(
        name="master",
        requests_per_minute=60,
        monthly_token_limit=12_500_000,
        requests_per_day=5000,
        allowed_surfaces=_ALL_SURFACES,
        endpoint_limits={
            "oscar/ask": EndpointLimit(per_minute=30, per_day=2000),
            "oscar/refine": EndpointLimit(per_minute=60, per_day=5000),
            "knowledge/search": EndpointLimit(per_minute=120, per_day=10000),
        },
    ),
    "unlimited": TierPlan(
        name="unlimited",
        requests_per_minute=100,
        monthly_token_limit=100_000_000,
        requests_per_day=10000,
        allowed_surfaces=_ALL_SURFACES,
    ),
}

DEFAULT_TIER = "pro"
DEFAULT_DB_PATH = "governor.db"
DEFAULT_STORE_TIMEOUT = 5.0

_tier_plans: Dict[str, TierPlan] = dict(DEFAULT_TIER_PLANS)

_PLAN_KEYS = {
    "requests_per_minute",
    "monthly_token_limit",
    "requests_per_day",
    "allowed_surfaces",
    "endpoint_limits",
}


def _parse_json_env(var_name: str) -> Dict[str, Any] | None:
    value = os.getenv(var_name)
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _parse_plan(name: str, data: Mapping[str, Any]) -> TierPlan:
    if not isinstance(data, Mapping):
        raise ValueError(f"Tier '{name}' must be a dictionary")

    unknown = set(data.keys()) - _PLAN_KEYS
    if unknown:
        raise ValueError(f"Unknown keys in tier '{name}': {sorted(unknown)}")

    for key in ("requests_per_minute", "monthly_token_limit", "requests_per_day"):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in tier '{name}'")

    surfaces_raw = data.get("allowed_surfaces", [Surface.WEB.value, Surface.MOBILE.value])
    try:
        surfaces = frozenset(Surface(s) for s in surfaces_raw)
    except ValueError:
        valid = [s.value for s in Surface]
        raise ValueError(f"'allowed_surfaces' in tier '{name}' must be drawn from: {valid}")

    endpoint_limits = {}
    for endpoint, limits in (data.get("endpoint_limits") or {}).items():
        if not isinstance(limits, Mapping) or set(limits.keys()) != {"per_minute", "per_day"}:
            raise ValueError(
                f"endpoint_limits.{endpoint} in tier '{name}' needs exactly "
                f"'per_minute' and 'per_day'"
            )
        endpoint_limits[endpoint] = EndpointLimit(
            per_minute=_positive_int(limits["per_minute"], f"{name}.{endpoint}.per_minute"),
            per_day=_positive_int(limits["per_day"], f"{name}.{endpoint}.per_day"),
        )

    return TierPlan(
        name=name,
        requests_per_minute=_positive_int(data["requests_per_minute"], f"{name}.requests_per_minute"),
        monthly_token_limit=_positive_int(data["monthly_token_limit"], f"{name}.monthly_token_limit"),
        requests_per_day=_positive_int(data["requests_per_day"], f"{name}.requests_per_day"),
        allowed_surfaces=surfaces,
        endpoint_limits=endpoint_limits,
    )


def parse_tier_plans(raw: Mapping[str, Any]) -> Dict[str, TierPlan]:
    """Build validated tier plans from plain dicts (e.g. parsed JSON).

    Raises:
        ValueError: If any tier is malformed.
    """
    if not isinstance(raw, Mapping) or not raw:
        raise ValueError("tier plans must be a non-empty dict")
    return {name: _parse_plan(name, data) for name, data in raw.items()}


def load_tier_plans(path: str | Path) -> Dict[str, TierPlan]:
    """Load tier plans from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tier config file not found: {path}")
    with open(config_path, "r", encoding="utf-8") as f:
        return parse_tier_plans(json.load(f))


def get_tier_plans() -> Dict[str, TierPlan]:
    """Return tier plans, with optional env override."""
    parsed = _parse_json_env("GOVERNOR_TIERS_JSON")
    if parsed:
        return parse_tier_plans(parsed)
    return _tier_plans


def set_tier_plans(plans: Mapping[str, TierPlan | Mapping[str, Any]]) -> None:
    """Set tier plans at runtime."""
    if not isinstance(plans, Mapping) or not plans:
        raise ValueError("plans must be a non-empty dict")
    resolved: Dict[str, TierPlan] = {}
    for name, plan in plans.items():
        resolved[name] = plan if isinstance(plan, TierPlan) else _parse_plan(name, plan)
    global _tier_plans
    _tier_plans = resolved


def reset_tier_plans() -> None:
    """Restore the built-in tier plans."""
    global _tier_plans
    _tier_plans = dict(DEFAULT_TIER_PLANS)


def get_fail_mode() -> FailMode:
    value = os.getenv("GOVERNOR_FAIL_MODE")
    if not value:
        return FailMode.CLOSED
    try:
        return FailMode(value.lower())
    except ValueError:
        valid = [m.value for m in FailMode]
        raise ValueError(f"GOVERNOR_FAIL_MODE must be one of: {valid}")


def get_db_path() -> str:
    return os.getenv("GOVERNOR_DB_PATH", DEFAULT_DB_PATH)


def get_store_timeout() -> float:
    value = os.getenv("GOVERNOR_STORE_TIMEOUT")
    if not value:
        return DEFAULT_STORE_TIMEOUT
    timeout = float(value)
    if timeout <= 0:
        raise ValueError("GOVERNOR_STORE_TIMEOUT must be > 0")
    return timeout
