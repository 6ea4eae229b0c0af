"""
Admission control for governor.

Decides, before any work is done, whether a request may proceed.

Check Order (first denial wins):
1. Surface eligibility - The tier must allow the client surface (no storage access)
2. Monthly token budget - The billing ceiling, reported before any throttle
3. Burst protection - Sliding one-minute window over recorded rate events
4. Legacy daily cap - Per-endpoint daily request count
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Mapping, Optional

from governor.config import DEFAULT_TIER, FailMode, get_fail_mode, get_tier_plans
from governor.metrics import MetricsCollector
from governor.models import Decision, DenialReason, Surface, TierPlan, TokenBudget
from governor.periods import (
    MINUTE_WINDOW,
    day_key,
    month_key,
    resolve_now,
    start_of_next_day,
    start_of_next_month,
    window_start,
)
from governor.storage import LedgerStore, StoreError


logger = logging.getLogger("governor.admission")


class AdmissionController:
    """
    Multi-window admission controller.

    ``check`` is a pure read: it never records usage. Call
    ``UsageRecorder.record`` once the gated work has succeeded.

    Example:
        ```python
        controller = AdmissionController(storage)

        decision = controller.check(
            identity="user_123",
            ip="203.0.113.7",
            endpoint="oscar/ask",
            tier="pro",
            surface=Surface.WEB,
        )
        if not decision.allowed:
            return reply_with(decision.reason, decision.reset_at)
        ```
    """

    def __init__(
        self,
        storage: LedgerStore,
        plans: Optional[Mapping[str, TierPlan]] = None,
        fail_mode: Optional[FailMode] = None,
        default_tier: str = DEFAULT_TIER,
        tz: tzinfo = timezone.utc,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the controller.

        Args:
            storage: Ledger backend.
            plans: Tier plans by name. Loaded from config if not provided.
            fail_mode: Behavior on store failure. Read from config if not provided.
            default_tier: Plan used for unknown tier names.
            tz: Time zone that defines calendar days and months.
            metrics: Optional metrics collector.
        """
        self.storage = storage
        self.plans = dict(plans) if plans is not None else dict(get_tier_plans())
        self.fail_mode = FailMode(fail_mode) if fail_mode is not None else get_fail_mode()
        self.tz = tz
        self.metrics = metrics

        if default_tier not in self.plans:
            raise ValueError(f"default tier '{default_tier}' is not a configured plan")
        self.default_tier = default_tier

    def resolve_plan(self, tier: Optional[str]) -> TierPlan:
        """Plan for ``tier``, falling back to the default tier."""
        plan = self.plans.get(tier) if tier else None
        if plan is None:
            if tier:
                logger.warning(
                    "Unknown tier '%s', using '%s' limits", tier, self.default_tier
                )
            plan = self.plans[self.default_tier]
        return plan

    def has_surface_access(self, tier: Optional[str], surface: Surface | str) -> bool:
        """Whether ``tier`` may be used from ``surface``."""
        try:
            return self.resolve_plan(tier).allows_surface(Surface(surface))
        except ValueError:
            return False

    def check_token_limit(
        self,
        identity: str,
        tier: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenBudget:
        """
        Monthly token budget summed across every surface.

        Raises:
            StoreError: If the ledger cannot be read.
        """
        now = resolve_now(now)
        limit = self.resolve_plan(tier).monthly_token_limit
        used = self._tokens_used(identity, now)
        reset_at = start_of_next_month(now, self.tz).astimezone(timezone.utc)

        if used >= limit:
            return TokenBudget(
                allowed=False,
                tokens_used=used,
                token_limit=limit,
                remaining=0,
                percentage=100,
                reset_at=reset_at,
            )

        return TokenBudget(
            allowed=True,
            tokens_used=used,
            token_limit=limit,
            remaining=limit - used,
            percentage=round(used / limit * 100),
            reset_at=reset_at,
        )

    def check(
        self,
        identity: str,
        ip: str,
        endpoint: str,
        tier: Optional[str] = None,
        surface: Surface | str = Surface.WEB,
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide whether a request may proceed.

        Args:
            identity: Authenticated user id.
            ip: Client IP; the burst window counts events by identity OR ip.
            endpoint: Endpoint key used for per-endpoint limits.
            tier: Tier name; unknown names use the default tier.
            surface: Client surface the request comes from.
            now: Evaluation time, defaults to the current time.

        Returns:
            Decision with ``remaining`` requests and ``reset_at``. Denials carry
            a DenialReason; they are never raised.

        Raises:
            StoreError: Only when the fail mode is RAISE.
        """
        now = resolve_now(now)
        plan = self.resolve_plan(tier)

        try:
            surface = Surface(surface)
            permitted = plan.allows_surface(surface)
        except ValueError:
            permitted = False

        if not permitted:
            decision = Decision(
                allowed=False,
                remaining=0,
                reset_at=now,
                reason=DenialReason.SURFACE_NOT_PERMITTED,
            )
        else:
            try:
                decision = self._check_budgets(identity, ip, endpoint, plan, now)
            except StoreError:
                if self.fail_mode == FailMode.RAISE:
                    raise
                logger.exception(
                    "Ledger unavailable checking %s on %s (fail mode %s)",
                    identity, endpoint, self.fail_mode.value,
                )
                decision = self._on_store_error(now)

        if not decision.allowed:
            logger.info(
                "Denied %s on %s (tier %s): %s until %s",
                identity, endpoint, plan.name, decision.reason.value if decision.reason else None,
                decision.reset_at.isoformat(),
            )
        if self.metrics:
            self.metrics.record_decision(
                identity=identity,
                endpoint=endpoint,
                tier=plan.name,
                allowed=decision.allowed,
                reason=decision.reason.value if decision.reason else None,
            )
        return decision

    def _check_budgets(
        self,
        identity: str,
        ip: str,
        endpoint: str,
        plan: TierPlan,
        now: datetime,
    ) -> Decision:
        # Billing ceiling first, so a blocked paying user sees the real reason
        if self._tokens_used(identity, now) >= plan.monthly_token_limit:
            return Decision(
                allowed=False,
                remaining=0,
                reset_at=start_of_next_month(now, self.tz).astimezone(timezone.utc),
                reason=DenialReason.TOKEN_LIMIT,
            )

        limits = plan.limits_for(endpoint)

        since = window_start(now)
        recent = self.storage.count_rate_events(identity, ip, endpoint, since)
        if recent >= limits.per_minute:
            oldest = self.storage.oldest_rate_event(identity, ip, endpoint, since)
            return Decision(
                allowed=False,
                remaining=0,
                reset_at=(oldest or now) + MINUTE_WINDOW,
                reason=DenialReason.MINUTE_LIMIT,
            )

        today = self.storage.get_daily_usage(identity, endpoint, day_key(now, self.tz))
        daily_count = today.request_count if today else 0
        if daily_count >= limits.per_day:
            return Decision(
                allowed=False,
                remaining=0,
                reset_at=start_of_next_day(now, self.tz).astimezone(timezone.utc),
                reason=DenialReason.DAILY_LIMIT,
            )

        return Decision(
            allowed=True,
            remaining=min(limits.per_minute - recent, limits.per_day - daily_count) - 1,
            reset_at=now + MINUTE_WINDOW,
        )

    def _tokens_used(self, identity: str, now: datetime) -> int:
        rows = self.storage.monthly_token_usage(identity, month_key(now, self.tz))
        return sum(row.tokens_used for row in rows)

    def _on_store_error(self, now: datetime) -> Decision:
        if self.fail_mode == FailMode.OPEN:
            return Decision(allowed=True, remaining=0, reset_at=now + MINUTE_WINDOW)
        return Decision(
            allowed=False,
            remaining=0,
            reset_at=now + MINUTE_WINDOW,
            reason=DenialReason.STORE_UNAVAILABLE,
        )
