"""
Usage recording for governor.

Applies the cost of a completed request to the three ledgers:
- Rate events (sliding-window burst protection)
- Daily usage (legacy per-endpoint aggregate)
- Monthly token usage by surface (the billing ledger)
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from governor.metrics import MetricsCollector
from governor.models import RateEvent, Surface
from governor.periods import (
    RATE_EVENT_RETENTION,
    day_key,
    month_key,
    resolve_now,
    start_of_month,
)
from governor.storage import LedgerStore


logger = logging.getLogger("governor.usage")


class UsageRecorder:
    """
    Records completed requests against the quota ledgers.

    Example:
        ```python
        recorder = UsageRecorder(storage)

        # After the gated work succeeded
        recorder.record(
            identity="user_123",
            ip="203.0.113.7",
            endpoint="oscar/ask",
            token_count=1850,
            surface=Surface.VSCODE,
        )
        ```
    """

    def __init__(
        self,
        storage: LedgerStore,
        tz: tzinfo = timezone.utc,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.storage = storage
        self.tz = tz
        self.metrics = metrics

    def record(
        self,
        identity: str,
        ip: str,
        endpoint: str,
        token_count: int = 0,
        surface: Surface | str = Surface.WEB,
        now: Optional[datetime] = None,
    ) -> RateEvent:
        """
        Record a request that completed successfully.

        All three ledger writes are applied in one store transaction, so a
        failure leaves none of them behind. Not idempotent: calling twice
        for the same request counts it twice.

        Args:
            identity: User the request is billed to.
            ip: Client IP.
            endpoint: Endpoint key.
            token_count: Model tokens consumed; 0 for requests without model cost.
            surface: Client surface, attributed in the monthly ledger.
            now: Time of the request, defaults to the current time.

        Returns:
            The recorded RateEvent.

        Raises:
            ValueError: If token_count is negative or the surface is unknown.
            StoreError: If the ledger write fails.
        """
        if isinstance(token_count, bool) or not isinstance(token_count, int):
            raise ValueError(f"token_count must be an integer, got {type(token_count).__name__}")
        if token_count < 0:
            raise ValueError("token_count must be >= 0")
        surface = Surface(surface)
        now = resolve_now(now)

        event = RateEvent(identity=identity, ip=ip, endpoint=endpoint, timestamp=now)
        self.storage.apply_usage(
            event,
            day=day_key(now, self.tz),
            month=month_key(now, self.tz),
            surface=surface,
            token_count=token_count,
        )
        logger.debug(
            "Recorded %s on %s via %s: %d tokens", identity, endpoint, surface.value, token_count
        )

        if self.metrics:
            self.metrics.record_usage(
                identity=identity,
                endpoint=endpoint,
                surface=surface.value,
                token_count=token_count,
            )
        return event

    def token_usage_breakdown(self, identity: str, now: Optional[datetime] = None) -> dict:
        """
        Current month's tokens by surface.

        Returns:
            Dict: {"total": int, "breakdown": {"web": int, ...}, "month": "YYYY-MM"}
        """
        month = month_key(resolve_now(now), self.tz)
        breakdown = {surface.value: 0 for surface in Surface}
        for row in self.storage.monthly_token_usage(identity, month):
            breakdown[row.surface.value] += row.tokens_used

        return {
            "total": sum(breakdown.values()),
            "breakdown": breakdown,
            "month": month,
        }

    def usage_stats(self, identity: str, now: Optional[datetime] = None) -> dict:
        """
        Legacy per-endpoint usage for today and the current month.

        Returns:
            Dict: {"today": {endpoint: {"requests", "tokens"}}, "this_month": {...}}
        """
        now = resolve_now(now)
        today = day_key(now, self.tz)
        month = month_key(now, self.tz)
        month_start = day_key(start_of_month(now, self.tz), self.tz)

        today_usage: dict[str, dict[str, int]] = {}
        month_usage: dict[str, dict[str, int]] = defaultdict(lambda: {"requests": 0, "tokens": 0})

        for row in self.storage.list_daily_usage(identity, since_day=month_start):
            if not row.day.startswith(month):
                continue
            if row.day == today:
                today_usage[row.endpoint] = {
                    "requests": row.request_count,
                    "tokens": row.token_count,
                }
            month_usage[row.endpoint]["requests"] += row.request_count
            month_usage[row.endpoint]["tokens"] += row.token_count

        return {"today": today_usage, "this_month": dict(month_usage)}

    def prune_rate_events(
        self,
        now: Optional[datetime] = None,
        retention: timedelta = RATE_EVENT_RETENTION,
    ) -> int:
        """
        Delete rate events older than ``retention`` (24h by default).

        Run periodically; the sliding window only ever reads the last minute.

        Returns:
            Number of events deleted.
        """
        cutoff = resolve_now(now) - retention
        removed = self.storage.prune_rate_events(cutoff)
        if removed:
            logger.info("Pruned %d rate events older than %s", removed, cutoff.isoformat())
        return removed
