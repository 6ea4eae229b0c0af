"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional
import uuid


class Surface(str, Enum):
    """Client channel a request originates from."""
    WEB = "web"
    MOBILE = "mobile"
    VSCODE = "vscode"  # IDE extension


class DenialReason(str, Enum):
    """Why the admission controller refused a request.

    The reason code is part of the client contract: each one maps to a
    distinct user-facing message ("upgrade your plan" vs "slow down").
    """
    SURFACE_NOT_PERMITTED = "surface_not_permitted"
    TOKEN_LIMIT = "token_limit"
    MINUTE_LIMIT = "minute_limit"
    DAILY_LIMIT = "daily_limit"
    STORE_UNAVAILABLE = "store_unavailable"


class TaskStatus(str, Enum):
    """Lifecycle states of a background task."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    """Task priorities, claimed high to low."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "TaskPriority":
        for priority, value in _PRIORITY_RANK.items():
            if value == rank:
                return priority
        raise ValueError(f"unknown priority rank: {rank}")


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
}


@dataclass(frozen=True)
class EndpointLimit:
    """Per-endpoint request caps."""
    per_minute: int
    per_day: int


@dataclass(frozen=True)
class TierPlan:
    """Budgets and surface eligibility bundled into a named plan.

    Loaded once at startup and never mutated.
    """
    name: str
    requests_per_minute: int
    monthly_token_limit: int
    requests_per_day: int  # Legacy daily cap
    allowed_surfaces: frozenset[Surface] = frozenset({Surface.WEB, Surface.MOBILE})
    endpoint_limits: Mapping[str, EndpointLimit] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "allowed_surfaces", frozenset(self.allowed_surfaces))
        object.__setattr__(self, "endpoint_limits", MappingProxyType(dict(self.endpoint_limits)))

    def limits_for(self, endpoint: str) -> EndpointLimit:
        """Endpoint override if one exists, else the tier defaults."""
        override = self.endpoint_limits.get(endpoint)
        if override is not None:
            return override
        return EndpointLimit(
            per_minute=self.requests_per_minute,
            per_day=self.requests_per_day,
        )

    def allows_surface(self, surface: Surface) -> bool:
        return Surface(surface) in self.allowed_surfaces


@dataclass
class RateEvent:
    """One recorded request attempt, used for the sliding one-minute count."""
    identity: str
    ip: str
    endpoint: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class DailyUsage:
    """Legacy per-endpoint daily aggregate."""
    identity: str
    endpoint: str
    day: str  # YYYY-MM-DD
    request_count: int = 0
    token_count: int = 0


@dataclass
class MonthlyTokenUsage:
    """Billing ledger row: tokens used per identity, month and surface."""
    identity: str
    month: str  # YYYY-MM
    surface: Surface
    tokens_used: int = 0


@dataclass
class Task:
    """A unit of deferred work."""
    type: str
    payload: Any
    workspace_id: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    retries: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    not_before: Optional[datetime] = None  # Not claimable before this instant
    timeout_seconds: float = 300.0
    result: Any = None
    claim_id: Optional[str] = None  # Token of the claim currently holding the task
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "workspace_id": self.workspace_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "last_error": self.last_error,
            "not_before": _iso(self.not_before),
            "timeout_seconds": self.timeout_seconds,
            "result": self.result,
            "claim_id": self.claim_id,
        }


@dataclass
class Decision:
    """Result of an admission check."""
    allowed: bool
    remaining: int
    reset_at: datetime
    reason: Optional[DenialReason] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
            "reason": self.reason.value if self.reason else None,
        }


@dataclass
class TokenBudget:
    """Monthly token budget status for an identity."""
    allowed: bool
    tokens_used: int
    token_limit: int
    remaining: int
    percentage: int
    reset_at: datetime


@dataclass
class QueueStats:
    """Task counts by status."""
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed

    def to_dict(self) -> dict:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
