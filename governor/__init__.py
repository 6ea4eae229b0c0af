"""
Governor - Quota governance and background tasks for AI-backed services.

Admission control (check before doing the work):
    from governor import AdmissionController, SQLiteStorage

    storage = SQLiteStorage("governor.db")
    controller = AdmissionController(storage)

    decision = controller.check("user_123", "203.0.113.7", "oscar/ask", tier="pro")
    print(decision.allowed)    # True
    print(decision.remaining)  # 29 -> requests left in the tightest window
    print(decision.reason)     # None, or DenialReason.MINUTE_LIMIT, ...

Usage recording (after the work succeeded):
    from governor import UsageRecorder, Surface

    recorder = UsageRecorder(storage)
    recorder.record("user_123", "203.0.113.7", "oscar/ask",
                    token_count=1850, surface=Surface.VSCODE)

Background tasks:
    from governor import TaskQueue, HandlerRegistry, TaskExecutor, TaskPriority

    queue = TaskQueue(storage)
    registry = HandlerRegistry()

    @registry.handler("index-document")
    def index_document(payload):
        return {"indexed": payload["documentId"]}

    queue.enqueue("index-document", {"documentId": "doc-1"}, "ws-1",
                  priority=TaskPriority.HIGH)
    TaskExecutor(queue, registry).process_batch(max_count=5)
"""

from governor.models import (
    Surface,
    DenialReason,
    TaskStatus,
    TaskPriority,
    EndpointLimit,
    TierPlan,
    RateEvent,
    DailyUsage,
    MonthlyTokenUsage,
    Task,
    Decision,
    TokenBudget,
    QueueStats,
)
from governor.config import (
    FailMode,
    DEFAULT_TIER_PLANS,
    get_tier_plans,
    set_tier_plans,
    reset_tier_plans,
    load_tier_plans,
    parse_tier_plans,
)
from governor.storage import StoreError, InMemoryStorage, SQLiteStorage
from governor.admission import AdmissionController
from governor.usage import UsageRecorder
from governor.queue import RetryPolicy, TaskQueue, TaskNotFoundError, TaskStateError
from governor.registry import HandlerRegistry, load_registry
from governor.executor import TaskContext, TaskExecutor, TaskTimeoutError, current_task_context
from governor.metrics import MetricsCollector


__version__ = "1.0.0"

__all__ = [
    "Surface",
    "DenialReason",
    "TaskStatus",
    "TaskPriority",
    "EndpointLimit",
    "TierPlan",
    "RateEvent",
    "DailyUsage",
    "MonthlyTokenUsage",
    "Task",
    "Decision",
    "TokenBudget",
    "QueueStats",
    "FailMode",
    "DEFAULT_TIER_PLANS",
    "get_tier_plans",
    "set_tier_plans",
    "reset_tier_plans",
    "load_tier_plans",
    "parse_tier_plans",
    "StoreError",
    "InMemoryStorage",
    "SQLiteStorage",
    "AdmissionController",
    "UsageRecorder",
    "RetryPolicy",
    "TaskQueue",
    "TaskNotFoundError",
    "TaskStateError",
    "HandlerRegistry",
    "load_registry",
    "TaskContext",
    "TaskExecutor",
    "TaskTimeoutError",
    "current_task_context",
    "MetricsCollector",
]
