"""
Background task queue for governor.

Deferred work (document indexing, notifications, ...) is enqueued here and
later claimed by a TaskExecutor. Claims are exclusive: the select-and-flip
from ``pending`` to ``running`` is a single store operation, so any number
of executors may poll the same queue.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from governor.models import QueueStats, Task, TaskPriority, TaskStatus
from governor.periods import ensure_aware, resolve_now
from governor.storage import TaskStore


logger = logging.getLogger("governor.queue")


DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 300.0


class TaskNotFoundError(KeyError):
    """Raised when a task id does not exist."""
    pass


class TaskStateError(RuntimeError):
    """Raised when a task is not in a state that allows the transition."""
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff between a failed attempt and the next claim."""
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def immediate(cls) -> "RetryPolicy":
        """No delay: a failed task is claimable again on the next poll."""
        return cls(base_delay_seconds=0.0, max_delay_seconds=0.0)

    def delay_for(self, retries: int) -> timedelta:
        """Delay after the ``retries``-th failure (1-based)."""
        if retries <= 0 or self.base_delay_seconds == 0:
            return timedelta(0)
        seconds = self.base_delay_seconds * (self.multiplier ** (retries - 1))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


class TaskQueue:
    """
    Persisted queue of work items with priorities and bounded retries.

    Example:
        ```python
        queue = TaskQueue(InMemoryStorage())
        task = queue.enqueue("index-document", {"documentId": "doc-1"}, "ws-1")

        claimed = queue.claim_next()
        try:
            ...
            queue.complete(claimed.id, claimed.claim_id)
        except Exception as exc:
            queue.fail(claimed.id, claimed.claim_id, str(exc))
        ```
    """

    def __init__(self, storage: TaskStore, retry_policy: Optional[RetryPolicy] = None):
        self.storage = storage
        self.retry_policy = retry_policy or RetryPolicy()

    def enqueue(
        self,
        type: str,
        payload: Any,
        workspace_id: str,
        priority: TaskPriority = TaskPriority.NORMAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        not_before: Optional[datetime] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        now: Optional[datetime] = None,
    ) -> Task:
        """
        Add a task in ``pending`` status.

        Args:
            type: Handler key the executor dispatches on.
            payload: Opaque JSON-serializable data for the handler.
            workspace_id: Owning workspace, used to scope stats.
            priority: low, normal or high.
            max_retries: Attempts allowed before the task fails for good.
            not_before: Earliest time the task may be claimed.
            timeout_seconds: Wall-clock budget for one handler run.

        Returns:
            The stored Task.

        Raises:
            ValueError: If the payload is not JSON-serializable or a limit is invalid.
        """
        if not type:
            raise ValueError("task type must be a non-empty string")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"payload must be JSON-serializable: {exc}") from exc

        task = Task(
            type=type,
            payload=payload,
            workspace_id=workspace_id,
            priority=TaskPriority(priority),
            max_retries=max_retries,
            created_at=resolve_now(now),
            not_before=ensure_aware(not_before) if not_before else None,
            timeout_seconds=float(timeout_seconds),
        )
        stored = self.storage.insert_task(task)
        logger.debug("Enqueued task %s (%s, %s)", stored.id, stored.type, stored.priority.value)
        return stored

    def claim_next(self, now: Optional[datetime] = None) -> Optional[Task]:
        """Claim the best eligible pending task, or None if there is none.

        Order: priority high to low, then oldest first.
        """
        task = self.storage.claim_next_task(resolve_now(now))
        if task is not None:
            logger.debug("Claimed task %s (%s)", task.id, task.type)
        return task

    def complete(
        self,
        task_id: str,
        claim_id: str,
        result: Any = None,
        now: Optional[datetime] = None,
    ) -> Task:
        """Mark a task completed, if ``claim_id`` still holds it."""
        task = self.storage.complete_task(task_id, claim_id, result, resolve_now(now))
        if task is None:
            self._raise_for(task_id, claim_id, "complete")
        return task

    def fail(
        self,
        task_id: str,
        claim_id: str,
        error: str,
        permanent: bool = False,
        now: Optional[datetime] = None,
        min_delay: Optional[timedelta] = None,
    ) -> Task:
        """
        Record a failed attempt.

        The retry counter is incremented. While it stays below ``max_retries``
        the task returns to ``pending`` after the policy's backoff delay (at
        least ``min_delay`` when given); otherwise it becomes terminally
        ``failed``. ``permanent`` skips the retry budget for errors that
        cannot succeed on a later attempt.

        Raises:
            TaskNotFoundError: If the task does not exist.
            TaskStateError: If the task is not running under ``claim_id``.
        """
        task = self.storage.fail_task(
            task_id,
            claim_id,
            error,
            resolve_now(now),
            self._retry_delay(min_delay),
            permanent=permanent,
        )
        if task is None:
            self._raise_for(task_id, claim_id, "fail")

        if task.status == TaskStatus.FAILED:
            logger.error(
                "Task %s (%s) failed permanently after %d attempt(s): %s",
                task.id, task.type, task.retries, error,
            )
        else:
            logger.warning(
                "Task %s (%s) failed attempt %d/%d, retry after %s: %s",
                task.id, task.type, task.retries, task.max_retries,
                task.not_before.isoformat() if task.not_before else "now", error,
            )
        return task

    def _retry_delay(self, min_delay: Optional[timedelta]):
        if min_delay is None:
            return self.retry_policy.delay_for
        return lambda retries: max(self.retry_policy.delay_for(retries), min_delay)

    def _raise_for(self, task_id: str, claim_id: str, action: str) -> None:
        existing = self.storage.get_task(task_id)
        if existing is None:
            raise TaskNotFoundError(task_id)
        if existing.status == TaskStatus.RUNNING:
            raise TaskStateError(
                f"cannot {action} task {task_id}: claim {claim_id} was superseded"
            )
        raise TaskStateError(f"cannot {action} task {task_id} in status {existing.status.value}")

    def get(self, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        workspace_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Task]:
        return self.storage.list_tasks(status=status, workspace_id=workspace_id, limit=limit)

    def stats(self, workspace_id: Optional[str] = None) -> QueueStats:
        """Task counts by status, optionally scoped to one workspace."""
        counts = self.storage.count_tasks(workspace_id)
        return QueueStats(
            pending=counts.get(TaskStatus.PENDING, 0),
            running=counts.get(TaskStatus.RUNNING, 0),
            completed=counts.get(TaskStatus.COMPLETED, 0),
            failed=counts.get(TaskStatus.FAILED, 0),
        )

    def recover_stale(
        self,
        timeout: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Fail running tasks whose executor never reported back.

        A task is stale once ``started_at`` plus its own ``timeout_seconds``
        (or ``timeout`` when given) has passed. Each recovery counts as a
        failed attempt, so a task that keeps hanging still exhausts its retries.
        The retry is held back for at least one more timeout budget so a
        handler that is merely slow does not overlap its own retry.

        Only the claim that was seen stale is failed: a task finished or
        reclaimed in the meantime is left alone.

        Returns:
            Number of tasks recovered.
        """
        now = resolve_now(now)
        recovered = 0
        for task in self.storage.list_tasks(status=TaskStatus.RUNNING):
            budget = timeout or timedelta(seconds=task.timeout_seconds)
            if task.started_at is None or task.started_at + budget > now:
                continue
            updated = self.storage.fail_task(
                task.id,
                task.claim_id,
                f"handler_error: task timed out after {budget.total_seconds():g}s",
                now,
                self._retry_delay(budget),
            )
            if updated is not None:
                recovered += 1
                logger.warning("Recovered stale task %s (%s)", task.id, task.type)
        return recovered
