"""
Executor for governor.

Claims tasks from the queue and dispatches them to registered handlers.
It is designed to be driven by an external periodic trigger (cron, a
scheduled job) through ``process_batch``; ``start`` runs the same loop on
background threads for long-lived processes.
"""

import asyncio
import inspect
import json
import logging
import threading
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from governor.metrics import MetricsCollector
from governor.models import Task, TaskStatus
from governor.queue import TaskQueue, TaskStateError
from governor.registry import HandlerRegistry
from governor.storage import StoreError


logger = logging.getLogger("governor.executor")


HANDLER_ERROR = "handler_error"
UNREGISTERED_HANDLER = "unregistered_handler"


class TaskTimeoutError(TimeoutError):
    """Raised when a handler exceeds its task's timeout."""
    pass


@dataclass
class TaskContext:
    """Per-run context available to handlers via current_task_context()."""
    task_id: str
    task_type: str
    workspace_id: str
    attempt: int
    progress: float = 0.0
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def log(self, message: str) -> None:
        logger.info("[Task %s] %s", self.task_id, message)

    def update_progress(self, progress: float, message: Optional[str] = None) -> None:
        self.progress = max(0.0, min(100.0, float(progress)))
        if message:
            logger.info("[Task %s] Progress: %.0f%% - %s", self.task_id, self.progress, message)
        else:
            logger.info("[Task %s] Progress: %.0f%%", self.task_id, self.progress)

    @property
    def cancelled(self) -> bool:
        """True once the executor has given up on this run (e.g. timeout)."""
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


_current_context: ContextVar[Optional[TaskContext]] = ContextVar(
    "governor_task_context", default=None
)


def current_task_context() -> Optional[TaskContext]:
    """Context of the task the calling handler is running, if any."""
    return _current_context.get()


async def _resolve(awaitable):
    return await awaitable


def _storable(result: Any) -> Any:
    try:
        json.dumps(result)
    except (TypeError, ValueError):
        logger.warning("Handler result of type %s is not JSON-serializable, storing repr",
                       type(result).__name__)
        return repr(result)
    return result


class TaskExecutor:
    """
    Dispatches claimed tasks to handlers and reconciles their outcome.

    Safe to run from any number of threads or processes at once: the only
    coordination point is the queue's atomic claim.

    Example:
        ```python
        registry = HandlerRegistry()
        registry.register("index-document", index_document)

        executor = TaskExecutor(queue, registry)
        processed = executor.process_batch(max_count=5)
        ```
    """

    def __init__(
        self,
        queue: TaskQueue,
        registry: HandlerRegistry,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.metrics = metrics

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._abandoned: dict[str, threading.Thread] = {}
        self._abandoned_lock = threading.Lock()

    def process_batch(self, max_count: int = 5, now: Optional[datetime] = None) -> int:
        """
        Claim and process up to ``max_count`` tasks.

        Stops early when the queue has nothing claimable.

        Returns:
            Number of tasks claimed and processed (0 if the queue was empty).
        """
        if max_count < 0:
            raise ValueError("max_count must be >= 0")

        processed = 0
        for _ in range(max_count):
            task = self.queue.claim_next(now=now)
            if task is None:
                break
            self.execute(task, now=now)
            processed += 1

        if processed:
            logger.info("Processed %d task(s)", processed)
        return processed

    def execute(self, task: Task, now: Optional[datetime] = None) -> Task:
        """
        Run one claimed task and record its outcome.

        An unregistered type fails permanently; a handler exception or timeout
        is a retryable failure; a normal return completes the task. Outcomes
        are written against the task's claim, so a claim that was recovered
        or taken over in the meantime drops its result.

        Returns:
            The task after its outcome was recorded.
        """
        handler = self.registry.get(task.type)
        if handler is None:
            error = f"{UNREGISTERED_HANDLER}: no handler registered for task type '{task.type}'"
            return self._fail(task, error, None, now, permanent=True)

        timeout = timedelta(seconds=task.timeout_seconds)
        if self._previous_attempt_running(task):
            error = f"{HANDLER_ERROR}: previous attempt still running after {task.timeout_seconds:g}s"
            return self._fail(task, error, None, now, min_delay=timeout)

        context = TaskContext(
            task_id=task.id,
            task_type=task.type,
            workspace_id=task.workspace_id,
            attempt=task.retries + 1,
        )

        start = time.perf_counter()
        try:
            result = self._invoke(handler, task, context)
        except TaskTimeoutError as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            return self._fail(task, f"{HANDLER_ERROR}: {exc}", duration_ms, now, min_delay=timeout)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            error = f"{HANDLER_ERROR}: {str(exc) or type(exc).__name__}"
            return self._fail(task, error, duration_ms, now)

        duration_ms = (time.perf_counter() - start) * 1000
        try:
            updated = self.queue.complete(task.id, task.claim_id, _storable(result), now=now)
        except TaskStateError:
            logger.warning("Task %s changed state while running, dropping result", task.id)
            return self.queue.get(task.id)
        logger.info("[Task %s] Completed successfully in %.0fms", task.id, duration_ms)
        self._record(updated, "completed", duration_ms, None)
        return updated

    def _fail(
        self,
        task: Task,
        error: str,
        duration_ms: Optional[float],
        now: Optional[datetime],
        permanent: bool = False,
        min_delay: Optional[timedelta] = None,
    ) -> Task:
        try:
            updated = self.queue.fail(
                task.id, task.claim_id, error, permanent=permanent, now=now, min_delay=min_delay
            )
        except TaskStateError:
            logger.warning("Task %s changed state while running, dropping failure", task.id)
            return self.queue.get(task.id)
        outcome = "failed" if updated.status == TaskStatus.FAILED else "retried"
        self._record(updated, outcome, duration_ms, error)
        return updated

    def _previous_attempt_running(self, task: Task) -> bool:
        """Wait up to one timeout for a timed-out run of this task to finish.

        Only runs abandoned by this executor are visible here.
        """
        with self._abandoned_lock:
            previous = self._abandoned.get(task.id)
        if previous is None:
            return False
        previous.join(task.timeout_seconds)
        if previous.is_alive():
            logger.warning("[Task %s] Previous attempt is still running", task.id)
            return True
        with self._abandoned_lock:
            if self._abandoned.get(task.id) is previous:
                del self._abandoned[task.id]
        return False

    def _invoke(self, handler, task: Task, context: TaskContext) -> Any:
        """Run the handler on a daemon thread bounded by the task timeout."""
        outcome: dict[str, Any] = {}

        def target():
            token = _current_context.set(context)
            try:
                result = handler(task.payload)
                if inspect.isawaitable(result):
                    result = asyncio.run(_resolve(result))
                outcome["result"] = result
            except Exception as exc:
                outcome["error"] = exc
            finally:
                _current_context.reset(token)

        worker = threading.Thread(target=target, name=f"governor-task-{task.id}", daemon=True)
        worker.start()
        worker.join(task.timeout_seconds)

        if worker.is_alive():
            # The thread cannot be killed; keep it so a retry waits for it.
            context.cancel()
            with self._abandoned_lock:
                self._abandoned = {
                    task_id: thread for task_id, thread in self._abandoned.items()
                    if thread.is_alive()
                }
                self._abandoned[task.id] = worker
            raise TaskTimeoutError(f"task timed out after {task.timeout_seconds:g}s")
        if "error" in outcome:
            raise outcome["error"]
        if "result" not in outcome:
            raise RuntimeError("handler exited without returning")
        return outcome["result"]

    def _record(self, task: Task, outcome: str, duration_ms: Optional[float], error: Optional[str]):
        if self.metrics:
            self.metrics.record_task(
                task_id=task.id,
                task_type=task.type,
                outcome=outcome,
                duration_ms=duration_ms,
                error=error,
            )

    # Continuous processing

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, poll_interval: float = 5.0, batch_size: int = 5, workers: int = 1) -> None:
        """
        Poll the queue on ``workers`` background threads until stop().

        Each worker processes batches back to back while work is available
        and sleeps ``poll_interval`` seconds when the queue is empty.
        """
        if self.running:
            raise RuntimeError("executor is already running")
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._poll,
                args=(poll_interval, batch_size),
                name=f"governor-executor-{i}",
                daemon=True,
            )
            for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %d executor worker(s), polling every %gs", workers, poll_interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal workers to stop and wait for their current batch."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        logger.info("Executor stopped")

    def _poll(self, poll_interval: float, batch_size: int) -> None:
        while not self._stop_event.is_set():
            try:
                processed = self.process_batch(batch_size)
            except StoreError:
                logger.exception("Task poll failed")
                processed = 0
            if processed == 0:
                self._stop_event.wait(poll_interval)
