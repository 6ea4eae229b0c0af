"""Storage backends for the quota ledgers and the task queue."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Protocol
import json
import sqlite3
import threading
import uuid

from governor.models import (
    DailyUsage,
    MonthlyTokenUsage,
    RateEvent,
    Surface,
    Task,
    TaskPriority,
    TaskStatus,
)
from governor.periods import ensure_aware


RetryDelay = Callable[[int], timedelta]


class StoreError(Exception):
    """Raised when the backing store cannot complete an operation."""
    pass


class LedgerStore(Protocol):
    """Persistence for rate events and the daily/monthly usage ledgers."""

    def count_rate_events(self, identity: str, ip: str, endpoint: str, since: datetime) -> int:
        ...

    def oldest_rate_event(
        self, identity: str, ip: str, endpoint: str, since: datetime
    ) -> Optional[datetime]:
        ...

    def get_daily_usage(self, identity: str, endpoint: str, day: str) -> Optional[DailyUsage]:
        ...

    def list_daily_usage(self, identity: str, since_day: str) -> List[DailyUsage]:
        ...

    def monthly_token_usage(self, identity: str, month: str) -> List[MonthlyTokenUsage]:
        ...

    def apply_usage(
        self, event: RateEvent, day: str, month: str, surface: Surface, token_count: int
    ) -> None:
        ...

    def prune_rate_events(self, before: datetime) -> int:
        ...


class TaskStore(Protocol):
    """Persistence for background tasks.

    Every claim stamps a fresh ``claim_id``. Outcome writes (complete, fail)
    take effect only while that claim still holds the task in ``running``
    and return None otherwise.
    """

    def insert_task(self, task: Task) -> Task:
        ...

    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    def claim_next_task(self, now: datetime) -> Optional[Task]:
        ...

    def complete_task(
        self, task_id: str, claim_id: str, result, completed_at: datetime
    ) -> Optional[Task]:
        ...

    def fail_task(
        self,
        task_id: str,
        claim_id: str,
        error: str,
        now: datetime,
        retry_delay: RetryDelay,
        permanent: bool = False,
    ) -> Optional[Task]:
        ...

    def count_tasks(self, workspace_id: Optional[str] = None) -> Dict[TaskStatus, int]:
        ...

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        workspace_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        ...


def _apply_failure(
    task: Task, error: str, now: datetime, retry_delay: RetryDelay, permanent: bool
) -> Task:
    """Compute the post-failure state of a task."""
    retries = min(task.retries + 1, task.max_retries) if permanent else task.retries + 1
    if not permanent and retries < task.max_retries:
        return replace(
            task,
            status=TaskStatus.PENDING,
            retries=retries,
            last_error=error,
            started_at=None,
            not_before=now + retry_delay(retries),
            claim_id=None,
        )
    return replace(
        task,
        status=TaskStatus.FAILED,
        retries=retries,
        last_error=error,
        completed_at=now,
    )


class InMemoryStorage:
    """In-memory storage backend (default).

    A single lock makes every operation atomic, which is what the
    conditional statements of a relational store give across processes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._rate_events: List[RateEvent] = []
        self._daily: Dict[tuple, DailyUsage] = {}
        self._monthly: Dict[tuple, MonthlyTokenUsage] = {}
        self._tasks: Dict[str, Task] = {}

    # Ledgers

    def _matching_events(self, identity, ip, endpoint, since) -> List[RateEvent]:
        return [
            e for e in self._rate_events
            if (e.identity == identity or e.ip == ip)
            and e.endpoint == endpoint
            and e.timestamp >= since
        ]

    def count_rate_events(self, identity: str, ip: str, endpoint: str, since: datetime) -> int:
        with self._lock:
            return len(self._matching_events(identity, ip, endpoint, since))

    def oldest_rate_event(
        self, identity: str, ip: str, endpoint: str, since: datetime
    ) -> Optional[datetime]:
        with self._lock:
            events = self._matching_events(identity, ip, endpoint, since)
            return min((e.timestamp for e in events), default=None)

    def get_daily_usage(self, identity: str, endpoint: str, day: str) -> Optional[DailyUsage]:
        with self._lock:
            row = self._daily.get((identity, endpoint, day))
            return replace(row) if row else None

    def list_daily_usage(self, identity: str, since_day: str) -> List[DailyUsage]:
        with self._lock:
            return [
                replace(row) for row in self._daily.values()
                if row.identity == identity and row.day >= since_day
            ]

    def monthly_token_usage(self, identity: str, month: str) -> List[MonthlyTokenUsage]:
        with self._lock:
            return [
                replace(row) for row in self._monthly.values()
                if row.identity == identity and row.month == month
            ]

    def apply_usage(
        self, event: RateEvent, day: str, month: str, surface: Surface, token_count: int
    ) -> None:
        with self._lock:
            self._rate_events.append(replace(event))

            daily = self._daily.setdefault(
                (event.identity, event.endpoint, day),
                DailyUsage(identity=event.identity, endpoint=event.endpoint, day=day),
            )
            daily.request_count += 1
            daily.token_count += token_count

            if token_count > 0:
                monthly = self._monthly.setdefault(
                    (event.identity, month, Surface(surface)),
                    MonthlyTokenUsage(identity=event.identity, month=month, surface=Surface(surface)),
                )
                monthly.tokens_used += token_count

    def prune_rate_events(self, before: datetime) -> int:
        with self._lock:
            kept = [e for e in self._rate_events if e.timestamp >= before]
            removed = len(self._rate_events) - len(kept)
            self._rate_events = kept
            return removed

    # Tasks

    def insert_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = replace(task)
            return replace(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task else None

    def claim_next_task(self, now: datetime) -> Optional[Task]:
        with self._lock:
            # dict order is insertion order, which breaks created_at ties FIFO
            eligible = [
                t for t in self._tasks.values()
                if t.status == TaskStatus.PENDING
                and (t.not_before is None or t.not_before <= now)
            ]
            if not eligible:
                return None
            best = min(eligible, key=lambda t: (-t.priority.rank, t.created_at))
            best.status = TaskStatus.RUNNING
            best.started_at = now
            best.claim_id = _new_claim_id()
            return replace(best)

    def complete_task(
        self, task_id: str, claim_id: str, result, completed_at: datetime
    ) -> Optional[Task]:
        with self._lock:
            task = self._held(task_id, claim_id)
            if task is None:
                return None
            task.status = TaskStatus.COMPLETED
            task.completed_at = completed_at
            task.result = result
            return replace(task)

    def fail_task(
        self,
        task_id: str,
        claim_id: str,
        error: str,
        now: datetime,
        retry_delay: RetryDelay,
        permanent: bool = False,
    ) -> Optional[Task]:
        with self._lock:
            task = self._held(task_id, claim_id)
            if task is None:
                return None
            updated = _apply_failure(task, error, now, retry_delay, permanent)
            self._tasks[task_id] = updated
            return replace(updated)

    def _held(self, task_id: str, claim_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING or task.claim_id != claim_id:
            return None
        return task

    def count_tasks(self, workspace_id: Optional[str] = None) -> Dict[TaskStatus, int]:
        with self._lock:
            counts = {status: 0 for status in TaskStatus}
            for task in self._tasks.values():
                if workspace_id is not None and task.workspace_id != workspace_id:
                    continue
                counts[task.status] += 1
            return counts

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        workspace_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        with self._lock:
            tasks = [
                replace(t) for t in self._tasks.values()
                if (status is None or t.status == status)
                and (workspace_id is None or t.workspace_id == workspace_id)
            ]
        return tasks[:limit] if limit is not None else tasks


def _new_claim_id() -> str:
    return uuid.uuid4().hex


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO timestamp, so string order is time order."""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_aware(datetime.fromisoformat(value))


class SQLiteStorage:
    """SQLite-backed storage backend.

    Opens a connection per operation, so one instance can be shared by
    threads and several processes can point at the same file. Cross-process
    exclusivity comes from single conditional statements (the task claim)
    and ``BEGIN IMMEDIATE`` transactions (ledger writes, task failure).
    """

    def __init__(self, db_path: str = "governor.db", timeout: float = 5.0):
        if db_path == ":memory:":
            raise ValueError("SQLiteStorage needs a file path; use InMemoryStorage instead")
        self.db_path = db_path
        self.timeout = timeout
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS rate_events (
                    event_id TEXT PRIMARY KEY,
                    identity TEXT NOT NULL,
                    ip TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_rate_events_identity
                    ON rate_events(identity, endpoint, timestamp);
                CREATE INDEX IF NOT EXISTS idx_rate_events_ip
                    ON rate_events(ip, endpoint, timestamp);
                CREATE INDEX IF NOT EXISTS idx_rate_events_time ON rate_events(timestamp);

                CREATE TABLE IF NOT EXISTS daily_usage (
                    identity TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    day TEXT NOT NULL,
                    request_count INTEGER NOT NULL DEFAULT 0,
                    token_count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (identity, endpoint, day)
                );

                CREATE TABLE IF NOT EXISTS monthly_token_usage (
                    identity TEXT NOT NULL,
                    month TEXT NOT NULL,
                    surface TEXT NOT NULL,
                    tokens_used INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (identity, month, surface)
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    workspace_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    priority_rank INTEGER NOT NULL,
                    retries INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    last_error TEXT,
                    not_before TEXT,
                    timeout_seconds REAL NOT NULL,
                    result TEXT,
                    claim_id TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_claim
                    ON tasks(status, priority_rank DESC, created_at, seq);
                CREATE INDEX IF NOT EXISTS idx_tasks_workspace ON tasks(workspace_id, status);
                """
            )

    # Ledgers

    _EVENT_FILTER = "(identity = ? OR ip = ?) AND endpoint = ? AND timestamp >= ?"

    def count_rate_events(self, identity: str, ip: str, endpoint: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM rate_events WHERE {self._EVENT_FILTER}",
                (identity, ip, endpoint, _ts(since)),
            ).fetchone()
        return row[0]

    def oldest_rate_event(
        self, identity: str, ip: str, endpoint: str, since: datetime
    ) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT MIN(timestamp) FROM rate_events WHERE {self._EVENT_FILTER}",
                (identity, ip, endpoint, _ts(since)),
            ).fetchone()
        return _dt(row[0])

    @staticmethod
    def _row_to_daily(row: sqlite3.Row) -> DailyUsage:
        return DailyUsage(
            identity=row["identity"],
            endpoint=row["endpoint"],
            day=row["day"],
            request_count=row["request_count"],
            token_count=row["token_count"],
        )

    def get_daily_usage(self, identity: str, endpoint: str, day: str) -> Optional[DailyUsage]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM daily_usage WHERE identity = ? AND endpoint = ? AND day = ?",
                (identity, endpoint, day),
            ).fetchone()
        return self._row_to_daily(row) if row else None

    def list_daily_usage(self, identity: str, since_day: str) -> List[DailyUsage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM daily_usage WHERE identity = ? AND day >= ? ORDER BY day, endpoint",
                (identity, since_day),
            ).fetchall()
        return [self._row_to_daily(row) for row in rows]

    def monthly_token_usage(self, identity: str, month: str) -> List[MonthlyTokenUsage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM monthly_token_usage WHERE identity = ? AND month = ?",
                (identity, month),
            ).fetchall()
        return [
            MonthlyTokenUsage(
                identity=row["identity"],
                month=row["month"],
                surface=Surface(row["surface"]),
                tokens_used=row["tokens_used"],
            )
            for row in rows
        ]

    def apply_usage(
        self, event: RateEvent, day: str, month: str, surface: Surface, token_count: int
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO rate_events (event_id, identity, ip, endpoint, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event.event_id, event.identity, event.ip, event.endpoint, _ts(event.timestamp)),
            )
            conn.execute(
                """
                INSERT INTO daily_usage (identity, endpoint, day, request_count, token_count)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(identity, endpoint, day) DO UPDATE SET
                    request_count = request_count + 1,
                    token_count = token_count + excluded.token_count
                """,
                (event.identity, event.endpoint, day, token_count),
            )
            if token_count > 0:
                conn.execute(
                    """
                    INSERT INTO monthly_token_usage (identity, month, surface, tokens_used)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(identity, month, surface) DO UPDATE SET
                        tokens_used = tokens_used + excluded.tokens_used
                    """,
                    (event.identity, month, Surface(surface).value, token_count),
                )

    def prune_rate_events(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_events WHERE timestamp < ?", (_ts(before),))
            return cur.rowcount

    # Tasks

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            type=row["type"],
            payload=json.loads(row["payload"]),
            workspace_id=row["workspace_id"],
            status=TaskStatus(row["status"]),
            priority=TaskPriority.from_rank(row["priority_rank"]),
            retries=row["retries"],
            max_retries=row["max_retries"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            last_error=row["last_error"],
            not_before=_dt(row["not_before"]),
            timeout_seconds=row["timeout_seconds"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            claim_id=row["claim_id"],
        )

    def insert_task(self, task: Task) -> Task:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (id, type, payload, workspace_id, status, priority_rank,
                                   retries, max_retries, created_at, started_at, completed_at,
                                   last_error, not_before, timeout_seconds, result, claim_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.type,
                    json.dumps(task.payload),
                    task.workspace_id,
                    task.status.value,
                    task.priority.rank,
                    task.retries,
                    task.max_retries,
                    _ts(task.created_at),
                    _ts(task.started_at),
                    _ts(task.completed_at),
                    task.last_error,
                    _ts(task.not_before),
                    task.timeout_seconds,
                    json.dumps(task.result) if task.result is not None else None,
                    task.claim_id,
                ),
            )
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def claim_next_task(self, now: datetime) -> Optional[Task]:
        # One statement: the select and the flip cannot interleave with
        # another writer, and the status guard rejects a lost race.
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE tasks SET status = 'running', started_at = ?, claim_id = ?
                WHERE id = (
                    SELECT id FROM tasks
                    WHERE status = 'pending' AND (not_before IS NULL OR not_before <= ?)
                    ORDER BY priority_rank DESC, created_at ASC, seq ASC
                    LIMIT 1
                ) AND status = 'pending'
                RETURNING *
                """,
                (_ts(now), _new_claim_id(), _ts(now)),
            ).fetchall()
        return self._row_to_task(rows[0]) if rows else None

    _HELD = "id = ? AND status = 'running' AND claim_id = ?"

    def complete_task(
        self, task_id: str, claim_id: str, result, completed_at: datetime
    ) -> Optional[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE tasks SET status = 'completed', completed_at = ?, result = ?
                WHERE {self._HELD}
                RETURNING *
                """,
                (
                    _ts(completed_at),
                    json.dumps(result) if result is not None else None,
                    task_id,
                    claim_id,
                ),
            ).fetchall()
        return self._row_to_task(rows[0]) if rows else None

    def fail_task(
        self,
        task_id: str,
        claim_id: str,
        error: str,
        now: datetime,
        retry_delay: RetryDelay,
        permanent: bool = False,
    ) -> Optional[Task]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM tasks WHERE {self._HELD}", (task_id, claim_id)
            ).fetchone()
            if row is None:
                return None
            updated = _apply_failure(self._row_to_task(row), error, now, retry_delay, permanent)
            conn.execute(
                f"""
                UPDATE tasks SET status = ?, retries = ?, last_error = ?, started_at = ?,
                                 completed_at = ?, not_before = ?, claim_id = ?
                WHERE {self._HELD}
                """,
                (
                    updated.status.value,
                    updated.retries,
                    updated.last_error,
                    _ts(updated.started_at),
                    _ts(updated.completed_at),
                    _ts(updated.not_before),
                    updated.claim_id,
                    task_id,
                    claim_id,
                ),
            )
        return updated

    def count_tasks(self, workspace_id: Optional[str] = None) -> Dict[TaskStatus, int]:
        query = "SELECT status, COUNT(*) AS n FROM tasks"
        params: list = []
        if workspace_id is not None:
            query += " WHERE workspace_id = ?"
            params.append(workspace_id)
        query += " GROUP BY status"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        counts = {status: 0 for status in TaskStatus}
        for row in rows:
            counts[TaskStatus(row["status"])] = row["n"]
        return counts

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        workspace_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        query = "SELECT * FROM tasks"
        params: list = []
        conditions = []

        if status is not None:
            conditions.append("status = ?")
            params.append(TaskStatus(status).value)
        if workspace_id is not None:
            conditions.append("workspace_id = ?")
            params.append(workspace_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]
