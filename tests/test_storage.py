"""Tests for storage backends."""

from datetime import datetime, timedelta, timezone
import tempfile
import threading

import pytest

from governor.models import RateEvent, Surface, Task, TaskPriority, TaskStatus
from governor.queue import TaskQueue
from governor.storage import SQLiteStorage, StoreError
from governor.usage import UsageRecorder


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def no_delay(retries):
    return timedelta(0)


def test_sqlite_storage_persists_across_instances():
    """SQLite storage should persist ledgers and tasks across instances."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = f"{tmpdir}/governor.db"

        storage = SQLiteStorage(db_path=db_path)
        UsageRecorder(storage).record("user_1", "10.0.0.1", "chat", token_count=42, now=NOW)
        task = TaskQueue(storage).enqueue("index-document", {"documentId": "doc-1"}, "ws-1", now=NOW)

        storage2 = SQLiteStorage(db_path=db_path)
        assert storage2.get_daily_usage("user_1", "chat", "2024-03-15").token_count == 42
        assert storage2.monthly_token_usage("user_1", "2024-03")[0].tokens_used == 42

        loaded = storage2.get_task(task.id)
        assert loaded.payload == {"documentId": "doc-1"}
        assert loaded.created_at == NOW
        assert loaded.priority == TaskPriority.NORMAL


def test_sqlite_rejects_memory_database():
    """An in-memory SQLite path is rejected."""
    with pytest.raises(ValueError):
        SQLiteStorage(db_path=":memory:")


def test_sqlite_unreachable_path_raises_store_error():
    """An unreachable database path raises StoreError."""
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(StoreError):
            SQLiteStorage(db_path=f"{tmpdir}/missing/dir/governor.db")


def test_sqlite_timestamps_are_utc():
    """Offsets are normalized, so ordering by stored text is time order."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/governor.db")
        plus_two = timezone(timedelta(hours=2))
        local = datetime(2024, 3, 15, 14, 0, tzinfo=plus_two)

        event = RateEvent(identity="user_1", ip="10.0.0.1", endpoint="chat", timestamp=local)
        storage.apply_usage(event, day="2024-03-15", month="2024-03",
                            surface=Surface.WEB, token_count=0)

        oldest = storage.oldest_rate_event("user_1", "10.0.0.1", "chat", NOW - timedelta(minutes=1))
        assert oldest == NOW
        assert oldest.utcoffset() == timedelta(0)


class TestRateEvents:
    """Rate event queries on both backends."""

    def test_count_and_oldest(self, storage):
        """Only events inside the window are counted."""
        for seconds in (90, 45, 10):
            event = RateEvent("user_1", "10.0.0.1", "chat", NOW - timedelta(seconds=seconds))
            storage.apply_usage(event, "2024-03-15", "2024-03", Surface.WEB, 0)

        since = NOW - timedelta(seconds=60)
        assert storage.count_rate_events("user_1", "10.0.0.1", "chat", since) == 2
        assert storage.oldest_rate_event("user_1", "10.0.0.1", "chat", since) == NOW - timedelta(seconds=45)

    def test_oldest_none_when_empty(self, storage):
        """No events means no oldest event."""
        assert storage.oldest_rate_event("user_1", "10.0.0.1", "chat", NOW) is None

    def test_identity_or_ip(self, storage):
        """Events match on identity or ip."""
        storage.apply_usage(RateEvent("user_1", "10.0.0.1", "chat", NOW),
                            "2024-03-15", "2024-03", Surface.WEB, 0)
        storage.apply_usage(RateEvent("user_2", "10.0.0.2", "chat", NOW),
                            "2024-03-15", "2024-03", Surface.WEB, 0)

        since = NOW - timedelta(seconds=60)
        assert storage.count_rate_events("user_1", "10.0.0.2", "chat", since) == 2
        assert storage.count_rate_events("user_3", "10.0.0.3", "chat", since) == 0

    def test_prune(self, storage):
        """Pruning removes events older than the cutoff."""
        storage.apply_usage(RateEvent("user_1", "10.0.0.1", "chat", NOW - timedelta(days=2)),
                            "2024-03-13", "2024-03", Surface.WEB, 0)
        storage.apply_usage(RateEvent("user_1", "10.0.0.1", "chat", NOW),
                            "2024-03-15", "2024-03", Surface.WEB, 0)

        assert storage.prune_rate_events(NOW - timedelta(days=1)) == 1
        assert storage.count_rate_events("user_1", "10.0.0.1", "chat", NOW - timedelta(days=7)) == 1


class TestTaskStore:
    """Task persistence on both backends."""

    def test_claim_order(self, storage):
        """Claims go high to low priority, oldest first within a priority."""
        low = storage.insert_task(Task("t", {}, "ws", priority=TaskPriority.LOW, created_at=NOW))
        normal = storage.insert_task(Task("t", {}, "ws", created_at=NOW))
        high = storage.insert_task(Task("t", {}, "ws", priority=TaskPriority.HIGH,
                                        created_at=NOW + timedelta(seconds=5)))

        later = NOW + timedelta(minutes=1)
        claimed = [storage.claim_next_task(later).id for _ in range(3)]

        assert claimed == [high.id, normal.id, low.id]
        assert storage.claim_next_task(later) is None

    def test_claim_ties_are_fifo(self, storage):
        """Tasks created at the same instant are claimed in insertion order."""
        first = storage.insert_task(Task("t", {}, "ws", created_at=NOW))
        second = storage.insert_task(Task("t", {}, "ws", created_at=NOW))

        assert storage.claim_next_task(NOW).id == first.id
        assert storage.claim_next_task(NOW).id == second.id

    def test_claim_marks_running(self, storage):
        """A claim flips the task to running and stamps start time and claim id."""
        task = storage.insert_task(Task("t", {"a": 1}, "ws", created_at=NOW))
        claimed = storage.claim_next_task(NOW + timedelta(seconds=3))

        assert claimed.id == task.id
        assert claimed.status == TaskStatus.RUNNING
        assert claimed.started_at == NOW + timedelta(seconds=3)
        assert claimed.claim_id
        stored = storage.get_task(task.id)
        assert stored.status == TaskStatus.RUNNING
        assert stored.claim_id == claimed.claim_id

    def test_claim_respects_not_before(self, storage):
        """A task is not claimable before its not_before instant."""
        storage.insert_task(Task("t", {}, "ws", created_at=NOW, not_before=NOW + timedelta(seconds=30)))

        assert storage.claim_next_task(NOW) is None
        assert storage.claim_next_task(NOW + timedelta(seconds=30)) is not None

    def test_complete_only_running(self, storage):
        """Only a running task can be completed, and only once."""
        task = storage.insert_task(Task("t", {}, "ws", created_at=NOW))
        assert storage.complete_task(task.id, None, None, NOW) is None

        claimed = storage.claim_next_task(NOW)
        done = storage.complete_task(task.id, claimed.claim_id, {"ok": True}, NOW)
        assert done.status == TaskStatus.COMPLETED
        assert done.result == {"ok": True}
        assert storage.complete_task(task.id, claimed.claim_id, None, NOW) is None

    def test_fail_task(self, storage):
        """Failures return the task to pending until retries run out."""
        task = storage.insert_task(Task("t", {}, "ws", created_at=NOW, max_retries=2))

        first = storage.claim_next_task(NOW)
        once = storage.fail_task(task.id, first.claim_id, "boom", NOW, no_delay)
        assert once.status == TaskStatus.PENDING
        assert once.retries == 1
        assert once.started_at is None
        assert once.claim_id is None

        second = storage.claim_next_task(NOW)
        assert second.claim_id != first.claim_id
        twice = storage.fail_task(task.id, second.claim_id, "boom again", NOW, no_delay)
        assert twice.status == TaskStatus.FAILED
        assert twice.retries == 2
        assert twice.completed_at == NOW
        assert storage.get_task(task.id).last_error == "boom again"

        assert storage.fail_task(task.id, second.claim_id, "late", NOW, no_delay) is None

    def test_fail_pending_task_rejected(self, storage):
        """A task that is not running cannot be failed."""
        task = storage.insert_task(Task("t", {}, "ws", created_at=NOW))

        assert storage.fail_task(task.id, None, "boom", NOW, no_delay) is None
        assert storage.get_task(task.id).retries == 0

    def test_outcome_from_superseded_claim_rejected(self, storage):
        """Once a task is reclaimed, the earlier claim can no longer finish it."""
        task = storage.insert_task(Task("t", {}, "ws", created_at=NOW))
        stale = storage.claim_next_task(NOW)
        storage.fail_task(task.id, stale.claim_id, "timed out", NOW, no_delay)
        current = storage.claim_next_task(NOW)

        assert storage.complete_task(task.id, stale.claim_id, {"by": "stale"}, NOW) is None
        assert storage.fail_task(task.id, stale.claim_id, "late", NOW, no_delay) is None

        held = storage.get_task(task.id)
        assert held.status == TaskStatus.RUNNING
        assert held.retries == 1
        assert held.result is None

        done = storage.complete_task(task.id, current.claim_id, {"by": "current"}, NOW)
        assert done.result == {"by": "current"}

    def test_fail_missing_task(self, storage):
        """Failing an unknown id is a no-op."""
        assert storage.fail_task("nope", "claim", "boom", NOW, no_delay) is None

    def test_count_and_list(self, storage):
        """Counts and listings filter by status and workspace."""
        storage.insert_task(Task("t", {}, "ws-1", created_at=NOW))
        storage.insert_task(Task("t", {}, "ws-1", created_at=NOW))
        storage.insert_task(Task("t", {}, "ws-2", created_at=NOW))
        storage.claim_next_task(NOW)

        counts = storage.count_tasks()
        assert counts[TaskStatus.PENDING] == 2
        assert counts[TaskStatus.RUNNING] == 1
        assert counts[TaskStatus.FAILED] == 0

        assert storage.count_tasks("ws-2")[TaskStatus.PENDING] == 1
        assert len(storage.list_tasks(workspace_id="ws-1")) == 2
        assert len(storage.list_tasks(status=TaskStatus.RUNNING)) == 1
        assert len(storage.list_tasks(limit=1)) == 1


def test_concurrent_claims_are_exclusive():
    """Many threads claiming from one SQLite file never share a task."""
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = SQLiteStorage(db_path=f"{tmpdir}/governor.db", timeout=30.0)
        for i in range(40):
            storage.insert_task(Task("t", {"n": i}, "ws", created_at=NOW + timedelta(seconds=i)))

        claimed = []
        lock = threading.Lock()

        def worker():
            while True:
                task = storage.claim_next_task(NOW + timedelta(minutes=5))
                if task is None:
                    return
                with lock:
                    claimed.append(task.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 40
        assert len(set(claimed)) == 40
