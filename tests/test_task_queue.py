"""
Tests for parallel_downloader.task_queue.
"""
import json
import multiprocessing
import sqlite3
import threading

import pytest

from parallel_downloader.exceptions import StorageFatal, StorageRetryExhausted
from parallel_downloader.models import MetadataKey, NewTask, TaskStatus
from parallel_downloader.retry import RetryPolicy
from parallel_downloader.task_queue import TaskQueue, safe_group_key, store_path

from fakes import GROUP_KEY, claim_until_empty, make_tasks


def no_sleep(seconds):
    pass


class TestStoreLocation:
    """Tests for queue paths."""

    def test_group_key_is_made_filesystem_safe(self):
        assert safe_group_key("org/name") == "org__name"
        assert safe_group_key("a\\b") == "a__b"

    def test_store_path(self, tmp_path):
        """Queue lives under cache/{key}/{key}.db."""
        assert store_path(tmp_path, "org/name") == tmp_path / "cache" / "org__name" / "org__name.db"

    def test_existed_flag(self, tmp_path):
        """existed reports whether the file was there before opening."""
        first = TaskQueue(tmp_path, GROUP_KEY)
        assert first.existed is False
        first.close()

        second = TaskQueue(tmp_path, GROUP_KEY)
        assert second.existed is True
        assert second.exists()
        second.close()

    def test_unusable_root_is_fatal(self, tmp_path):
        """A root that cannot hold a directory raises StorageFatal."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")

        with pytest.raises(StorageFatal):
            TaskQueue(blocker, GROUP_KEY)

    def test_closed_queue_is_fatal(self, queue):
        queue.close()
        assert queue.is_closed
        with pytest.raises(StorageFatal):
            queue.get_progress()


class TestInsert:
    """Tests for task insertion."""

    def test_insert_is_idempotent_per_name(self, queue):
        """Re-inserting a known name within a group is ignored."""
        assert queue.insert_tasks(make_tasks(1, ["a", "b", "c"])) == 3
        assert queue.insert_tasks(make_tasks(1, ["a", "b", "d"])) == 1
        assert queue.get_progress().total == 4

    def test_duplicate_insert_keeps_first_fields(self, queue):
        """A second insert of a known name leaves the first row untouched."""
        first = NewTask(id="first", group_key=GROUP_KEY, sequence_key=1, name="a",
                        source_locator="fake://one/a", expected_size=100)
        second = NewTask(id="second", group_key=GROUP_KEY, sequence_key=2, name="a",
                         source_locator="fake://two/a", expected_size=999)
        assert queue.insert_tasks([first]) == 1
        assert queue.insert_tasks([second]) == 0

        stored = queue.get_task("first")
        assert stored.source_locator == "fake://one/a"
        assert stored.expected_size == 100
        assert stored.sequence_key == 1
        assert queue.get_task("second") is None

    def test_same_name_in_another_group(self, tmp_path, fast_retry):
        """Names only collide within a group key."""
        with TaskQueue(tmp_path, "other", retry_policy=fast_retry) as other:
            other.insert_tasks(make_tasks(1, ["a"], group_key="other"))
            assert other.get_progress().total == 1

    def test_empty_insert(self, queue):
        assert queue.insert_tasks([]) == 0

    def test_sequence_counts(self, queue):
        queue.insert_tasks(make_tasks(2, ["a", "b"]))
        assert queue.count_for_sequence(2) == 2
        assert queue.has_sequence(2)
        assert not queue.has_sequence(1)


class TestClaim:
    """Tests for claiming tasks."""

    def test_claim_order_is_unit_then_name(self, queue):
        """Lowest unit first, then name order."""
        queue.insert_tasks(make_tasks(2, ["a"]))
        queue.insert_tasks(make_tasks(1, ["z", "m"]))

        names = [queue.claim_next("w1").name for _ in range(3)]
        assert names == ["m", "z", "a"]
        assert queue.claim_next("w1") is None

    def test_claimed_task_is_owned_and_in_progress(self, queue):
        queue.insert_tasks(make_tasks(1, ["a"]))
        task = queue.claim_next("worker-1")

        stored = queue.get_task(task.id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert stored.status == TaskStatus.IN_PROGRESS
        assert stored.owner == "worker-1"
        assert stored.started_at is not None

    def test_busy_claim_succeeds_on_fifth_attempt(self, queue, monkeypatch):
        """A claim that is busy four times is retried and succeeds."""
        queue.insert_tasks(make_tasks(1, ["a"]))
        original = queue._claim_in_transaction
        calls = []

        def busy_then_claim(conn, worker_id):
            calls.append(worker_id)
            if len(calls) <= 4:
                raise sqlite3.OperationalError("database is locked")
            return original(conn, worker_id)

        monkeypatch.setattr(queue, "_claim_in_transaction", busy_then_claim)

        task = queue.claim_next("worker-1")
        assert task is not None
        assert len(calls) == 5
        assert queue.get_progress().in_progress == 1

    def test_busy_claim_gives_up_after_five_attempts(self, queue, monkeypatch):
        queue.insert_tasks(make_tasks(1, ["a"]))

        def always_busy(conn, worker_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(queue, "_claim_in_transaction", always_busy)

        with pytest.raises(StorageRetryExhausted):
            queue.claim_next("worker-1")
        assert queue.get_progress().pending == 1

    def test_lock_held_by_another_connection(self, tmp_path):
        """A write lock held elsewhere surfaces as StorageRetryExhausted."""
        queue = TaskQueue(tmp_path, GROUP_KEY, retry_policy=RetryPolicy(2, 0.0, sleep=no_sleep), timeout=0.05)
        queue.insert_tasks(make_tasks(1, ["a"]))

        other = sqlite3.connect(str(queue.db_path), isolation_level=None)
        try:
            other.execute("BEGIN IMMEDIATE")
            with pytest.raises(StorageRetryExhausted):
                queue.claim_next("worker-1")
            other.execute("ROLLBACK")

            assert queue.claim_next("worker-1").name == "a"
        finally:
            other.close()
            queue.close()

    def test_concurrent_thread_claims_are_exclusive(self, tmp_path, queue):
        """Every task is claimed by exactly one of many claimers."""
        names = [f"item-{i:03d}" for i in range(60)]
        queue.insert_tasks(make_tasks(1, names))
        claimed = {}
        lock = threading.Lock()

        def claimer(worker_id):
            with TaskQueue(tmp_path, GROUP_KEY) as own_queue:
                mine = []
                while True:
                    task = own_queue.claim_next(worker_id)
                    if task is None:
                        break
                    mine.append(task.id)
            with lock:
                claimed[worker_id] = mine

        threads = [threading.Thread(target=claimer, args=(f"worker-{i}",)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        all_ids = [task_id for ids in claimed.values() for task_id in ids]
        assert len(all_ids) == len(names)
        assert len(set(all_ids)) == len(names)

    def test_concurrent_process_claims_are_exclusive(self, tmp_path, queue):
        """Separate processes never claim the same task."""
        names = [f"item-{i:03d}" for i in range(40)]
        queue.insert_tasks(make_tasks(1, names))
        ctx = multiprocessing.get_context("spawn")

        outputs = [tmp_path / f"claimed-{i}.json" for i in range(4)]
        processes = [
            ctx.Process(target=claim_until_empty, args=(str(tmp_path), GROUP_KEY, f"worker-{i}", str(out)))
            for i, out in enumerate(outputs)
        ]
        for process in processes:
            process.start()
        for process in processes:
            process.join(timeout=120)
            assert process.exitcode == 0

        all_ids = [task_id for out in outputs for task_id in json.loads(out.read_text())]
        assert len(all_ids) == len(names)
        assert len(set(all_ids)) == len(names)


class TestOutcomes:
    """Tests for recording task outcomes."""

    def test_mark_complete_clears_owner(self, queue):
        queue.insert_tasks(make_tasks(1, ["a"]))
        task = queue.claim_next("w1")

        assert queue.mark_complete(task.id, owner="w1") is True
        stored = queue.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.owner is None
        assert stored.completed_at is not None

    def test_mark_complete_by_other_owner_is_ignored(self, queue):
        queue.insert_tasks(make_tasks(1, ["a"]))
        task = queue.claim_next("w1")

        assert queue.mark_complete(task.id, owner="w2") is False
        assert queue.get_task(task.id).status == TaskStatus.IN_PROGRESS

    def test_mark_failed_records_error(self, queue):
        queue.insert_tasks(make_tasks(1, ["a", "b"]))
        task = queue.claim_next("w1")

        queue.mark_failed(task.id, "HTTP 404", retry_count=3, owner="w1")

        failed = queue.get_failed_tasks()
        assert [t.name for t in failed] == ["a"]
        assert failed[0].last_error == "HTTP 404"
        assert failed[0].retry_count == 3
        assert failed[0].owner is None


class TestRecovery:
    """Tests for explicit crash recovery."""

    def test_reset_returns_in_progress_to_pending(self, queue):
        """After reset nothing is in progress and no pending task has an owner."""
        queue.insert_tasks(make_tasks(1, ["a", "b", "c"]))
        done = queue.claim_next("w1")
        queue.mark_complete(done.id, owner="w1")
        orphan = queue.claim_next("w2")

        assert queue.reset_in_progress() == 1

        progress = queue.get_progress()
        assert progress.in_progress == 0
        assert progress.completed == 1
        assert progress.pending == 2
        stored = queue.get_task(orphan.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.owner is None
        assert stored.started_at is None

    def test_in_progress_owners(self, queue):
        queue.insert_tasks(make_tasks(1, ["a", "b", "c"]))
        queue.claim_next("w1")
        done = queue.claim_next("w2")
        queue.claim_next("w1")
        queue.mark_complete(done.id, owner="w2")

        assert queue.in_progress_owners() == {"w1"}

    def test_progress_conservation(self, queue):
        """Status counts always sum to the total."""
        queue.insert_tasks(make_tasks(1, [f"n{i}" for i in range(7)]))
        first = queue.claim_next("w1")
        second = queue.claim_next("w1")
        queue.claim_next("w2")
        queue.mark_complete(first.id)
        queue.mark_failed(second.id, "boom")

        progress = queue.get_progress()
        assert progress.total == 7
        assert progress.pending + progress.in_progress + progress.completed + progress.failed == progress.total


class TestMetadata:
    """Tests for metadata and the finished signal."""

    def test_set_and_get(self, queue):
        queue.set_metadata(MetadataKey.TOTAL_UNITS, "4")
        queue.set_metadata("custom", 12)

        assert queue.get_metadata(MetadataKey.TOTAL_UNITS) == "4"
        assert queue.get_metadata("total_units") == "4"
        assert queue.get_metadata("custom") == "12"
        assert queue.get_metadata("missing") is None

    def test_finished_needs_ingestion_flag(self, queue):
        """Finished means ingestion is complete and nothing remains."""
        assert not queue.is_finished()

        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        assert queue.is_finished()

        queue.insert_tasks(make_tasks(1, ["a"]))
        assert not queue.is_finished()

        task = queue.claim_next("w1")
        assert not queue.is_finished()

        queue.mark_failed(task.id, "boom")
        assert queue.is_finished()

    def test_initialize_clears_everything(self, queue):
        queue.insert_tasks(make_tasks(1, ["a"]))
        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")

        queue.initialize()

        assert queue.get_progress().total == 0
        assert not queue.is_ingestion_complete()


class TestDelete:
    """Tests for deleting the queue."""

    def test_delete_is_idempotent(self, queue):
        queue.insert_tasks(make_tasks(1, ["a"]))

        queue.delete()
        queue.delete()

        assert queue.is_closed
        assert not queue.cache_dir.exists()
