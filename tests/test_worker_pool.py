"""
Tests for parallel_downloader.worker_pool.

These spawn real worker processes.
"""
from parallel_downloader.models import MetadataKey, NamingPolicy, TaskStatus
from parallel_downloader.worker import WorkerParams
from parallel_downloader.worker_pool import WorkerPool

from fakes import CRASH_EXIT_CODE, GROUP_KEY, FakeSource, make_tasks


def make_params(tmp_path, source, **kwargs):
    return WorkerParams(
        root_dir=str(tmp_path),
        group_key=GROUP_KEY,
        source=source,
        naming=NamingPolicy(),
        poll_delay=0.05,
        download_backoff=0.0,
        **kwargs,
    )


class BrokenProcess:
    name = "broken"
    pid = None

    def start(self):
        raise OSError("cannot fork")


class TestWorkerPool:
    """Tests for the worker pool supervisor."""

    def test_worker_count_is_clamped(self, queue, tmp_path):
        params = make_params(tmp_path, FakeSource())
        assert WorkerPool(queue, 0, params).worker_count == 1
        assert WorkerPool(queue, 50, params).worker_count == 10

    def test_workers_drain_the_queue(self, queue, tmp_path):
        """All workers exit 0 once the queue is finished."""
        queue.insert_tasks(make_tasks(1, [f"item-{i}.bin" for i in range(8)]))
        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        seen = []

        pool = WorkerPool(queue, 3, make_params(tmp_path, FakeSource()), poll_interval=0.05,
                          on_progress=seen.append)
        pool.start()
        result = pool.wait_for_completion()

        assert result.total_workers == 3
        assert result.completed_workers == 3
        assert result.failed_workers == 0
        assert queue.get_progress().completed == 8
        assert seen[-1].completed == 8

    def test_worker_with_failures_exits_nonzero(self, queue, tmp_path):
        queue.insert_tasks(make_tasks(1, ["bad.bin"]))
        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        source = FakeSource(fail_names={"bad.bin"})

        pool = WorkerPool(queue, 1, make_params(tmp_path, source), poll_interval=0.05)
        pool.start()
        result = pool.wait_for_completion()

        assert result.failed_workers == 1
        assert pool.results["worker-1"] == 1
        assert queue.get_progress().failed == 1

    def test_spawn_failure_is_recorded(self, queue, tmp_path, monkeypatch):
        """A worker that cannot start counts as failed."""
        pool = WorkerPool(queue, 2, make_params(tmp_path, FakeSource()), poll_interval=0.05)
        monkeypatch.setattr(pool._context, "Process", lambda **kwargs: BrokenProcess())

        pool.start()
        result = pool.wait_for_completion()

        assert pool.active_count == 0
        assert result.failed_workers == 2

    def test_terminate_leaves_current_task_in_progress(self, queue, tmp_path):
        """Terminated workers exit and their task waits for explicit recovery."""
        queue.insert_tasks(make_tasks(1, ["slow.bin"]))
        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        source = FakeSource(item_delay=60)

        pool = WorkerPool(queue, 1, make_params(tmp_path, source), poll_interval=0.05, grace_period=10)
        pool.start()
        for _ in range(600):
            if queue.get_progress().in_progress == 1:
                break
            pool.workers["worker-1"].join(timeout=0.05)

        pool.terminate()

        assert pool.active_count == 0
        assert pool.results["worker-1"] != 0
        task = queue.get_task(make_tasks(1, ["slow.bin"])[0].id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.owner == "worker-1"

    def test_stranded_state(self, queue, tmp_path):
        """Only tasks held by crashed workers and nothing pending means stranded."""
        queue.insert_tasks(make_tasks(1, ["a.bin", "b.bin"]))
        pool = WorkerPool(queue, 2, make_params(tmp_path, FakeSource()))
        queue.claim_next("worker-2")

        pool.results["worker-2"] = CRASH_EXIT_CODE
        assert not pool.is_stranded(queue.get_progress())

        queue.mark_complete(queue.claim_next("worker-1").id, owner="worker-1")
        assert not pool.is_stranded(queue.get_progress())

        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        assert pool.is_stranded(queue.get_progress())

        pool.results["worker-2"] = 1
        assert not pool.is_stranded(queue.get_progress())

    def test_crashed_worker_does_not_block_the_others(self, queue, tmp_path):
        """Idle workers are stopped once only a crashed worker's task is left."""
        names = ["item-000.bin", "item-001.bin", "item-002.bin"]
        queue.insert_tasks(make_tasks(1, names))
        queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
        source = FakeSource(crash_once_names={"item-000.bin"}, crash_marker_dir=str(tmp_path))

        pool = WorkerPool(queue, 2, make_params(tmp_path, source), poll_interval=0.05)
        pool.start()
        result = pool.wait_for_completion()

        assert pool.active_count == 0
        assert CRASH_EXIT_CODE in pool.results.values()
        assert len(pool.released) == 1
        assert result.total_workers == 2
        assert result.completed_workers == 1
        assert result.failed_workers == 1
        progress = queue.get_progress()
        assert progress.completed == 2
        assert progress.in_progress == 1
