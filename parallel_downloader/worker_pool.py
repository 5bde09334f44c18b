"""Worker pool manager for parallel downloading."""

import multiprocessing
import time
from multiprocessing.process import BaseProcess
from typing import Callable, Dict, Optional, Set

from loguru import logger

from .exceptions import ProcessSpawnError
from .models import MAX_WORKERS, MIN_WORKERS, QueueProgress, WorkerPoolResult
from .task_queue import TaskQueue
from .worker import WorkerParams, run_worker_process

# Exit codes a worker returns on its own; anything else is a crash or a signal
CLEAN_EXIT_CODES = (0, 1)


class WorkerPool:
    """Spawns worker processes, tracks their exit status and shuts them down.

    Workers share nothing with the pool but their startup parameters; all
    coordination goes through the task queue. The ``spawn`` start method keeps
    open SQLite handles and log sinks out of the children.
    """

    def __init__(self, queue: TaskQueue, worker_count: int, params: WorkerParams,
                 poll_interval: float = 1.0,
                 on_progress: Optional[Callable[[QueueProgress], None]] = None,
                 grace_period: float = 10.0, verbose: bool = False):
        self.queue = queue
        self.worker_count = max(MIN_WORKERS, min(MAX_WORKERS, worker_count))
        self.params = params
        self.poll_interval = poll_interval
        self.on_progress = on_progress
        self.grace_period = grace_period
        self.verbose = verbose
        self.workers: Dict[str, BaseProcess] = {}
        self.results: Dict[str, Optional[int]] = {}
        self.released: Set[str] = set()
        self._context = multiprocessing.get_context("spawn")

    @property
    def active_count(self) -> int:
        return len(self.workers)

    def start(self):
        """Start all workers."""
        logger.debug(f"Starting {self.worker_count} worker processes...")
        for i in range(self.worker_count):
            self._spawn_worker(f"worker-{i + 1}")
        logger.debug(f"Started {len(self.workers)}/{self.worker_count} workers")

    def _spawn_worker(self, worker_id: str):
        process = self._context.Process(
            target=run_worker_process,
            args=(self.params, worker_id),
            name=worker_id,
            daemon=True,
        )
        try:
            process.start()
        except Exception as e:
            error = ProcessSpawnError(f"Failed to start {worker_id}: {e}")
            logger.error(str(error))
            self.results[worker_id] = 1
            return

        self.workers[worker_id] = process
        logger.info(f"[{worker_id}] Started (pid {process.pid})")

    def _reap(self):
        """Record the exit status of workers that have finished."""
        for worker_id, process in list(self.workers.items()):
            if process.is_alive():
                continue
            process.join()
            code = process.exitcode
            self.results[worker_id] = code
            del self.workers[worker_id]

            if code == 0:
                logger.debug(f"[{worker_id}] completed (code: {code})")
            elif worker_id in self.released:
                logger.debug(f"[{worker_id}] stopped while idle (code: {code})")
            elif code in CLEAN_EXIT_CODES:
                logger.warning(f"[{worker_id}] finished with failures (code: {code})")
            else:
                logger.error(
                    f"[{worker_id}] exited abnormally (code: {code}); a task it held stays "
                    f"in progress until the run is resumed"
                )

    def _report_progress(self) -> QueueProgress:
        progress = self.queue.get_progress()
        if self.on_progress:
            self.on_progress(progress)
        return progress

    def _crashed_workers(self) -> Set[str]:
        return {worker_id for worker_id, code in self.results.items() if code not in CLEAN_EXIT_CODES}

    def is_stranded(self, progress: QueueProgress) -> bool:
        """Nothing is left for the live workers to do.

        Ingestion is complete, nothing is pending, and every task still in
        progress belongs to a worker that has already crashed. Such tasks stay
        in progress until the run is resumed, so the live workers would poll
        forever.
        """
        if progress.pending or not progress.in_progress:
            return False
        if not self.queue.is_ingestion_complete():
            return False
        crashed = self._crashed_workers()
        return bool(crashed) and self.queue.in_progress_owners() <= crashed

    def release_idle_workers(self):
        """Stop live workers that can only wait on tasks held by crashed workers."""
        stranded = self.queue.get_progress().in_progress
        logger.error(
            f"{stranded} tasks are held by crashed workers; stopping {len(self.workers)} idle workers"
        )
        self.released.update(self.workers)
        self.terminate()

    def wait_for_completion(self) -> WorkerPoolResult:
        """Poll until every worker has exited or only stranded tasks remain."""
        logger.debug("Waiting for workers to complete...")

        while True:
            self._reap()
            if not self.workers:
                break
            progress = self._report_progress()
            if self.is_stranded(progress):
                self.release_idle_workers()
                break
            if self.verbose:
                logger.debug(
                    f"Progress: {progress.completed}/{progress.total} tasks "
                    f"({len(self.workers)} workers active)"
                )
            time.sleep(self.poll_interval)

        self._report_progress()
        result = self.summarize()
        logger.debug(
            f"All workers completed: {result.completed_workers} succeeded, {result.failed_workers} failed"
        )
        return result

    def summarize(self) -> WorkerPoolResult:
        result = WorkerPoolResult(total_workers=self.worker_count)
        for worker_id, code in self.results.items():
            if code == 0 or worker_id in self.released:
                result.completed_workers += 1
            else:
                result.failed_workers += 1
        return result

    def terminate(self):
        """Terminate all workers: SIGTERM, wait for the grace period, then SIGKILL."""
        if not self.workers:
            return
        logger.warning(f"Terminating {len(self.workers)} workers...")

        for process in self.workers.values():
            if process.is_alive():
                process.terminate()

        deadline = time.monotonic() + self.grace_period
        while time.monotonic() < deadline:
            self._reap()
            if not self.workers:
                break
            time.sleep(0.1)

        for worker_id, process in self.workers.items():
            if process.is_alive():
                logger.warning(f"[{worker_id}] did not stop in {self.grace_period}s, killing")
                process.kill()
            process.join(timeout=5)

        self._reap()
        logger.debug("All workers terminated")
