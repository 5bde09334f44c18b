"""Worker process that claims and downloads tasks from the queue."""

import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Tuple

from loguru import logger

from .exceptions import (
    RetryExhausted,
    StorageFatal,
    StorageRetryExhausted,
    WorkerInterrupted,
)
from .files import adopt_existing_file, download_dir, find_existing_file
from .log_setup import configure_logging
from .models import DownloadTask, NamingPolicy, WorkerResult
from .retry import RetryPolicy
from .sources.base import DownloadSource
from .task_queue import TaskQueue

MAX_CONSECUTIVE_FAILURES = 5


@dataclass
class WorkerParams:
    """Startup parameters handed to every worker process."""
    root_dir: str
    group_key: str
    source: DownloadSource
    naming: NamingPolicy = field(default_factory=NamingPolicy)
    verbose: bool = False
    log_level: str = "INFO"
    poll_delay: float = 0.5
    download_attempts: int = 3
    download_backoff: float = 2.0
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    store_retry: Optional[RetryPolicy] = None


class WorkerNode:
    """Consumer loop: claim a task, download it, record the outcome.

    The loop ends when the coordinator has finished ingesting and nothing is
    pending or in progress, or after ``max_consecutive_failures`` tasks in a
    row have failed.
    """

    def __init__(self, queue: TaskQueue, source: DownloadSource, worker_id: str,
                 destination_dir: Path, naming: Optional[NamingPolicy] = None,
                 poll_delay: float = 0.5, download_policy: Optional[RetryPolicy] = None,
                 max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
                 sleep: Callable[[float], None] = time.sleep):
        self.queue = queue
        self.source = source
        self.worker_id = worker_id
        self.destination_dir = Path(destination_dir)
        self.naming = naming or NamingPolicy()
        self.poll_delay = poll_delay
        self.download_policy = download_policy or RetryPolicy(max_attempts=3, base_delay=2.0)
        self.max_consecutive_failures = max_consecutive_failures
        self.sleep = sleep

        self.is_running = False
        self.current_task: Optional[DownloadTask] = None
        self.consecutive_failures = 0

    def stop(self):
        """Stop after the current task."""
        self.is_running = False

    def run(self) -> WorkerResult:
        """Run the consumer loop until there is no more work."""
        result = WorkerResult(worker_id=self.worker_id)
        self.destination_dir.mkdir(parents=True, exist_ok=True)
        self.is_running = True
        logger.info(f"Worker {self.worker_id} starting work loop")

        try:
            while self.is_running:
                task = self.queue.claim_next(self.worker_id)

                if task is None:
                    if self.queue.is_finished():
                        progress = self.queue.get_progress()
                        logger.info(
                            f"No more work (completed: {progress.completed}/{progress.total}), exiting"
                        )
                        break
                    # Coordinator may still be ingesting
                    self.sleep(self.poll_delay)
                    continue

                self.current_task = task
                result.processed += 1
                logger.debug(f"Processing: {task.name} from unit {task.sequence_key}")

                success, error, attempts = self._process_task(task)

                if success:
                    if not self.queue.mark_complete(task.id, owner=self.worker_id):
                        logger.warning(f"Task {task.id} was no longer owned by {self.worker_id}")
                    result.succeeded += 1
                    self.consecutive_failures = 0
                    logger.debug(f"Completed: {task.name}")
                else:
                    self.queue.mark_failed(task.id, error, retry_count=attempts, owner=self.worker_id)
                    result.failed += 1
                    result.errors.append(f"{task.name}: {error}")
                    self.consecutive_failures += 1
                    logger.error(f"Failed: {task.name} - {error}")

                self.current_task = None

                if self.consecutive_failures >= self.max_consecutive_failures:
                    logger.error(
                        f"Too many consecutive failures ({self.consecutive_failures}), exiting"
                    )
                    result.stopped_early = True
                    break

        except (StorageRetryExhausted, StorageFatal) as e:
            logger.error(f"Fatal queue error: {e}")
            result.errors.append(f"Fatal: {e}")
            result.stopped_early = True
        finally:
            self.is_running = False

        logger.info(
            f"Worker {self.worker_id} stopped. Completed: {result.succeeded}, Failed: {result.failed}"
        )
        return result

    def _process_task(self, task: DownloadTask) -> Tuple[bool, Optional[str], int]:
        """Download one task. Returns (success, last error, attempts made)."""
        prefix = self.naming.prefix_for(task.sequence_key)
        target_name = self.naming.target_name(task.name, task.sequence_key)

        existing = find_existing_file(
            task.name, self.destination_dir, task.expected_size, prefix, self.naming.custom_prefix
        )
        if existing:
            adopt_existing_file(existing)
            logger.info(f"File already exists and verified: {existing.target_name}")
            return True, None, 0

        attempts = 0

        def attempt() -> Path:
            nonlocal attempts
            attempts += 1
            return self.source.fetch_item(
                task.source_locator,
                self.destination_dir,
                target_name,
                expected_size=task.expected_size,
            )

        def on_retry(attempt_number: int, error: BaseException):
            logger.debug(
                f"Attempt {attempt_number}/{self.download_policy.max_attempts} failed for {task.name}: {error}"
            )

        try:
            saved_path = self.download_policy.call(attempt, on_retry=on_retry)
        except RetryExhausted as e:
            return False, str(e.last_error) or "Unknown error", attempts

        logger.debug(f"Saved {task.name} to {saved_path}")
        return True, None, attempts


def _raise_interrupted(signum, frame):
    raise WorkerInterrupted(signum)


def run_worker_process(params: WorkerParams, worker_id: str):
    """Entry point of a spawned worker process.

    Exits 0 when every processed task succeeded, 1 otherwise. A termination
    signal leaves the current task in progress for explicit recovery.
    """
    configure_logging("DEBUG" if params.verbose else params.log_level, worker_id)
    signal.signal(signal.SIGTERM, _raise_interrupted)
    signal.signal(signal.SIGINT, _raise_interrupted)

    try:
        queue = TaskQueue(params.root_dir, params.group_key, retry_policy=params.store_retry)
    except StorageFatal as e:
        logger.error(f"Failed to open queue: {e}")
        sys.exit(1)

    node = WorkerNode(
        queue,
        params.source,
        worker_id,
        download_dir(params.root_dir, params.group_key),
        naming=params.naming,
        poll_delay=params.poll_delay,
        download_policy=RetryPolicy(max_attempts=params.download_attempts, base_delay=params.download_backoff),
        max_consecutive_failures=params.max_consecutive_failures,
    )

    exit_code = 1
    try:
        result = node.run()
        exit_code = result.exit_code
        logger.debug(f"Finished: {result.succeeded} succeeded, {result.failed} failed")
    except WorkerInterrupted as e:
        current = node.current_task.name if node.current_task else "none"
        logger.warning(f"Interrupted by signal {e.signum} (current task: {current})")
        exit_code = 128 + e.signum
    finally:
        queue.close()

    sys.exit(exit_code)
