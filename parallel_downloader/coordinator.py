"""Coordinator (producer) for parallel downloads.

1. Checks for an existing queue (resume detection)
2. Discovers the total amount of work
3. Starts the worker pool
4. Streams discovered items into the queue unit by unit
5. Signals ingestion complete and waits for the workers
6. Summarizes the run and decides whether to keep the queue
"""

import math
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

from loguru import logger

from .exceptions import DiscoveryError, FetchError
from .models import (
    CachePolicy,
    CoordinatorOptions,
    CoordinatorResult,
    MetadataKey,
    NewTask,
    QueueProgress,
    ResumeAction,
    RunMode,
    WorkerPoolResult,
)
from .sources.base import DownloadSource
from .task_queue import TaskQueue
from .worker import WorkerParams
from .worker_pool import WorkerPool

ResumeDecider = Callable[[QueueProgress], ResumeAction]
CleanupDecider = Callable[[CoordinatorResult], bool]


def always_resume(progress: QueueProgress) -> ResumeAction:
    return ResumeAction.RESUME


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_speed(ms: int, completed: int) -> str:
    seconds = ms / 1000
    rate = completed / seconds if seconds > 0 else 0.0
    return f"{rate:.1f} items/second"


class Coordinator:
    """Producer side of the download pipeline for one group key."""

    def __init__(self, group_key: str, root_dir: Union[str, Path], source: DownloadSource,
                 options: Optional[CoordinatorOptions] = None,
                 resume_decider: Optional[ResumeDecider] = None,
                 cleanup_decider: Optional[CleanupDecider] = None,
                 on_progress: Optional[Callable[[QueueProgress], None]] = None):
        self.group_key = group_key
        self.root_dir = Path(root_dir)
        self.source = source
        self.options = options or CoordinatorOptions()
        self.resume_decider = resume_decider or always_resume
        self.cleanup_decider = cleanup_decider
        self.on_progress = on_progress
        self.queue = TaskQueue(self.root_dir, group_key)

        self.start_time = time.monotonic()
        self.total_units = 0
        self.total_tasks = 0
        self.processed_units = 0
        self.failed_units: List[int] = []
        self.pool: Optional[WorkerPool] = None
        self._fetched_units = set()
        self.queue_deleted = False
        self._stop_event = threading.Event()

    def stop(self):
        """Ask the producer loop to stop; safe to call from another thread."""
        self._stop_event.set()

    def run(self) -> CoordinatorResult:
        """Run the whole pipeline and return its result."""
        try:
            action = self.check_resume()
            if action == ResumeAction.ABORT:
                logger.info("Aborted.")
                return CoordinatorResult()

            # A resumed queue may carry the flag from its previous run
            self.queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "false")
            self.discover_totals()

            self.pool = WorkerPool(
                self.queue,
                self.options.workers,
                self._worker_params(),
                poll_interval=self.options.poll_interval,
                on_progress=self.on_progress,
                verbose=self.options.verbose,
            )
            self.pool.start()

            self.producer_loop()

            self.queue.set_metadata(MetadataKey.INGESTION_COMPLETE, "true")
            logger.debug("Ingestion complete, waiting for workers")
            pool_result = self.pool.wait_for_completion()

            result = self.summarize(pool_result)
            self.apply_cache_decision(result)
            return result

        except KeyboardInterrupt:
            logger.warning("Interrupted, stopping workers...")
            self.stop()
            if self.pool:
                self.pool.terminate()
            raise
        except Exception as e:
            logger.error(f"Coordinator error: {e}")
            if self.pool:
                self.pool.terminate()
            raise
        finally:
            if not self.queue_deleted:
                self.queue.close()

    def _worker_params(self) -> WorkerParams:
        return WorkerParams(
            root_dir=str(self.root_dir),
            group_key=self.group_key,
            source=self.source,
            naming=self.options.naming,
            verbose=self.options.verbose,
            log_level=self.options.log_level,
            poll_delay=self.options.worker_poll_delay,
            download_attempts=self.options.download_attempts,
            download_backoff=self.options.download_backoff,
        )

    def check_resume(self) -> ResumeAction:
        """Check for an existing queue and decide between resume, fresh and abort."""
        if self.options.force_fresh or not self.queue.existed:
            self.queue.initialize()
            return ResumeAction.FRESH

        progress = self.queue.get_progress()
        if progress.completed == 0 and progress.in_progress == 0:
            # Nothing was downloaded yet, treat as fresh
            self.queue.initialize()
            return ResumeAction.FRESH

        logger.info(f"Found previous download for {self.group_key}:")
        logger.info(f"  Completed: {progress.completed}")
        logger.info(f"  In progress: {progress.in_progress}")
        logger.info(f"  Pending: {progress.pending}")
        if progress.failed:
            logger.info(f"  Failed: {progress.failed}")
        logger.info(f"  Total: {progress.total}")

        action = ResumeAction(self.resume_decider(progress))
        if action == ResumeAction.RESUME:
            self.queue.reset_in_progress()
            logger.info("Resuming previous download")
        elif action == ResumeAction.FRESH:
            self.queue.initialize()
            logger.info("Starting fresh")
        return action

    def discover_totals(self):
        """Work out how many units and tasks this run covers."""
        start = self.options.start_unit
        mode = self.options.mode
        page_size = self.source.page_size

        if self.queue.has_sequence(start):
            self._totals_from_queue(start, mode, page_size)
            logger.info(f"Found {self.total_tasks} items (from queue)")
            return

        if mode == RunMode.SINGLE:
            logger.info(f"Fetching unit {start}...")
            try:
                items = self.source.fetch_unit(self.group_key, start)
            except FetchError as e:
                raise DiscoveryError(f"Failed to fetch unit {start}: {e}") from e

            self.total_units = 1
            self.total_tasks = len(items)
            self.queue.insert_tasks(self._build_tasks(start, items))
            self._fetched_units.add(start)
            logger.info(f"Found {self.total_tasks} items in unit {start}")
            return

        logger.info("Discovering total units...")
        discovery = self.source.discover(self.group_key)
        cardinality = discovery.item_cardinality
        total_units_overall = math.ceil(cardinality / page_size)
        end = total_units_overall
        if self.options.end_unit is not None:
            end = min(self.options.end_unit, total_units_overall)

        self.total_units = max(0, end - start + 1)
        remaining = max(0, cardinality - (start - 1) * page_size)
        self.total_tasks = min(self.total_units * page_size, remaining)

        self.queue.set_metadata(MetadataKey.TOTAL_UNITS, str(self.total_units))
        self.queue.set_metadata(MetadataKey.TOTAL_ITEMS, str(cardinality))
        self.queue.set_metadata(MetadataKey.START_TIME, str(int(time.time() * 1000)))
        logger.info(f"Found {self.total_tasks} items across {self.total_units} units")

    def _totals_from_queue(self, start: int, mode: RunMode, page_size: int):
        if mode == RunMode.SINGLE:
            self.total_units = 1
            self.total_tasks = self.queue.count_for_sequence(start)
            return

        total_units = self.queue.get_metadata(MetadataKey.TOTAL_UNITS)
        if total_units:
            self.total_units = int(total_units)
        else:
            self.total_units = math.ceil(self.queue.get_progress().total / page_size)

        total_items = self.queue.get_metadata(MetadataKey.TOTAL_ITEMS)
        if total_items:
            remaining = max(0, int(total_items) - (start - 1) * page_size)
            self.total_tasks = min(self.total_units * page_size, remaining)
        else:
            self.total_tasks = self.total_units * page_size

    def _build_tasks(self, sequence_key: int, items) -> List[NewTask]:
        timestamp_ms = int(time.time() * 1000)
        return [NewTask.from_item(self.group_key, sequence_key, item, timestamp_ms) for item in items]

    def _last_unit(self) -> int:
        return self.options.start_unit + self.total_units - 1

    def producer_loop(self):
        """Fetch every unit and stream its items into the queue."""
        start = self.options.start_unit
        end = self._last_unit()
        logger.info(f"Fetching units {start}..{end}")

        for unit in range(start, end + 1):
            if self._stop_event.is_set():
                logger.warning(f"Producer stopped before unit {unit}")
                break

            if unit in self._fetched_units or self.queue.has_sequence(unit):
                if self.options.verbose:
                    logger.debug(f"  Unit {unit}: already in queue")
                self.processed_units += 1
                continue

            try:
                items = self.source.fetch_unit(self.group_key, unit)
            except FetchError as e:
                logger.error(f"  Unit {unit}: {e}")
                self.failed_units.append(unit)
                continue

            inserted = self.queue.insert_tasks(self._build_tasks(unit, items))
            self.processed_units += 1
            if self.options.verbose:
                logger.debug(f"  Unit {unit}: {inserted} items added to queue")

            if unit < end and self._stop_event.wait(self.options.unit_delay):
                logger.warning(f"Producer stopped after unit {unit}")
                break

        logger.info(f"Fetched {self.processed_units}/{self.total_units} units")

    def summarize(self, pool_result: Optional[WorkerPoolResult] = None) -> CoordinatorResult:
        """Log the final summary and build the result."""
        duration_ms = int((time.monotonic() - self.start_time) * 1000)
        progress = self.queue.get_progress()

        logger.info("=" * 50)
        logger.info("SUMMARY")
        logger.info("=" * 50)
        logger.info(f"Units: {self.total_units} ({len(self.failed_units)} failed to fetch)")
        logger.info(f"Items: {self.total_tasks}")
        logger.info(f"  Downloaded: {progress.completed}")
        if progress.failed:
            logger.warning(f"  Failed: {progress.failed}")
        else:
            logger.info("  Failed: 0")
        if progress.remaining:
            logger.warning(f"  Not finished: {progress.remaining} (run again to resume)")
        workers_used = pool_result.total_workers if pool_result else 0
        if pool_result:
            logger.info(
                f"Workers used: {workers_used} ({pool_result.completed_workers} completed, "
                f"{pool_result.failed_workers} failed)"
            )
        logger.info(f"Duration: {format_duration(duration_ms)}")
        logger.info(f"Average: {format_speed(duration_ms, progress.completed)}")
        logger.info("=" * 50)

        return CoordinatorResult(
            total_units=self.total_units,
            total_tasks=self.total_tasks,
            completed_tasks=progress.completed,
            failed_tasks=progress.failed,
            remaining_tasks=progress.remaining,
            duration_ms=duration_ms,
            workers_used=workers_used,
        )

    def should_delete_cache(self, result: CoordinatorResult) -> bool:
        if self.cleanup_decider is not None:
            return bool(self.cleanup_decider(result))
        if self.options.cache_policy == CachePolicy.DELETE:
            return True
        if self.options.cache_policy == CachePolicy.KEEP:
            return False
        return result.failed_tasks == 0 and result.remaining_tasks == 0

    def apply_cache_decision(self, result: CoordinatorResult):
        if self.should_delete_cache(result):
            self.queue.delete()
            self.queue_deleted = True
            result.cache_deleted = True
            logger.info("Cache cleaned up")
        else:
            logger.info("Cache preserved for potential resume")
