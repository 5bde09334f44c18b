"""SQLite-backed task queue shared by the coordinator and worker processes."""

import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, TypeVar, Union

from loguru import logger

from .exceptions import (
    RetryExhausted,
    StorageBusy,
    StorageFatal,
    StorageRetryExhausted,
)
from .models import DownloadTask, MetadataKey, NewTask, QueueProgress, TaskStatus
from .retry import RetryPolicy

T = TypeVar("T")

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    group_key TEXT NOT NULL,
    sequence_key INTEGER NOT NULL,
    name TEXT NOT NULL,
    source_locator TEXT NOT NULL,
    expected_size INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    owner TEXT,
    retry_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    last_error TEXT,
    UNIQUE(group_key, name)
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_sequence ON tasks(sequence_key);
CREATE INDEX IF NOT EXISTS idx_tasks_group ON tasks(group_key);
"""

DEFAULT_STORE_RETRY = RetryPolicy(max_attempts=5, base_delay=0.3)
DB_EXTENSION = ".db"


def safe_group_key(group_key: str) -> str:
    """Convert a group key to a filesystem-safe directory name."""
    return group_key.replace("/", "__").replace("\\", "__")


def store_dir(root_dir: Union[str, Path], group_key: str) -> Path:
    return Path(root_dir) / "cache" / safe_group_key(group_key)


def store_path(root_dir: Union[str, Path], group_key: str) -> Path:
    safe_key = safe_group_key(group_key)
    return store_dir(root_dir, group_key) / f"{safe_key}{DB_EXTENSION}"


def _is_busy(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _metadata_key(key: Union[MetadataKey, str]) -> str:
    return key.value if isinstance(key, MetadataKey) else str(key)


class TaskQueue:
    """Durable task queue for one group key.

    Every process opens its own handle on the same database file. Writes run
    inside ``BEGIN IMMEDIATE`` transactions so concurrent claimers serialize on
    SQLite's write lock, and a busy database is retried by ``retry_policy``.
    The database runs in WAL mode so committed work survives a killed process.

    Queue location: ``{root_dir}/cache/{group_key}/{group_key}.db``
    """

    def __init__(self, root_dir: Union[str, Path], group_key: str,
                 retry_policy: Optional[RetryPolicy] = None, timeout: float = 3.0):
        self.root_dir = Path(root_dir)
        self.group_key = group_key
        self.cache_dir = store_dir(root_dir, group_key)
        self.db_path = store_path(root_dir, group_key)
        self.retry_policy = retry_policy or DEFAULT_STORE_RETRY
        self.timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.existed = self.db_path.exists()
            self._conn = sqlite3.connect(str(self.db_path), timeout=timeout, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
        except (OSError, sqlite3.Error) as e:
            raise StorageFatal(f"Cannot open task queue at {self.db_path}: {e}") from e

        self._initialize_database()
        logger.debug(f"Task queue opened at {self.db_path}")

    def __enter__(self) -> "TaskQueue":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_closed(self) -> bool:
        return self._conn is None

    def _initialize_database(self):
        """Enable WAL mode and create the schema."""
        def create(conn: sqlite3.Connection):
            conn.executescript(DB_SCHEMA)

        conn = self._connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
        except sqlite3.Error as e:
            if not _is_busy(e):
                raise StorageFatal(f"Cannot configure task queue {self.db_path}: {e}") from e
            logger.warning(f"Task queue {self.db_path} busy while enabling WAL mode: {e}")
        # executescript commits on its own, so schema creation bypasses _write
        self._retry("schema", lambda: self._run_unlocked(create))

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageFatal(f"Task queue {self.db_path} is closed")
        return self._conn

    def _translate(self, error: sqlite3.Error, label: str) -> Exception:
        if _is_busy(error):
            return StorageBusy(f"Task queue busy during {label}: {error}")
        return StorageFatal(f"Task queue error during {label}: {error}")

    def _run_unlocked(self, func: Callable[[sqlite3.Connection], T]) -> T:
        try:
            return func(self._connection())
        except sqlite3.Error as e:
            raise self._translate(e, "schema") from e

    def _retry(self, label: str, func: Callable[[], T]) -> T:
        def on_retry(attempt: int, error: BaseException):
            logger.warning(f"Queue busy ({label}), attempt {attempt}/{self.retry_policy.max_attempts}: {error}")

        try:
            return self.retry_policy.call(func, retry_on=(StorageBusy,), on_retry=on_retry)
        except RetryExhausted as e:
            raise StorageRetryExhausted(
                f"Queue stayed busy during {label} after {e.attempts} attempts"
            ) from e.last_error

    def _transaction(self, label: str, func: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            result = func(conn)
            conn.execute("COMMIT")
            return result
        except BaseException as e:
            if conn.in_transaction:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error(f"Rollback failed during {label}: {rollback_error}")
            if isinstance(e, sqlite3.Error):
                raise self._translate(e, label) from e
            raise

    def _write(self, label: str, func: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``func`` in a write transaction, retrying while the store is busy."""
        return self._retry(label, lambda: self._transaction(label, func))

    def _read(self, label: str, func: Callable[[sqlite3.Connection], T]) -> T:
        try:
            return func(self._connection())
        except sqlite3.Error as e:
            raise self._translate(e, label) from e

    def exists(self) -> bool:
        """Check if the queue database file exists on disk."""
        return self.db_path.exists()

    def initialize(self):
        """Clear all tasks and metadata for a fresh run."""
        def clear(conn: sqlite3.Connection):
            conn.execute("DELETE FROM tasks WHERE group_key = ?", (self.group_key,))
            conn.execute("DELETE FROM metadata")

        self._write("initialize", clear)
        logger.debug(f"Initialized task queue for {self.group_key}")

    def insert_tasks(self, tasks: Iterable[NewTask]) -> int:
        """Insert tasks, ignoring names already known for this group key.

        Returns the number of rows actually inserted.
        """
        now = _utcnow().isoformat()
        rows = [
            (task.id, task.group_key, task.sequence_key, task.name,
             task.source_locator, task.expected_size, TaskStatus.PENDING.value, now)
            for task in tasks
        ]
        if not rows:
            return 0

        def insert(conn: sqlite3.Connection) -> int:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO tasks
                (id, group_key, sequence_key, name, source_locator, expected_size, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

        inserted = self._write("insert", insert)
        logger.debug(f"Inserted {inserted}/{len(rows)} tasks into {self.group_key}")
        return inserted

    def claim_next(self, worker_id: str) -> Optional[DownloadTask]:
        """Atomically claim the next pending task, or return None."""
        return self._write("claim", lambda conn: self._claim_in_transaction(conn, worker_id))

    def _claim_in_transaction(self, conn: sqlite3.Connection, worker_id: str) -> Optional[DownloadTask]:
        row = conn.execute(
            """
            SELECT * FROM tasks
            WHERE group_key = ? AND status = ?
            ORDER BY sequence_key, name
            LIMIT 1
            """,
            (self.group_key, TaskStatus.PENDING.value),
        ).fetchone()
        if row is None:
            return None

        started_at = _utcnow()
        cursor = conn.execute(
            """
            UPDATE tasks
            SET status = ?, owner = ?, started_at = ?
            WHERE id = ? AND status = ?
            """,
            (TaskStatus.IN_PROGRESS.value, worker_id, started_at.isoformat(),
             row["id"], TaskStatus.PENDING.value),
        )
        if cursor.rowcount != 1:
            return None

        task = self._row_to_task(row)
        task.status = TaskStatus.IN_PROGRESS
        task.owner = worker_id
        task.started_at = started_at
        return task

    def mark_complete(self, task_id: str, owner: Optional[str] = None) -> bool:
        """Mark a task as completed. With ``owner``, only that worker's task is updated."""
        sql = """
            UPDATE tasks
            SET status = ?, owner = NULL, completed_at = ?, last_error = NULL
            WHERE id = ?
        """
        params = [TaskStatus.COMPLETED.value, _utcnow().isoformat(), task_id]
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        return self._write("mark complete", lambda conn: conn.execute(sql, params).rowcount == 1)

    def mark_failed(self, task_id: str, error: str, retry_count: Optional[int] = None,
                    owner: Optional[str] = None) -> bool:
        """Mark a task as failed and record the last error."""
        sql = """
            UPDATE tasks
            SET status = ?, owner = NULL, completed_at = ?, last_error = ?,
                retry_count = COALESCE(?, retry_count)
            WHERE id = ?
        """
        params = [TaskStatus.FAILED.value, _utcnow().isoformat(), error, retry_count, task_id]
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)
        return self._write("mark failed", lambda conn: conn.execute(sql, params).rowcount == 1)

    def reset_in_progress(self) -> int:
        """Reset in-progress tasks back to pending (explicit crash recovery)."""
        def reset(conn: sqlite3.Connection) -> int:
            return conn.execute(
                """
                UPDATE tasks
                SET status = ?, owner = NULL, started_at = NULL
                WHERE status = ? AND group_key = ?
                """,
                (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value, self.group_key),
            ).rowcount

        count = self._write("reset", reset)
        if count:
            logger.info(f"Reset {count} in-progress tasks to pending for {self.group_key}")
        return count

    def get_progress(self) -> QueueProgress:
        """Get per-status task counts."""
        row = self._read("progress", lambda conn: conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS pending,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS in_progress,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS completed,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS failed
            FROM tasks
            WHERE group_key = ?
            """,
            (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value,
             TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, self.group_key),
        ).fetchone())
        return QueueProgress(
            total=row["total"],
            pending=row["pending"],
            in_progress=row["in_progress"],
            completed=row["completed"],
            failed=row["failed"],
        )

    def in_progress_owners(self) -> Set[Optional[str]]:
        """Owners of the tasks currently in progress."""
        rows = self._read("in-progress owners", lambda conn: conn.execute(
            "SELECT DISTINCT owner FROM tasks WHERE group_key = ? AND status = ?",
            (self.group_key, TaskStatus.IN_PROGRESS.value),
        ).fetchall())
        return {row["owner"] for row in rows}

    def count_for_sequence(self, sequence_key: int) -> int:
        row = self._read("sequence count", lambda conn: conn.execute(
            "SELECT COUNT(*) AS count FROM tasks WHERE group_key = ? AND sequence_key = ?",
            (self.group_key, sequence_key),
        ).fetchone())
        return row["count"]

    def has_sequence(self, sequence_key: int) -> bool:
        """Check if a discovery unit already has tasks in the queue."""
        return self.count_for_sequence(sequence_key) > 0

    def set_metadata(self, key: Union[MetadataKey, str], value: str):
        self._write("set metadata", lambda conn: conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (_metadata_key(key), str(value)),
        ))

    def get_metadata(self, key: Union[MetadataKey, str]) -> Optional[str]:
        row = self._read("get metadata", lambda conn: conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (_metadata_key(key),)
        ).fetchone())
        return row["value"] if row else None

    def is_ingestion_complete(self) -> bool:
        return self.get_metadata(MetadataKey.INGESTION_COMPLETE) == "true"

    def is_finished(self) -> bool:
        """Ingestion is complete and no pending or in-progress work remains."""
        if not self.is_ingestion_complete():
            return False
        return self.get_progress().remaining == 0

    def get_task(self, task_id: str) -> Optional[DownloadTask]:
        row = self._read("get task", lambda conn: conn.execute(
            "SELECT * FROM tasks WHERE id = ?", (task_id,)
        ).fetchone())
        return self._row_to_task(row) if row else None

    def get_failed_tasks(self) -> List[DownloadTask]:
        rows = self._read("failed tasks", lambda conn: conn.execute(
            """
            SELECT * FROM tasks
            WHERE group_key = ? AND status = ?
            ORDER BY sequence_key, name
            """,
            (self.group_key, TaskStatus.FAILED.value),
        ).fetchall())
        return [self._row_to_task(row) for row in rows]

    def _row_to_task(self, row: sqlite3.Row) -> DownloadTask:
        return DownloadTask(
            id=row["id"],
            group_key=row["group_key"],
            sequence_key=row["sequence_key"],
            name=row["name"],
            source_locator=row["source_locator"],
            expected_size=row["expected_size"] or 0,
            status=TaskStatus(row["status"]),
            owner=row["owner"],
            retry_count=row["retry_count"] or 0,
            created_at=_parse_time(row["created_at"]),
            started_at=_parse_time(row["started_at"]),
            completed_at=_parse_time(row["completed_at"]),
            last_error=row["last_error"],
        )

    def close(self):
        """Close the database connection."""
        if self._conn is None:
            return
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing task queue {self.db_path}: {e}")
        self._conn = None

    def delete(self):
        """Close the queue and remove its cache directory."""
        self.close()
        if self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)
            logger.info(f"Deleted task queue cache {self.cache_dir}")
