"""Data models for the parallel downloader."""

from enum import Enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MIN_WORKERS = 1
MAX_WORKERS = 10


class TaskStatus(str, Enum):
    """Task status enumeration."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MetadataKey(str, Enum):
    """Pipeline-wide signals written by the coordinator."""
    INGESTION_COMPLETE = "ingestion_complete"
    TOTAL_UNITS = "total_units"
    TOTAL_ITEMS = "total_items"
    START_TIME = "start_time"


class PrefixMode(str, Enum):
    """How a downloaded file name is prefixed."""
    NONE = "none"
    PAGE = "page"
    CUSTOM = "custom"


class CachePolicy(str, Enum):
    """What happens to the task store after a run."""
    AUTO = "auto"
    DELETE = "delete"
    KEEP = "keep"


class ResumeAction(str, Enum):
    RESUME = "resume"
    FRESH = "fresh"
    ABORT = "abort"


class RunMode(str, Enum):
    SINGLE = "single"
    RANGE = "range"
    FULL = "full"


class DiscoveredItem(BaseModel):
    """An item listed by a download source for one discovery unit."""
    name: str
    source_locator: str
    expected_size: int = 0


class DiscoveryResult(BaseModel):
    """Outcome of the initial discovery fetch."""
    item_cardinality: int = 0


class NewTask(BaseModel):
    """A task ready to be inserted into the queue."""
    id: str
    group_key: str
    sequence_key: int
    name: str
    source_locator: str
    expected_size: int = 0

    @classmethod
    def from_item(cls, group_key: str, sequence_key: int,
                  item: DiscoveredItem, timestamp_ms: int) -> "NewTask":
        return cls(
            id=f"{group_key}_{sequence_key}_{item.name}_{timestamp_ms}",
            group_key=group_key,
            sequence_key=sequence_key,
            name=item.name,
            source_locator=item.source_locator,
            expected_size=item.expected_size or 0,
        )


class DownloadTask(NewTask):
    """Download task as stored in the queue."""
    status: TaskStatus = TaskStatus.PENDING
    owner: Optional[str] = None
    retry_count: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class QueueProgress(BaseModel):
    """Per-status task counts for one group key."""
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def remaining(self) -> int:
        return self.pending + self.in_progress


class NamingPolicy(BaseModel):
    """Naming policy for files written to the download directory."""
    mode: PrefixMode = PrefixMode.PAGE
    custom_prefix: Optional[str] = None

    @model_validator(mode="after")
    def _check_custom_prefix(self) -> "NamingPolicy":
        if self.mode == PrefixMode.CUSTOM and not self.custom_prefix:
            raise ValueError("custom prefix mode requires a prefix")
        return self

    def prefix_for(self, sequence_key: int) -> Optional[str]:
        if self.mode == PrefixMode.PAGE:
            return str(sequence_key)
        if self.mode == PrefixMode.CUSTOM:
            return self.custom_prefix
        return None

    def target_name(self, name: str, sequence_key: int) -> str:
        prefix = self.prefix_for(sequence_key)
        return f"{prefix}-{name}" if prefix else name


class CoordinatorOptions(BaseModel):
    """Options for a coordinator run."""
    start_unit: int = Field(default=1, ge=1)
    end_unit: Optional[int] = None
    workers: int = 5
    force_fresh: bool = False
    verbose: bool = False
    naming: NamingPolicy = Field(default_factory=NamingPolicy)
    cache_policy: CachePolicy = CachePolicy.AUTO
    unit_delay: float = 1.0
    poll_interval: float = 1.0
    worker_poll_delay: float = 0.5
    download_attempts: int = Field(default=3, ge=1)
    download_backoff: float = 2.0
    log_level: str = "INFO"

    @field_validator("workers")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        return max(MIN_WORKERS, min(MAX_WORKERS, value))

    @model_validator(mode="after")
    def _check_range(self) -> "CoordinatorOptions":
        if self.end_unit is not None and self.end_unit < self.start_unit:
            raise ValueError("end_unit must not be lower than start_unit")
        return self

    @property
    def mode(self) -> RunMode:
        if self.end_unit is None:
            return RunMode.FULL
        if self.end_unit == self.start_unit:
            return RunMode.SINGLE
        return RunMode.RANGE


class CoordinatorResult(BaseModel):
    """Result of a coordinator run."""
    total_units: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    remaining_tasks: int = 0
    duration_ms: int = 0
    workers_used: int = 0
    cache_deleted: bool = False


class WorkerPoolResult(BaseModel):
    total_workers: int
    completed_workers: int = 0
    failed_workers: int = 0


class WorkerResult(BaseModel):
    """Result of a single worker's consumer loop."""
    worker_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = []
    stopped_early: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if self.failed or self.stopped_early else 0
