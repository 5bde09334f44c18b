"""Parallel downloader with a resumable SQLite task queue."""

from .coordinator import Coordinator
from .models import CoordinatorOptions, CoordinatorResult, NamingPolicy, PrefixMode
from .task_queue import TaskQueue

__version__ = "0.1.0"

__all__ = [
    "Coordinator",
    "CoordinatorOptions",
    "CoordinatorResult",
    "NamingPolicy",
    "PrefixMode",
    "TaskQueue",
    "__version__",
]
