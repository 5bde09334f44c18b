"""Error taxonomy for the parallel downloader."""

from typing import Optional


class DownloaderError(Exception):
    """Base class for all downloader errors."""


class RetryExhausted(DownloaderError):
    """A bounded retry policy ran out of attempts."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Gave up after {attempts} attempts{detail}")


class StorageError(DownloaderError):
    """Base class for task store errors."""


class StorageBusy(StorageError):
    """The store is locked by a concurrent writer; the operation may be retried."""


class StorageRetryExhausted(StorageError):
    """The store stayed busy for every attempt of the retry policy."""


class StorageFatal(StorageError):
    """The store cannot be created, opened or used."""


class DiscoveryError(DownloaderError):
    """The initial discovery fetch failed; the run cannot continue."""


class FetchError(DownloaderError):
    """Fetching one discovery unit failed; the unit is skipped."""


FetchUnitError = FetchError


class DownloadError(DownloaderError):
    """Downloading one item failed."""


class ProcessSpawnError(DownloaderError):
    """A worker process could not be started."""


class WorkerInterrupted(BaseException):
    """A worker process received a termination signal.

    Not an ``Exception`` subclass, so retry loops and per-task error handling
    never catch it.
    """

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Worker interrupted by signal {signum}")
