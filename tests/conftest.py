"""
Pytest configuration and fixtures for parallel downloader tests
"""
import sys
from pathlib import Path

import pytest

# Spawned worker processes inherit sys.path, so they can unpickle the
# test doubles in ``fakes``.
ROOT_DIR = Path(__file__).parent.parent
TESTS_DIR = Path(__file__).parent

for path in (ROOT_DIR, TESTS_DIR):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from parallel_downloader import config as config_module
from parallel_downloader.retry import RetryPolicy
from parallel_downloader.task_queue import TaskQueue

from fakes import GROUP_KEY


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def fast_retry():
    """Store retry policy that never sleeps"""
    return RetryPolicy(max_attempts=5, base_delay=0.3, sleep=no_sleep)


@pytest.fixture
def queue(tmp_path, fast_retry):
    """A fresh task queue under a temporary root"""
    q = TaskQueue(tmp_path, GROUP_KEY, retry_policy=fast_retry)
    q.initialize()
    yield q
    q.close()


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment and the global config manager out of tests"""
    for name in ("PD_ROOT_DIR", "PD_WORKERS", "PD_SOURCE", "PD_UNIT_DELAY", "PD_SEARCH_URL",
                 "PD_DISABLE_SSL_VERIFY", "HF_TOKEN", "HUGGINGFACE_HUB_TOKEN", "HF_ENDPOINT",
                 "HF_DISABLE_SSL_VERIFY", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "_config_manager", None)

