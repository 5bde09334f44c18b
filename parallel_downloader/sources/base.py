"""Contract between the download pipeline and the network layer."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from ..models import DiscoveredItem, DiscoveryResult

DEFAULT_PAGE_SIZE = 10


class DownloadSource(ABC):
    """A place items are discovered and downloaded from.

    Sources are pickled into every worker process. Network clients are kept
    in attributes starting with ``_client`` and are dropped on pickling, so
    each process builds its own lazily.
    """

    page_size: int = DEFAULT_PAGE_SIZE

    @abstractmethod
    def discover(self, locator: str) -> DiscoveryResult:
        """Return the total item cardinality for ``locator``.

        Raises ``DiscoveryError``.
        """

    @abstractmethod
    def fetch_unit(self, locator: str, sequence_key: int) -> List[DiscoveredItem]:
        """Return the items of one discovery unit (page).

        Raises ``FetchError``.
        """

    @abstractmethod
    def fetch_item(self, source_locator: str, destination_dir: Path, name: str,
                   expected_size: int = 0) -> Path:
        """Download one item into ``destination_dir`` as ``name`` and return its path.

        ``expected_size`` (0 when unknown) is used for the integrity check.
        Raises ``DownloadError``.
        """

    def __getstate__(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_client")}

    def __setstate__(self, state: Dict[str, Any]):
        self.__dict__.update(state)
