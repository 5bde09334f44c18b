"""Paginated JSON search API source with direct HTTP downloads."""

from pathlib import Path
from typing import Any, List, Optional

import requests
from loguru import logger

from ..config import HttpSourceConfig
from ..exceptions import DiscoveryError, DownloadError, FetchError
from ..files import verify_file_integrity
from ..models import DiscoveredItem, DiscoveryResult
from ..ssl_config import build_session
from .base import DownloadSource

FIRST_PAGE = 1


def dig(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts, returning None when missing."""
    if not path:
        return data
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


def stream_download(session: requests.Session, url: str, destination: Path,
                    expected_size: int = 0, timeout: int = 300,
                    chunk_size: int = 8192) -> Path:
    """Stream ``url`` to ``destination`` through a ``.part`` file.

    The partial file only replaces the destination after the integrity check,
    so an interrupted download never leaves a truncated file under its final
    name.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".part")
    try:
        with session.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        f.write(chunk)
    except (requests.RequestException, OSError) as e:
        partial.unlink(missing_ok=True)
        raise DownloadError(f"HTTP download failed for {url}: {e}") from e

    if not verify_file_integrity(partial, expected_size):
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Downloaded file failed integrity check: {destination.name}")

    partial.replace(destination)
    logger.debug(f"Downloaded with requests: {destination}")
    return destination


class HttpSearchSource(DownloadSource):
    """Items listed page by page by a JSON search endpoint.

    ``GET {search_url}?{query_param}={locator}&{page_param}={page}`` must return
    a document holding the overall hit count at ``total_path`` and the page's
    hits at ``hits_path``. Each hit (or its ``record_key`` sub-record) carries a
    file name, a file URL and an optional size.
    """

    def __init__(self, config: HttpSourceConfig):
        if not config.search_url:
            raise ValueError("The http source requires a search_url")
        self.config = config
        self.page_size = config.page_size

    def _session(self) -> requests.Session:
        session = self.__dict__.get("_client_session")
        if session is None:
            session = build_session(self.config.user_agent, self.config.disable_ssl_verify)
            self._client_session = session
        return session

    def _fetch_page(self, locator: str, page: int) -> dict:
        params = {self.config.query_param: locator, self.config.page_param: page}
        response = self._session().get(self.config.search_url, params=params, timeout=self.config.timeout)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response type {type(data).__name__}")
        return data

    def discover(self, locator: str) -> DiscoveryResult:
        try:
            data = self._fetch_page(locator, FIRST_PAGE)
        except (requests.RequestException, ValueError) as e:
            raise DiscoveryError(f"Failed to discover items for '{locator}': {e}") from e

        total = dig(data, self.config.total_path)
        try:
            cardinality = int(total)
        except (TypeError, ValueError) as e:
            raise DiscoveryError(
                f"No item count at '{self.config.total_path}' for '{locator}'"
            ) from e
        logger.debug(f"Discovered {cardinality} items for '{locator}'")
        return DiscoveryResult(item_cardinality=cardinality)

    def fetch_unit(self, locator: str, sequence_key: int) -> List[DiscoveredItem]:
        try:
            data = self._fetch_page(locator, sequence_key)
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"Failed to fetch page {sequence_key} for '{locator}': {e}") from e
        try:
            return self.extract_items(data)
        except ValueError as e:
            raise FetchError(f"Malformed page {sequence_key} for '{locator}': {e}") from e

    def extract_items(self, data: dict) -> List[DiscoveredItem]:
        """Extract downloadable items from one page document.

        Raises ValueError when the hits are not a list. Hits that are not
        objects are skipped.
        """
        hits = dig(data, self.config.hits_path)
        if hits is None:
            return []
        if not isinstance(hits, list):
            raise ValueError(f"Expected a list at '{self.config.hits_path}', got {type(hits).__name__}")

        items = []
        for hit in hits:
            if not isinstance(hit, dict):
                continue
            record = hit.get(self.config.record_key) if self.config.record_key else hit
            if not isinstance(record, dict):
                continue
            name = record.get(self.config.name_field)
            url = record.get(self.config.url_field)
            if not name or not url:
                continue
            items.append(DiscoveredItem(
                name=str(name),
                source_locator=str(url),
                expected_size=_as_size(record.get(self.config.size_field)),
            ))
        return items

    def fetch_item(self, source_locator: str, destination_dir: Path, name: str,
                   expected_size: int = 0) -> Path:
        return stream_download(
            self._session(),
            source_locator,
            Path(destination_dir) / name,
            expected_size=expected_size,
            timeout=self.config.download_timeout,
        )


def _as_size(value: Optional[Any]) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0
