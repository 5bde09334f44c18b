"""Hugging Face dataset source."""

import shutil
from pathlib import Path
from typing import Dict, List, Tuple

import requests
from huggingface_hub import HfApi, HfFileSystem, hf_hub_download
from loguru import logger

from ..config import HuggingFaceConfig
from ..exceptions import DiscoveryError, FetchError
from ..models import DiscoveredItem, DiscoveryResult
from ..ssl_config import build_session
from .base import DownloadSource
from .http import stream_download

DEFAULT_ENDPOINT = "https://huggingface.co"
RESOLVE_MARKER = "/resolve/main/"


class HuggingFaceSource(DownloadSource):
    """Files of a Hugging Face dataset, paged in sorted path order.

    The locator is a dataset id such as ``org/name``. Item names flatten the
    repository path (``data/train.parquet`` becomes ``data__train.parquet``)
    and the source locator is the file's resolve URL.
    """

    def __init__(self, config: HuggingFaceConfig):
        self.config = config
        self.page_size = config.page_size
        self.endpoint = (config.endpoint or DEFAULT_ENDPOINT).rstrip("/")

    def _filesystem(self) -> HfFileSystem:
        fs = self.__dict__.get("_client_fs")
        if fs is None:
            fs = HfFileSystem(token=self.config.token, endpoint=self.config.endpoint)
            self._client_fs = fs
        return fs

    def _session(self) -> requests.Session:
        session = self.__dict__.get("_client_session")
        if session is None:
            session = build_session("parallel-downloader/1.0", self.config.disable_ssl_verify)
            if self.config.token:
                session.headers["Authorization"] = f"Bearer {self.config.token}"
            self._client_session = session
        return session

    def _list_dataset_files(self, dataset_name: str) -> List[Tuple[str, int]]:
        """List (relative path, size) for every file in a dataset, sorted by path."""
        cache: Dict[str, List[Tuple[str, int]]] = self.__dict__.setdefault("_client_listing", {})
        if dataset_name in cache:
            return cache[dataset_name]

        root = f"datasets/{dataset_name}"
        entries = self._filesystem().find(root, detail=True)
        files = []
        for file_path, info in entries.items():
            if info.get("type") != "file":
                continue
            relative_path = file_path[len(root) + 1:] if file_path.startswith(root + "/") else file_path
            files.append((relative_path, int(info.get("size") or 0)))

        files.sort()
        cache[dataset_name] = files
        logger.info(f"Found {len(files)} files in dataset {dataset_name}")
        return files

    def file_url(self, dataset_name: str, relative_path: str) -> str:
        return f"{self.endpoint}/datasets/{dataset_name}{RESOLVE_MARKER}{relative_path}"

    def discover(self, locator: str) -> DiscoveryResult:
        try:
            HfApi(token=self.config.token, endpoint=self.config.endpoint).repo_info(
                repo_id=locator, repo_type="dataset"
            )
            files = self._list_dataset_files(locator)
        except Exception as e:
            raise DiscoveryError(f"Failed to list files for dataset {locator}: {e}") from e
        return DiscoveryResult(item_cardinality=len(files))

    def fetch_unit(self, locator: str, sequence_key: int) -> List[DiscoveredItem]:
        try:
            files = self._list_dataset_files(locator)
        except Exception as e:
            raise FetchError(f"Failed to list files for dataset {locator}: {e}") from e

        start = (sequence_key - 1) * self.page_size
        return [
            DiscoveredItem(
                name=relative_path.replace("/", "__"),
                source_locator=self.file_url(locator, relative_path),
                expected_size=size,
            )
            for relative_path, size in files[start:start + self.page_size]
        ]

    def fetch_item(self, source_locator: str, destination_dir: Path, name: str,
                   expected_size: int = 0) -> Path:
        destination = Path(destination_dir) / name
        destination.parent.mkdir(parents=True, exist_ok=True)

        if self._download_with_hf_hub(source_locator, destination):
            return destination

        # Fallback to direct HTTP download
        return stream_download(self._session(), source_locator, destination, expected_size=expected_size)

    def _download_with_hf_hub(self, source_locator: str, destination: Path) -> bool:
        """Download through the hub cache and copy the file to ``destination``."""
        prefix = f"{self.endpoint}/datasets/"
        if not source_locator.startswith(prefix) or RESOLVE_MARKER not in source_locator:
            return False
        repo_id, filename = source_locator[len(prefix):].split(RESOLVE_MARKER, 1)

        try:
            downloaded_path = hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                repo_type="dataset",
                token=self.config.token,
                endpoint=self.config.endpoint,
            )
            shutil.copy2(downloaded_path, destination)
        except Exception as e:
            logger.warning(f"HF Hub download failed for {filename}: {e}")
            return False

        logger.debug(f"Copied from HF cache: {downloaded_path} -> {destination}")
        return True

