"""Helpers for files in the download directory."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from .task_queue import safe_group_key


@dataclass
class ExistingFile:
    """A previously downloaded file matching a task."""
    path: Path
    target_name: str

    @property
    def needs_rename(self) -> bool:
        return self.path.name != self.target_name


def download_dir(root_dir: Union[str, Path], group_key: str) -> Path:
    """Directory downloaded files are written to."""
    return Path(root_dir) / "files" / safe_group_key(group_key)


def _is_naming_prefix(head: str, custom_prefix: Optional[str]) -> bool:
    return head.isdigit() or (bool(custom_prefix) and head == custom_prefix)


def find_existing_file(name: str, directory: Path, expected_size: int,
                       prefix: Optional[str] = None,
                       custom_prefix: Optional[str] = None) -> Optional[ExistingFile]:
    """Find a file already downloaded for ``name``.

    Matches the exact name first, then the bare name, then ``{page}-{name}``
    or ``{custom_prefix}-{name}``, so a run with a different naming policy
    reuses earlier downloads. The size must equal ``expected_size``; without
    an expected size nothing is reused.
    """
    if expected_size <= 0 or not directory.is_dir():
        return None

    target_name = f"{prefix}-{name}" if prefix else name
    for candidate in (directory / target_name, directory / name):
        if candidate.is_file() and candidate.stat().st_size == expected_size:
            return ExistingFile(path=candidate, target_name=target_name)

    suffix = f"-{name}"
    for candidate in sorted(directory.iterdir()):
        if not candidate.name.endswith(suffix) or not candidate.is_file():
            continue
        head = candidate.name[:-len(suffix)]
        if _is_naming_prefix(head, custom_prefix) and candidate.stat().st_size == expected_size:
            return ExistingFile(path=candidate, target_name=target_name)
    return None


def adopt_existing_file(existing: ExistingFile) -> Path:
    """Rename an existing file to its target name if needed and return its path."""
    if not existing.needs_rename:
        return existing.path
    target = existing.path.with_name(existing.target_name)
    existing.path.replace(target)
    logger.info(f"Renamed existing file {existing.path.name} -> {target.name}")
    return target


def verify_file_integrity(file_path: Path, expected_size: Optional[int] = None,
                          strict_size: bool = False) -> bool:
    """Verify file integrity by checking size and basic read test.

    A size mismatch only fails the check when ``strict_size`` is set; listing
    sizes reported by search APIs are often approximate.
    """
    try:
        if not file_path.exists():
            logger.debug(f"File does not exist: {file_path}")
            return False

        actual_size = file_path.stat().st_size
        if actual_size == 0:
            logger.debug(f"File is empty: {file_path}")
            return False

        if expected_size and actual_size != expected_size:
            logger.warning(f"File size mismatch for {file_path}: expected {expected_size}, got {actual_size}")
            if strict_size:
                return False

        # Small files may be HTML error pages served with a 200 status
        if actual_size < 1024:
            content = file_path.read_bytes().lower()
            if b"<html" in content or b"<!doctype" in content:
                logger.debug(f"File appears to be an HTML error page: {file_path}")
                return False
            if b"access denied" in content or b"403 forbidden" in content:
                logger.debug(f"File appears to be an access denied error: {file_path}")
                return False

        logger.debug(f"File integrity check passed: {file_path} ({actual_size} bytes)")
        return True

    except OSError as e:
        logger.error(f"Error during file integrity check for {file_path}: {e}")
        return False
