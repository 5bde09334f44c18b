"""Download sources: where items are discovered and fetched from."""

import importlib
from typing import Callable, Dict

from ..config import AppConfig
from .base import DEFAULT_PAGE_SIZE, DownloadSource
from .http import HttpSearchSource


def _http_source(app_config: AppConfig) -> DownloadSource:
    return HttpSearchSource(app_config.http)


def _huggingface_source(app_config: AppConfig) -> DownloadSource:
    from .huggingface import HuggingFaceSource

    return HuggingFaceSource(app_config.huggingface)


SOURCE_FACTORIES: Dict[str, Callable[[AppConfig], DownloadSource]] = {
    "http": _http_source,
    "huggingface": _huggingface_source,
}


def load_source(name: str, app_config: AppConfig) -> DownloadSource:
    """Build a source by registered name or ``package.module:factory`` path.

    A factory loaded by path is called with the ``AppConfig``.
    """
    if name in SOURCE_FACTORIES:
        return SOURCE_FACTORIES[name](app_config)

    if ":" not in name:
        raise ValueError(f"Unknown source '{name}'. Use one of {sorted(SOURCE_FACTORIES)} or 'module:factory'")

    module_name, attr = name.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    source = factory(app_config)
    if not isinstance(source, DownloadSource):
        raise TypeError(f"Source factory '{name}' returned {type(source).__name__}, not a DownloadSource")
    return source


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DownloadSource",
    "HttpSearchSource",
    "SOURCE_FACTORIES",
    "load_source",
]
