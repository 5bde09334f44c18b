"""Configuration management for the parallel downloader."""

import os
import configparser
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

from loguru import logger

TRUE_VALUES = ('true', '1', 'yes', 'on')


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in TRUE_VALUES


def _env_number(name: str, default, cast):
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return cast(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


@dataclass
class DownloadConfig:
    """Download pipeline settings."""
    root_dir: str = "./downloads"
    workers: int = 5
    source: str = "http"
    unit_delay: float = 1.0
    poll_interval: float = 1.0
    worker_poll_delay: float = 0.5
    download_attempts: int = 3
    download_backoff: float = 2.0


@dataclass
class HttpSourceConfig:
    """Paginated JSON search API settings."""
    search_url: Optional[str] = None
    query_param: str = "keys"
    page_param: str = "page"
    page_size: int = 10
    timeout: int = 60
    download_timeout: int = 300
    user_agent: str = "parallel-downloader/1.0"
    total_path: str = "hits.total.value"
    hits_path: str = "hits.hits"
    record_key: str = "_source"
    name_field: str = "ORIGIN_FILE_NAME"
    url_field: str = "ORIGIN_FILE_URI"
    size_field: str = "fileSize"
    disable_ssl_verify: bool = False


@dataclass
class HuggingFaceConfig:
    """Hugging Face configuration settings."""
    token: Optional[str] = None
    endpoint: Optional[str] = None
    page_size: int = 10
    disable_ssl_verify: bool = False


@dataclass
class AppConfig:
    """Application configuration."""
    download: DownloadConfig = field(default_factory=DownloadConfig)
    http: HttpSourceConfig = field(default_factory=HttpSourceConfig)
    huggingface: HuggingFaceConfig = field(default_factory=HuggingFaceConfig)
    log_level: str = "INFO"


class ConfigManager:
    """Manages configuration from files, environment variables, and CLI args."""

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration manager."""
        self.config_file = config_file or self._find_config_file()
        self.config = self._load_config()

    def _find_config_file(self) -> Optional[str]:
        """Find configuration file in standard locations."""
        possible_paths = [
            "config.ini",
            "parallel_downloader.ini",
            "~/.config/parallel_downloader/config.ini",
            "~/.parallel_downloader.ini",
        ]

        for path_str in possible_paths:
            path = Path(path_str).expanduser()
            if path.exists():
                logger.info(f"Found config file: {path}")
                return str(path)

        logger.debug("No config file found, using defaults")
        return None

    def _load_config(self) -> AppConfig:
        """Load configuration from file and environment variables."""
        config = AppConfig()

        if self.config_file and Path(self.config_file).exists():
            parser = configparser.ConfigParser()
            try:
                parser.read(self.config_file)
                # Sample files carry placeholders like "# your_token"
                for section in parser.sections():
                    for key, value in list(parser[section].items()):
                        if value.strip().startswith("#"):
                            parser.remove_option(section, key)
                self._apply_file(parser, config)
                logger.info(f"Loaded configuration from {self.config_file}")
            except (configparser.Error, ValueError) as e:
                logger.warning(f"Error reading config file {self.config_file}: {e}")

        self._apply_env(config)
        return config

    def _apply_file(self, parser: configparser.ConfigParser, config: AppConfig):
        if "download" in parser:
            section = parser["download"]
            download = config.download
            download.root_dir = section.get("root_dir", download.root_dir)
            download.workers = section.getint("workers", download.workers)
            download.source = section.get("source", download.source)
            download.unit_delay = section.getfloat("unit_delay", download.unit_delay)
            download.poll_interval = section.getfloat("poll_interval", download.poll_interval)
            download.worker_poll_delay = section.getfloat("worker_poll_delay", download.worker_poll_delay)
            download.download_attempts = section.getint("download_attempts", download.download_attempts)
            download.download_backoff = section.getfloat("download_backoff", download.download_backoff)

        if "http" in parser:
            section = parser["http"]
            http = config.http
            http.search_url = section.get("search_url", http.search_url)
            http.query_param = section.get("query_param", http.query_param)
            http.page_param = section.get("page_param", http.page_param)
            http.page_size = section.getint("page_size", http.page_size)
            http.timeout = section.getint("timeout", http.timeout)
            http.download_timeout = section.getint("download_timeout", http.download_timeout)
            http.user_agent = section.get("user_agent", http.user_agent)
            http.total_path = section.get("total_path", http.total_path)
            http.hits_path = section.get("hits_path", http.hits_path)
            http.record_key = section.get("record_key", http.record_key)
            http.name_field = section.get("name_field", http.name_field)
            http.url_field = section.get("url_field", http.url_field)
            http.size_field = section.get("size_field", http.size_field)
            http.disable_ssl_verify = section.getboolean("disable_ssl_verify", http.disable_ssl_verify)

        if "huggingface" in parser:
            section = parser["huggingface"]
            hf = config.huggingface
            hf.token = section.get("token", hf.token)
            hf.endpoint = section.get("endpoint", hf.endpoint)
            hf.page_size = section.getint("page_size", hf.page_size)
            hf.disable_ssl_verify = section.getboolean("disable_ssl_verify", hf.disable_ssl_verify)

        if "app" in parser:
            config.log_level = parser["app"].get("log_level", config.log_level)

    def _apply_env(self, config: AppConfig):
        download = config.download
        download.root_dir = os.getenv("PD_ROOT_DIR", download.root_dir)
        download.workers = _env_number("PD_WORKERS", download.workers, int)
        download.source = os.getenv("PD_SOURCE", download.source)
        download.unit_delay = _env_number("PD_UNIT_DELAY", download.unit_delay, float)

        config.http.search_url = os.getenv("PD_SEARCH_URL", config.http.search_url)
        config.http.disable_ssl_verify = _env_bool("PD_DISABLE_SSL_VERIFY", config.http.disable_ssl_verify)

        hf_token = os.getenv("HF_TOKEN") or os.getenv("HUGGINGFACE_HUB_TOKEN")
        if hf_token:
            config.huggingface.token = hf_token
        config.huggingface.endpoint = os.getenv("HF_ENDPOINT", config.huggingface.endpoint)
        config.huggingface.disable_ssl_verify = _env_bool(
            "HF_DISABLE_SSL_VERIFY", config.huggingface.disable_ssl_verify
        )

        config.log_level = os.getenv("LOG_LEVEL", config.log_level)

    def get_config(self) -> AppConfig:
        """Get the current configuration."""
        return self.config

    def update_from_cli_args(self, **kwargs):
        """Update configuration with CLI arguments."""
        for key, value in kwargs.items():
            if value is None:
                continue
            if key in ("root_dir", "workers", "source"):
                setattr(self.config.download, key, value)
            elif key == "search_url":
                self.config.http.search_url = value
            elif key in ("hf_token", "huggingface_token"):
                self.config.huggingface.token = value
            elif key == "disable_ssl_verify":
                self.config.http.disable_ssl_verify = value
                self.config.huggingface.disable_ssl_verify = value
            elif key == "log_level":
                self.config.log_level = value

    def create_sample_config(self, file_path: str):
        """Create a sample configuration file."""
        config = configparser.ConfigParser()

        config["download"] = {
            "root_dir": "./downloads",
            "workers": "5",
            "source": "http",
            "unit_delay": "1.0",
            "download_attempts": "3",
            "download_backoff": "2.0",
        }

        config["http"] = {
            "search_url": "# https://example.com/search.json",
            "query_param": "keys",
            "page_param": "page",
            "page_size": "10",
            "disable_ssl_verify": "# false",
        }

        config["huggingface"] = {
            "token": "# your_huggingface_token",
            "endpoint": "# https://huggingface.co (optional mirror)",
            "page_size": "10",
        }

        config["app"] = {
            "log_level": "INFO",
        }

        with open(file_path, 'w') as f:
            f.write("# Parallel Downloader Configuration\n")
            f.write("# Lines starting with # are comments\n")
            f.write("# Remove the # to uncomment settings\n\n")
            config.write(f)

        logger.info(f"Created sample config file: {file_path}")


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_file: Optional[str] = None) -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_file)
    return _config_manager


def get_config(config_file: Optional[str] = None) -> AppConfig:
    """Get the current configuration."""
    return get_config_manager(config_file).get_config()
