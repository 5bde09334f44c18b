"""SSL configuration for bypassing certificate verification."""

import requests
import urllib3
from loguru import logger


def configure_requests_ssl_bypass(session: requests.Session) -> requests.Session:
    """Disable certificate verification (and its warnings) for a requests session."""
    session.verify = False
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    logger.info("SSL certificate verification disabled for direct HTTP requests")
    return session


def build_session(user_agent: str, disable_ssl_verify: bool = False) -> requests.Session:
    """Create a requests session with the downloader's defaults."""
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    if disable_ssl_verify:
        configure_requests_ssl_bypass(session)
    return session
