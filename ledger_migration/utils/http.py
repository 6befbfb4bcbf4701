"""HTTP sessions with retry and backoff mounted on the transport adapter."""

from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

TRANSIENT_STATUS_CODES = [429, 500, 502, 503, 504]


def build_retry(retry_config: Optional[Dict[str, Any]] = None) -> Retry:
    """
    Retry policy for idempotent reads.

    Connection errors, read timeouts and the transient status codes are
    retried with exponential backoff. Once the retries are spent the last
    response is returned instead of raised so the caller can classify it;
    any other status is returned on the first attempt.
    """
    retry_config = retry_config or {}
    max_retries = int(retry_config.get("max_retries", 3))

    return Retry(
        total=max_retries,
        connect=max_retries,
        read=max_retries,
        status=max_retries,
        backoff_factor=float(retry_config.get("backoff_factor", 2.0)),
        backoff_max=float(retry_config.get("max_backoff", 30.0)),
        status_forcelist=TRANSIENT_STATUS_CODES,
        allowed_methods=frozenset(["GET", "HEAD"]),
        raise_on_status=False,
    )


def create_session(retry_config: Optional[Dict[str, Any]] = None, pool_size: int = 10) -> requests.Session:
    """Create a requests session with retry logic."""
    session = requests.Session()

    adapter = HTTPAdapter(
        max_retries=build_retry(retry_config),
        pool_connections=pool_size,
        pool_maxsize=pool_size,
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session
