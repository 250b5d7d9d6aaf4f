# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - HTTP TRANSPORT
# =============================================================================
"""
HTTP Session

Shared requests session factory for remote log delivery and webhook
notification channels.
"""

from __future__ import annotations

from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


USER_AGENT = "pipewatch/1.0"


def create_session(
    retry_count: int = 3,
    backoff_factor: float = 0.5,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Session:
    """Create configured HTTP session with retry logic."""
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    if headers:
        session.headers.update(headers)

    retry_strategy = Retry(
        total=retry_count,
        backoff_factor=backoff_factor,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET", "POST", "PUT"],
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


__all__ = ["USER_AGENT", "create_session"]
