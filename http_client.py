import logging
import time
from typing import Optional

import httpx

from errors import UpstreamError

logger = logging.getLogger(__name__)


class RetryingHTTPClient:
    """Pooled HTTP client with exponential-backoff retries on transport errors."""

    def __init__(self, timeout: float = 10.0, retries: int = 3, backoff: float = 0.5,
                 client: Optional[httpx.Client] = None):
        self.retries = max(1, retries)
        self.backoff = backoff
        if client is not None:
            self._client = client
        else:
            limits = httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0
            )
            self._client = httpx.Client(
                limits=limits,
                timeout=httpx.Timeout(timeout, connect=5.0),
                follow_redirects=True
            )

    def get(self, url: str, **kwargs) -> httpx.Response:
        """GET with retries. Raises UpstreamError once every attempt has failed."""
        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                return self._client.get(url, **kwargs)
            except httpx.RequestError as e:
                last_error = e
                if attempt < self.retries - 1:
                    wait_time = self.backoff * (2 ** attempt)
                    logger.warning(f"Request to {url} failed ({e}); retrying in {wait_time:.2f}s")
                    time.sleep(wait_time)
        logger.error(f"Request to {url} failed after {self.retries} attempts: {last_error}")
        raise UpstreamError(f"Bibliographic service unreachable: {last_error}")

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
