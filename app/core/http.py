from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_none

from app.core.config import Settings, get_settings


class RetryableAuthFailure(Exception):
    """Raised inside an attempt when the access token was rejected and a fresh one is now on file."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Retryable authentication failure: {cause}")


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        value = float(header)
        return max(value, 0.0)
    except ValueError:
        try:
            retry_time = datetime.strptime(header, "%a, %d %b %Y %H:%M:%S %Z").replace(tzinfo=timezone.utc)
            delta = (retry_time - datetime.now(timezone.utc)).total_seconds()
            return max(delta, 0.0)
        except ValueError:
            return None


def get_async_client(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    settings = settings or get_settings()
    timeout = httpx.Timeout(settings.http_timeout_seconds)
    return httpx.AsyncClient(timeout=timeout, transport=transport)


def retry_once_on_auth_failure() -> AsyncRetrying:
    # Only the auth-failure marker is retried; network errors, 429 and 5xx propagate untouched.
    return AsyncRetrying(
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(RetryableAuthFailure),
        wait=wait_none(),
        reraise=True,
    )
