"""
HTTP transport layer for the classmate client with retry logic.

- Exponential backoff on timeouts, network failures, 5xx and `try_again`
- 4xx answers (other than `try_again`) are raised at once as ApiError
- Every server operation is idempotent or safely retryable, so a retried
  request never double-admits a participant
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from .errors import ApiError, RetryExhausted

logger = logging.getLogger(__name__)


def _api_error(response: httpx.Response) -> ApiError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    # FastAPI wraps HTTPException bodies in "detail"
    detail = body.get("detail", body)
    if not isinstance(detail, dict):
        detail = {"message": str(detail)}
    return ApiError(
        detail.get("message") or f"HTTP {response.status_code}",
        status_code=response.status_code,
        code=detail.get("code"),
        details=detail.get("details"),
    )


def request_with_retry(
    http_client: httpx.Client,
    method: str,
    path: str,
    max_retries: int = 5,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Send one API request with exponential backoff.

    Args:
        http_client: HTTP client instance (base_url already set)
        method: HTTP method
        path: Request path
        max_retries: Maximum attempts
        min_wait: Minimum wait between retries (seconds)
        max_wait: Maximum wait between retries (seconds)
        sleep: Wait function (injectable for tests)
        **kwargs: Passed to httpx (json=, params=)

    Returns:
        Decoded JSON body

    Raises:
        ApiError: Non-retryable error answer (400, 404, 409 full session)
        RetryExhausted: After all retries are exhausted
    """
    attempt = 0
    last_error = None
    error_class = "UNKNOWN_ERROR"

    while attempt < max_retries:
        try:
            response = http_client.request(method, path, **kwargs)
            if response.is_success:
                return response.json()

            error = _api_error(response)
            if not error.retryable:
                raise error
            error_class = "SERVER_ERROR" if response.status_code >= 500 else "TRY_AGAIN"
            last_error = f"HTTP {response.status_code}: {error.message}"

        except httpx.TimeoutException as e:
            error_class = "TIMEOUT"
            last_error = str(e)

        except httpx.NetworkError as e:
            error_class = "NETWORK_FAILURE"
            last_error = str(e)

        # Exponential backoff
        attempt += 1
        if attempt < max_retries:
            wait_time = min(min_wait * (2 ** attempt), max_wait)
            logger.warning(
                "Retry %d/%d of %s %s after %.1fs (%s)",
                attempt,
                max_retries,
                method,
                path,
                wait_time,
                error_class,
            )
            sleep(wait_time)

    # All retries exhausted
    raise RetryExhausted(
        f"Failed after {max_retries} attempts. Last error: {error_class} - {last_error}",
        error_class=error_class,
        attempts=attempt,
        last_error=last_error,
    )
