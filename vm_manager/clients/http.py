import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-ms-request-id"


class RetryPolicy:
    def __init__(self, attempts: int = 1, sleep_sec: float = 0):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
        request_id: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        self.request_id = request_id
        super().__init__(
            f"provider request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    retry: RetryPolicy,
    *,
    allowed_statuses: frozenset[int] = frozenset(),
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transport errors and 5xx responses.

    4xx responses are not retried. Statuses listed in ``allowed_statuses``
    are returned to the caller instead of raising.
    """
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    request_id: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempts = 0
    for attempt in range(1, retry.attempts + 1):
        attempts = attempt
        try:
            response = client.request(method, url, **kwargs)
            if response.status_code in allowed_statuses:
                return response
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            request_id = exc.response.headers.get(REQUEST_ID_HEADER)
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
            if status_code < 500:
                break
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            logger.warning(
                "provider request retry method=%s url=%s attempt=%s detail=%s",
                method,
                url,
                attempt,
                detail,
            )
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
        request_id=request_id,
    ) from error
