"""
Capped exponential backoff for upstream HTTP calls.

Retries only on a fixed set of transient statuses (429/502/503/529). Any other
failure propagates on the first attempt. Retry-After is honored when the error
carries a response with that header.
"""

import logging
import random
import time
from typing import Any, Callable, Iterable, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 529})
MAX_RETRIES = 5
BASE_DELAY_SECONDS = 1.5
MAX_DELAY_SECONDS = 30.0


def status_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception (SDK errors and requests.HTTPError)."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def retry_after_of(exc: BaseException) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return None


def backoff_delay(attempt: int, retry_after: Optional[float] = None,
                  base_delay: float = BASE_DELAY_SECONDS,
                  max_delay: float = MAX_DELAY_SECONDS,
                  rand: Callable[[], float] = random.random) -> float:
    """
    Delay before retry number `attempt` (0-based).

    base * 2**attempt, raised to Retry-After, capped, then 0-25% jitter on top.
    """
    delay = base_delay * (2 ** attempt)
    if retry_after is not None:
        delay = max(delay, retry_after)
    delay = min(delay, max_delay)
    return delay + delay * 0.25 * rand()


def call_with_retry(
    func: Callable[[], T],
    *,
    label: str = "request",
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY_SECONDS,
    retry_on: Iterable[int] = RETRYABLE_STATUS_CODES,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Call func, retrying transient HTTP failures.

    Args:
        func: Zero-argument callable performing one attempt
        label: Name used in log lines
        max_retries: Retries after the first attempt
        base_delay: Seconds for the first backoff step
        retry_on: Statuses considered transient
        sleep: Injected for tests

    Returns:
        Whatever func returns on its first successful attempt

    Raises:
        The last exception once retries are exhausted, or any non-retryable
        exception immediately
    """
    retry_on = frozenset(retry_on)
    attempt = 0
    while True:
        try:
            return func()
        except Exception as e:
            status = status_of(e)
            if status not in retry_on or attempt >= max_retries:
                if status in retry_on:
                    logger.error(f"All {max_retries} retries exhausted for {label} ({status})")
                raise
            delay = backoff_delay(attempt, retry_after_of(e), base_delay=base_delay)
            logger.warning(
                f"{label} returned {status}, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{max_retries})"
            )
            sleep(delay)
            attempt += 1


def get_json_with_retry(url: str, *, timeout: float = 5.0, params: Optional[dict] = None,
                        session: Optional[requests.Session] = None,
                        sleep: Callable[[float], Any] = time.sleep, **kwargs: Any) -> Any:
    """GET a JSON document through call_with_retry."""
    http = session or requests

    def _attempt():
        response = http.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        return response.json()

    return call_with_retry(_attempt, label=url, sleep=sleep, **kwargs)
