from __future__ import annotations

from collections.abc import Callable
import logging
import time

from refinery.models import RefineryError
from refinery.observability import log_event
from refinery.shell import describe_error


LOGGER = logging.getLogger("refinery.retry")


class PushRetryError(RefineryError):
    def __init__(self, retry_count: int, last_error: BaseException) -> None:
        super().__init__(
            f"push failed after {retry_count} retries: {describe_error(last_error)}"
        )
        self.retry_count = retry_count
        self.last_error = last_error


def push_with_retry(
    push: Callable[[], None],
    *,
    retry_count: int,
    retry_delay_ms: int,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Run ``push`` up to ``retry_count + 1`` times with doubling delays.

    The first attempt runs immediately. Each retry first sleeps for the
    current delay (starting at ``retry_delay_ms``) and then doubles it, so
    three retries from 1000ms wait 1s, 2s and 4s.
    """
    delay_ms = retry_delay_ms
    last_error: Exception | None = None
    for attempt in range(retry_count + 1):
        if attempt > 0:
            log_event(
                LOGGER,
                "push_retry_scheduled",
                attempt=attempt,
                retry_count=retry_count,
                delay_ms=delay_ms,
            )
            sleep(delay_ms / 1000.0)
            delay_ms *= 2
        try:
            push()
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            continue
        return

    assert last_error is not None
    raise PushRetryError(retry_count, last_error) from last_error
