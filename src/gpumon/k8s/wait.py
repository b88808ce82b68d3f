"""Wait-for-ready logic for gpumon.

``wait_for_condition`` is the single retry primitive: it polls a check
function until it reports success, the optional deadline passes, or the
caller sets the cancel event. The sleep between attempts grows by
``backoff_factor`` and is capped at ``max_interval``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .client import K8sError


class WaitStatus(Enum):
    """Status of a wait operation."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class WaitResult:
    """Result of a wait operation."""

    status: WaitStatus
    message: str
    elapsed_seconds: float
    attempts: int

    @property
    def ready(self) -> bool:
        return self.status == WaitStatus.READY


class WaitError(K8sError):
    """Raised when a wait operation fails."""

    pass


class WaitTimeout(WaitError):
    """Raised when a wait operation times out."""

    pass


def next_interval(current: float, backoff_factor: float, max_interval: float) -> float:
    """Return the next sleep interval for capped exponential backoff."""
    return min(current * backoff_factor, max_interval)


def wait_for_condition(
    check_fn: Callable[[], tuple[bool, str]],
    timeout_seconds: float | None = 300,
    poll_interval: float = 5,
    description: str = "condition",
    max_interval: float | None = None,
    backoff_factor: float = 1.0,
    cancel: threading.Event | None = None,
) -> WaitResult:
    """Generic wait for a condition to be true.

    Args:
        check_fn: Function that returns (success, message)
        timeout_seconds: Maximum time to wait; None waits indefinitely
        poll_interval: Seconds before the first retry
        description: Description for messages
        max_interval: Upper bound on the retry interval (default: poll_interval)
        backoff_factor: Multiplier applied to the interval after each attempt
        cancel: Event that aborts the wait when set

    Returns:
        WaitResult with outcome
    """
    start_time = time.time()
    attempts = 0
    interval = poll_interval
    cap = max_interval if max_interval is not None else poll_interval
    message = ""

    while True:
        attempts += 1

        try:
            success, message = check_fn()
            if success:
                return WaitResult(
                    status=WaitStatus.READY,
                    message=message,
                    elapsed_seconds=time.time() - start_time,
                    attempts=attempts,
                )
        except Exception as e:
            message = str(e)

        elapsed = time.time() - start_time

        if cancel is not None and cancel.is_set():
            return WaitResult(
                status=WaitStatus.CANCELLED,
                message=f"Cancelled after {int(elapsed)}s waiting for {description}: {message}",
                elapsed_seconds=elapsed,
                attempts=attempts,
            )

        if timeout_seconds is not None and elapsed >= timeout_seconds:
            return WaitResult(
                status=WaitStatus.TIMEOUT,
                message=f"Timeout after {int(elapsed)}s waiting for {description}: {message}",
                elapsed_seconds=elapsed,
                attempts=attempts,
            )

        delay = interval
        if timeout_seconds is not None:
            delay = max(0.0, min(delay, timeout_seconds - elapsed))

        if cancel is not None:
            if cancel.wait(delay):
                return WaitResult(
                    status=WaitStatus.CANCELLED,
                    message=f"Cancelled while waiting for {description}: {message}",
                    elapsed_seconds=time.time() - start_time,
                    attempts=attempts,
                )
        else:
            time.sleep(delay)

        interval = next_interval(interval, backoff_factor, cap)
