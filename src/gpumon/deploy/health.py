"""HTTP health polling for the monitoring services.

A target is healthy when a GET (following redirects) returns a body that
contains its marker string. The stack is healthy only when every target
passes within the same iteration; earlier successes are not remembered.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from gpumon.config import PollingConfig
from gpumon.k8s import WaitResult, WaitTimeout, wait_for_condition

logger = logging.getLogger(__name__)


class PollTimeout(WaitTimeout):
    """Raised when the services are not healthy by the deadline or on cancel."""

    def __init__(self, message: str, result: WaitResult | None = None):
        super().__init__(message)
        self.result = result


@dataclass(frozen=True)
class PollTarget:
    """A URL and the text its response body must contain."""

    url: str
    expected_marker: str


def check_target(client: httpx.Client, target: PollTarget) -> tuple[bool, str]:
    """Probe a single target. Transport errors count as unhealthy."""
    try:
        response = client.get(target.url)
    except httpx.HTTPError as e:
        return False, f"{target.url}: {type(e).__name__}"
    if target.expected_marker in response.text:
        return True, f"{target.url}: ok"
    return False, f"{target.url}: HTTP {response.status_code}, '{target.expected_marker}' not in body"


class HealthPoller:
    """Polls targets until all of them are healthy at once."""

    def __init__(
        self,
        polling: PollingConfig,
        client_factory: Callable[[], httpx.Client] | None = None,
    ):
        self.polling = polling
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.Client:
        return httpx.Client(follow_redirects=True, timeout=self.polling.request_timeout_seconds)

    def poll_until_healthy(
        self,
        targets: list[PollTarget],
        cancel: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> WaitResult:
        """Poll until every target is healthy in one pass.

        Args:
            targets: URLs to check
            cancel: Event that stops polling when set
            timeout_seconds: Deadline override; falls back to the polling config

        Returns:
            WaitResult (READY, TIMEOUT or CANCELLED)
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.polling.timeout_seconds

        with self._client_factory() as client:

            def check() -> tuple[bool, str]:
                failures = []
                for target in targets:
                    ok, message = check_target(client, target)
                    if not ok:
                        failures.append(message)
                if failures:
                    logger.info("Waiting for services: %s", "; ".join(failures))
                    return False, "; ".join(failures)
                return True, f"{len(targets)} service(s) healthy"

            return wait_for_condition(
                check,
                timeout_seconds=timeout,
                poll_interval=self.polling.interval_seconds,
                description="monitoring services",
                max_interval=self.polling.max_interval_seconds,
                backoff_factor=self.polling.backoff_factor,
                cancel=cancel,
            )
