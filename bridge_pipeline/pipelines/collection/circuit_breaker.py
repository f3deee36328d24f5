"""Per-host circuit breaking for collection requests."""

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from ...core.config import settings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops sending requests to a host that keeps failing.

    After ``failure_threshold`` consecutive failures the circuit opens and
    requests are rejected without touching the network. Once
    ``reset_timeout`` seconds have passed, requests are let through again as
    trials: a success closes the circuit, a failure opens it for another
    ``reset_timeout``.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if reset_timeout < 0:
            raise ValueError("reset_timeout must not be negative")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None

    def allow_request(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if self.retry_after() > 0:
            return False
        self.state = CircuitState.HALF_OPEN
        logger.info(f"Circuit for {self.name} half-open, allowing trial requests")
        return True

    def retry_after(self) -> float:
        """Seconds until an open circuit lets a trial request through."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self.clock() - self.opened_at))

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info(f"Circuit for {self.name} closed")
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if (
            self.state == CircuitState.HALF_OPEN
            or self.consecutive_failures >= self.failure_threshold
        ):
            if self.state != CircuitState.OPEN:
                logger.warning(
                    f"Circuit for {self.name} opened after "
                    f"{self.consecutive_failures} consecutive failures"
                )
            self.state = CircuitState.OPEN
            self.opened_at = self.clock()


class HostCircuitBreakers:
    """One circuit breaker per host, created on first use."""

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = (
            failure_threshold or settings.collection_circuit_failure_threshold
        )
        self.reset_timeout = (
            settings.collection_circuit_reset_timeout if reset_timeout is None else reset_timeout
        )
        self.clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def for_url(self, url: str) -> CircuitBreaker:
        host = (urlparse(url).hostname or url).lower()
        if host not in self._breakers:
            self._breakers[host] = CircuitBreaker(
                host,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self.clock,
            )
        return self._breakers[host]

    def states(self) -> Dict[str, str]:
        return {host: breaker.state.value for host, breaker in self._breakers.items()}
