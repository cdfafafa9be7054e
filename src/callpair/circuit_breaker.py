"""Circuit breaker shared by the outbound dialers.

After repeated failures the provider is skipped for a cooldown so a dead
telephony API fails a callback fast instead of stacking timeouts.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreaker:
    """closed -> open (after N consecutive failures) -> half-open (after cooldown)."""

    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    label: str = "service"
    clock: Callable[[], float] = time.monotonic

    _consecutive_failures: int = field(default=0, init=False, repr=False)
    _opened_at: Optional[float] = field(default=None, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return not self.should_try()

    def should_try(self) -> bool:
        if self._consecutive_failures < self.failure_threshold:
            return True
        # Half-open: let one probe through once the cooldown has elapsed.
        return self._opened_at is not None and (self.clock() - self._opened_at) >= self.cooldown_seconds

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker CLOSED for %s", self.label)
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return
        if self._opened_at is None:
            logger.warning(
                "Circuit breaker OPENED for %s after %d consecutive failures, skipping for %.0fs",
                self.label,
                self._consecutive_failures,
                self.cooldown_seconds,
            )
        # A failed half-open probe restarts the cooldown.
        self._opened_at = self.clock()
