import logging
import threading
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitOpenError(RuntimeError):
    pass


class CircuitBreaker:
    """
    Consecutive-failure breaker.

    closed    -> calls pass through; `failure_threshold` failures in a row open it
    open      -> calls fail fast with CircuitOpenError until `reset_timeout` passes
    half-open -> one trial call at a time; success closes, failure re-opens
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state()

    def _state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._clock() - self._opened_at >= self.reset_timeout:
            return "half-open"
        return "open"

    def call(self, func: Callable[[], T]) -> T:
        with self._lock:
            state = self._state()
            if state == "open" or (state == "half-open" and self._trial_in_flight):
                raise CircuitOpenError(f"circuit '{self.name}' is open")
            if state == "half-open":
                self._trial_in_flight = True

        try:
            result = func()
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._opened_at is not None or self._failures >= self.failure_threshold:
                if self._opened_at is None:
                    logger.warning(
                        f" ⚡ [Breaker] '{self.name}' opened after {self._failures} failures"
                    )
                self._opened_at = self._clock()

    def _record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                logger.info(f" ✅ [Breaker] '{self.name}' closed")
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False
