"""Circuit breaker guarding calls to the hosted backend."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Backend considered down, calls fail fast
    HALF_OPEN = "half_open"  # Next call tests for recovery


class CircuitBreakerError(Exception):
    """Raised instead of calling the backend while the circuit is open."""

    pass


class CircuitBreaker:
    """Fail fast while the backend keeps failing.

    After ``failure_threshold`` consecutive transport failures the circuit
    opens and every call is rejected until ``recovery_timeout`` seconds have
    passed. The first call after that is let through as a trial call: success
    closes the circuit, failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        expected_exception: type[Exception] | tuple[type[Exception], ...] = (
            httpx.TransportError,
            asyncio.TimeoutError,
        ),
        name: str = "backend",
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_until: datetime | None = None
        self._rejected_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` unless the circuit is open.

        Raises:
            CircuitBreakerError: When the circuit is open
            Any exception raised by ``func``
        """
        async with self._lock:
            if not self._allow_request():
                self._rejected_calls += 1
                raise CircuitBreakerError(
                    f"Circuit breaker '{self.name}' is open "
                    f"(failures: {self._failure_count}/{self.failure_threshold})"
                )

        try:
            result = await func()
        except self.expected_exception as e:
            async with self._lock:
                self._record_failure(e)
            raise

        async with self._lock:
            self._record_success()
        return result

    def _allow_request(self) -> bool:
        if self._state != CircuitState.OPEN:
            return True
        if self._opened_until and datetime.now(UTC) >= self._opened_until:
            logger.info(f"Circuit breaker '{self.name}' probing backend recovery")
            self._state = CircuitState.HALF_OPEN
            return True
        return False

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.name}' recovered, closing circuit")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_until = None

    def _record_failure(self, exception: Exception) -> None:
        self._failure_count += 1
        logger.warning(
            f"Circuit breaker '{self.name}' recorded failure "
            f"({self._failure_count}/{self.failure_threshold}): {exception}"
        )
        if (
            self._state == CircuitState.HALF_OPEN
            or self._failure_count >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_until = datetime.now(UTC) + timedelta(seconds=self.recovery_timeout)
            logger.error(
                f"Circuit breaker '{self.name}' opened until {self._opened_until.isoformat()}"
            )

    def reset(self) -> None:
        """Manually close the circuit."""
        logger.info(f"Circuit breaker '{self.name}' manually reset")
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_until = None

    def get_statistics(self) -> dict[str, Any]:
        """Current state and counters."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "rejected_calls": self._rejected_calls,
            "opened_until": self._opened_until.isoformat() if self._opened_until else None,
        }
