"""
Circuit Breaker pattern implementation for preventing cascade failures
"""
import asyncio
import time
from enum import Enum
from typing import Callable, Any, Optional, Tuple
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Circuit is open, failing fast
    HALF_OPEN = "HALF_OPEN"  # Trying to recover

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5  # Number of failures before opening
    reset_timeout: float = 60.0  # Seconds to wait before trying half-open
    success_threshold: int = 3   # Successes needed to close from half-open
    timeout: float = 10.0        # Operation timeout
    # Exceptions that carry a domain answer rather than a backend failure
    ignored_exceptions: Tuple[type, ...] = field(default_factory=tuple)

class CircuitBreakerException(Exception):
    """Raised when circuit breaker is open"""
    pass

class CircuitBreaker:
    """Circuit breaker implementation"""

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = time.time()

    def _should_attempt_reset(self) -> bool:
        """Check if we should try to reset the circuit"""
        return (self.state == CircuitState.OPEN and
                time.time() - self.last_failure_time >= self.config.reset_timeout)

    def _record_success(self):
        """Record a successful operation"""
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.last_state_change = time.time()
                logger.info(f"Circuit breaker {self.name} closed after successful recovery")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0  # Reset failure count on success

    def _record_failure(self):
        """Record a failed operation"""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self.state = CircuitState.OPEN
                self.last_state_change = time.time()
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
        elif self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.warning(f"Circuit breaker {self.name} re-opened during half-open state")

    async def call(
        self,
        func: Callable,
        *args,
        on_timeout: Optional[Callable[[asyncio.Future], None]] = None,
        **kwargs,
    ) -> Any:
        """Execute function with circuit breaker protection.

        Blocking functions run in the default executor. A timed-out worker
        thread cannot be interrupted; ``on_timeout`` receives the still
        running future so the caller can decide what happens to its result.
        """

        if self._should_attempt_reset():
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.info(f"Circuit breaker {self.name} entering half-open state")

        # Fail fast if circuit is open
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

        if asyncio.iscoroutinefunction(func):
            future = asyncio.ensure_future(func(*args, **kwargs))
        else:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(None, lambda: func(*args, **kwargs))

        try:
            result = await asyncio.wait_for(asyncio.shield(future), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            self._record_failure()
            logger.warning(f"Circuit breaker {self.name}: call timed out after {self.config.timeout}s")
            if on_timeout is not None:
                on_timeout(future)
            raise
        except self.config.ignored_exceptions:
            self._record_success()
            raise
        except Exception as e:
            self._record_failure()
            raise e

        self._record_success()
        return result

    def get_state(self) -> dict:
        """Get current circuit breaker state"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "uptime_since_last_change": time.time() - self.last_state_change
        }

def storage_breaker_config(timeout: float, ignored_exceptions: Tuple[type, ...] = ()) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=3,
        reset_timeout=30.0,
        success_threshold=2,
        timeout=timeout,
        ignored_exceptions=ignored_exceptions,
    )
