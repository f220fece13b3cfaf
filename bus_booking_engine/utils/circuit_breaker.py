"""
Circuit breakers for payment gateway calls.

Each gateway code gets one breaker shared by payment initiation and refund
calls. After ``failure_threshold`` consecutive failures the circuit opens
and calls fail fast with GatewayUnavailableError until ``recovery_timeout``
has passed; the next call then tries the gateway again (half-open) and either
closes the circuit or reopens it.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass, field

import httpx

from ..utils.exceptions import GatewayError, GatewayTimeoutError, GatewayUnavailableError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class GatewayBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: int = 60
    timeout: float = 10.0


@dataclass
class GatewayCallStats:
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    total_calls: int = 0
    total_failures: int = 0
    total_timeouts: int = 0
    rejected_calls: int = 0
    transitions: Dict[str, int] = field(default_factory=dict)


class GatewayCircuitBreaker:
    """Failure accounting and fail-fast for one payment gateway."""

    def __init__(self, gateway_code: str, config: GatewayBreakerConfig):
        self.gateway_code = gateway_code
        self.config = config
        self.state = CircuitState.CLOSED
        self.stats = GatewayCallStats()
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run a gateway call under the configured timeout.

        GatewayError raised by the adapter is counted and re-raised; httpx
        transport errors become GatewayError; timeouts become
        GatewayTimeoutError.
        """
        async with self._lock:
            self.stats.total_calls += 1
            if self.state == CircuitState.OPEN:
                if self._seconds_open() < self.config.recovery_timeout:
                    self.stats.rejected_calls += 1
                    raise GatewayUnavailableError(self.gateway_code, retry_after=self._retry_after())
                self._transition(CircuitState.HALF_OPEN)

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            await self._on_failure(timed_out=True)
            raise GatewayTimeoutError(self.gateway_code, self.config.timeout)
        except GatewayError:
            await self._on_failure()
            raise
        except httpx.HTTPError as e:
            await self._on_failure()
            raise GatewayError(
                self.gateway_code,
                f"Gateway request failed: {e}",
                details={"gateway": self.gateway_code, "error_type": type(e).__name__}
            ) from e

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self.stats.consecutive_failures = 0
            if self.state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
                logger.info(f"Gateway {self.gateway_code} recovered, circuit closed")

    async def _on_failure(self, timed_out: bool = False):
        async with self._lock:
            self.stats.consecutive_failures += 1
            self.stats.total_failures += 1
            if timed_out:
                self.stats.total_timeouts += 1

            logger.warning(
                f"Gateway {self.gateway_code} call failed "
                f"({self.stats.consecutive_failures}/{self.config.failure_threshold})"
            )

            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED
                and self.stats.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)
                self.stats.opened_at = time.monotonic()
                logger.error(
                    f"Gateway {self.gateway_code} circuit opened for {self.config.recovery_timeout}s"
                )

    def _transition(self, new_state: CircuitState):
        key = f"{self.state.value}_to_{new_state.value}"
        self.stats.transitions[key] = self.stats.transitions.get(key, 0) + 1
        self.state = new_state

    def _seconds_open(self) -> float:
        if self.stats.opened_at is None:
            return float(self.config.recovery_timeout)
        return time.monotonic() - self.stats.opened_at

    def _retry_after(self) -> int:
        return max(1, int(self.config.recovery_timeout - self._seconds_open()))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "gateway": self.gateway_code,
            "state": self.state.value,
            "consecutive_failures": self.stats.consecutive_failures,
            "total_calls": self.stats.total_calls,
            "total_failures": self.stats.total_failures,
            "total_timeouts": self.stats.total_timeouts,
            "rejected_calls": self.stats.rejected_calls,
            "transitions": dict(self.stats.transitions),
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "timeout": self.config.timeout,
            },
        }


_breakers: Dict[str, GatewayCircuitBreaker] = {}


def get_gateway_circuit_breaker(
    gateway_code: str,
    timeout: float = 10.0,
    failure_threshold: int = 5,
    recovery_timeout: int = 60,
) -> GatewayCircuitBreaker:
    """Breaker for a gateway code; the configuration of the first call sticks."""
    if gateway_code not in _breakers:
        _breakers[gateway_code] = GatewayCircuitBreaker(
            gateway_code,
            GatewayBreakerConfig(
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                timeout=timeout,
            ),
        )
    return _breakers[gateway_code]


def circuit_breaker_stats() -> Dict[str, Dict[str, Any]]:
    return {code: breaker.get_stats() for code, breaker in _breakers.items()}


def reset_circuit_breakers():
    """Drop every breaker so the next call starts closed."""
    _breakers.clear()
