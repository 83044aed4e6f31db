"""
Circuit breaker for the text-generation endpoint.

A failing or slow language-model API should not add a full HTTP timeout to
every insight run. After `failure_threshold` consecutive failures the
circuit opens and calls are rejected immediately until `recovery_timeout`
has passed; then one probe call is let through (HALF_OPEN).

States:
- CLOSED: calls pass through
- OPEN: calls rejected with CircuitOpenError
- HALF_OPEN: a limited number of probe calls allowed

Usage:
    breaker = CircuitBreaker(name="text_generation")
    async with breaker:
        response = await client.post(...)
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import StrEnum
from typing import Any

from haven.lib.exceptions import ExternalServiceUnavailable

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ExternalServiceUnavailable):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open. Retry after {retry_after:.1f}s.")


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker, guarded by an asyncio.Lock.

    Args:
        name: Identifier for the protected service (used in logging)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds in OPEN before a probe is allowed
        half_open_max_calls: Probe calls allowed in HALF_OPEN
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        logger.info(
            "circuit_state_changed",
            extra={"circuit": self.name, "from": self._state.value, "to": new_state.value},
        )
        self._state = new_state

    def retry_after_seconds(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    async def allow_request(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self.retry_after_seconds() > 0:
                    return False
                self._transition_to(CircuitState.HALF_OPEN)
                self._half_open_calls = 0
            # HALF_OPEN
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._half_open_calls = 0
            self._transition_to(CircuitState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.failure_threshold
            ):
                self._opened_at = time.monotonic()
                self._half_open_calls = 0
                self._transition_to(CircuitState.OPEN)

    async def reset(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._half_open_calls = 0
            self._opened_at = 0.0
            self._transition_to(CircuitState.CLOSED)

    async def __aenter__(self) -> CircuitBreaker:
        if not await self.allow_request():
            raise CircuitOpenError(self.name, self.retry_after_seconds())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is None:
            await self.record_success()
        else:
            await self.record_failure()


__all__ = ["CircuitBreaker", "CircuitOpenError", "CircuitState"]
