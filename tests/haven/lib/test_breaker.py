"""
Tests for CircuitBreaker (haven/lib/circuit_breaker.py).

Tests cover the CLOSED -> OPEN -> HALF_OPEN -> CLOSED cycle, failure
counting and context manager usage.
"""

from __future__ import annotations

import pytest

from haven.lib.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from haven.lib.exceptions import ExternalServiceUnavailable


@pytest.mark.asyncio
async def test_initial_state():
    cb = CircuitBreaker(name="test")
    assert cb.state == CircuitState.CLOSED
    assert await cb.allow_request() is True


@pytest.mark.asyncio
async def test_opens_after_threshold():
    cb = CircuitBreaker(name="test", failure_threshold=2)
    await cb.record_failure()
    assert cb.state == CircuitState.CLOSED
    await cb.record_failure()
    assert cb.state == CircuitState.OPEN
    assert await cb.allow_request() is False
    assert cb.retry_after_seconds() > 0


@pytest.mark.asyncio
async def test_success_resets_failures():
    cb = CircuitBreaker(name="test", failure_threshold=3)
    await cb.record_failure()
    await cb.record_failure()
    await cb.record_success()
    assert cb.failure_count == 0


@pytest.mark.asyncio
async def test_half_open_after_recovery_timeout():
    cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.0)
    await cb.record_failure()
    assert cb.state == CircuitState.OPEN

    assert await cb.allow_request() is True
    assert cb.state == CircuitState.HALF_OPEN
    # Only one probe call
    assert await cb.allow_request() is False

    await cb.record_success()
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failed_probe_reopens():
    cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=0.0)
    await cb.record_failure()
    await cb.allow_request()
    await cb.record_failure()
    assert cb.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_context_manager_records_outcome():
    cb = CircuitBreaker(name="test", failure_threshold=1, recovery_timeout=60.0)

    async with cb:
        pass
    assert cb.state == CircuitState.CLOSED

    with pytest.raises(RuntimeError):
        async with cb:
            raise RuntimeError("boom")
    assert cb.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        async with cb:
            pass
    assert isinstance(exc_info.value, ExternalServiceUnavailable)
    assert exc_info.value.name == "test"


@pytest.mark.asyncio
async def test_reset():
    cb = CircuitBreaker(name="test", failure_threshold=1)
    await cb.record_failure()
    await cb.reset()
    assert cb.state == CircuitState.CLOSED
    assert cb.failure_count == 0
