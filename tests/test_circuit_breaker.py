"""
Circuit Breaker Test Suite
==========================

Tests for tripping, rejection, half-open probing and the registry.

Run with: uv run pytest tests/test_circuit_breaker.py -v
"""

import asyncio

import pytest
from pydantic import ValidationError

from govchat.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitEventType,
    CircuitState,
)
from govchat.resilience.errors import CircuitOpenError, CircuitTimeoutError


def make_breaker(**overrides) -> CircuitBreaker:
    values = dict(
        name="dependency",
        timeout_sec=1.0,
        error_threshold_percent=50,
        reset_timeout_sec=0.2,
        volume_threshold=3,
        rolling_window_sec=10.0,
    )
    values.update(overrides)
    return CircuitBreaker(CircuitBreakerConfig(**values))


class Dependency:
    """Counts invocations; fails while `failing` is set."""

    def __init__(self, failing: bool = True):
        self.failing = failing
        self.calls = 0

    async def __call__(self, value: str = "ok"):
        self.calls += 1
        if self.failing:
            raise ConnectionError("dependency down")
        return value


async def fail_times(breaker: CircuitBreaker, dependency: Dependency, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ConnectionError):
            await breaker.call(dependency)


class TestCircuitBreakerConfig:
    """Test config validation"""

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            CircuitBreakerConfig(name="x", error_threshold_percent=0)
        with pytest.raises(ValidationError):
            CircuitBreakerConfig(name="x", error_threshold_percent=101)

    def test_volume_threshold_minimum(self):
        with pytest.raises(ValidationError):
            CircuitBreakerConfig(name="x", volume_threshold=0)


class TestCircuitBreakerTripping:
    """Test when the breaker opens"""

    @pytest.mark.asyncio
    async def test_stays_closed_below_volume(self):
        """Failures below the volume threshold never open the circuit"""
        breaker = make_breaker(volume_threshold=5)
        dependency = Dependency()

        await fail_times(breaker, dependency, 4)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failures == 4
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_opens_at_volume_and_threshold(self):
        breaker = make_breaker(volume_threshold=3)
        dependency = Dependency()

        await fail_times(breaker, dependency, 3)

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.opened_at is not None
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_stays_closed_below_error_rate(self):
        """1 failure in 4 calls is 25%, below a 50% threshold"""
        breaker = make_breaker(volume_threshold=4)
        dependency = Dependency(failing=False)

        for _ in range(3):
            await breaker.call(dependency)
        dependency.failing = True
        await fail_times(breaker, dependency, 1)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.error_rate() == 25.0
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_ratio_exactly_at_threshold_opens(self):
        breaker = make_breaker(volume_threshold=4)
        dependency = Dependency(failing=False)

        for _ in range(2):
            await breaker.call(dependency)
        dependency.failing = True
        await fail_times(breaker, dependency, 2)

        assert breaker.state == CircuitState.OPEN
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        breaker = make_breaker(timeout_sec=0.05, volume_threshold=1)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CircuitTimeoutError):
            await breaker.call(slow)

        assert breaker.stats.timeouts == 1
        assert breaker.stats.failures == 1
        assert breaker.state == CircuitState.OPEN
        breaker.shutdown()


class TestCircuitBreakerOpen:
    """Test behavior while open"""

    @pytest.mark.asyncio
    async def test_open_never_invokes_operation(self):
        breaker = make_breaker(reset_timeout_sec=30)
        dependency = Dependency()
        await fail_times(breaker, dependency, 3)
        calls_when_opened = dependency.calls

        for _ in range(5):
            with pytest.raises(CircuitOpenError):
                await breaker.call(dependency)

        assert dependency.calls == calls_when_opened
        assert breaker.stats.rejects == 5
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_half_open_admits_single_probe(self):
        breaker = make_breaker(reset_timeout_sec=0.1)
        dependency = Dependency()
        await fail_times(breaker, dependency, 3)

        await asyncio.sleep(0.15)
        assert breaker.state == CircuitState.HALF_OPEN

        gate = asyncio.Event()
        probe_calls = 0

        async def slow_probe():
            nonlocal probe_calls
            probe_calls += 1
            await gate.wait()
            return "recovered"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0.01)

        # A concurrent call while the probe is in flight is rejected
        with pytest.raises(CircuitOpenError):
            await breaker.call(slow_probe)

        gate.set()
        assert await probe == "recovered"
        assert probe_calls == 1
        assert breaker.state == CircuitState.CLOSED
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = make_breaker(reset_timeout_sec=0.1)
        dependency = Dependency()
        await fail_times(breaker, dependency, 3)
        await asyncio.sleep(0.15)

        await fail_times(breaker, dependency, 1)

        assert breaker.state == CircuitState.OPEN
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_late_success_does_not_decide_half_open(self):
        """A call admitted while closed that finishes during half-open is only counted"""
        breaker = make_breaker(volume_threshold=2, reset_timeout_sec=0.1)
        dependency = Dependency()
        straggler_gate = asyncio.Event()
        trial_gate = asyncio.Event()

        async def straggler():
            await straggler_gate.wait()
            return "late"

        async def trial():
            await trial_gate.wait()
            return "trial"

        late = asyncio.create_task(breaker.call(straggler))
        await asyncio.sleep(0.01)
        await fail_times(breaker, dependency, 2)
        assert breaker.state == CircuitState.OPEN

        await asyncio.sleep(0.15)
        in_flight = asyncio.create_task(breaker.call(trial))
        await asyncio.sleep(0.01)

        straggler_gate.set()
        assert await late == "late"
        assert breaker.state == CircuitState.HALF_OPEN

        # The trial slot is still taken
        with pytest.raises(CircuitOpenError):
            await breaker.call(dependency)

        trial_gate.set()
        assert await in_flight == "trial"
        assert breaker.state == CircuitState.CLOSED
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_late_failure_does_not_reopen_half_open(self):
        breaker = make_breaker(volume_threshold=2, reset_timeout_sec=0.1)
        dependency = Dependency()
        straggler_gate = asyncio.Event()

        async def straggler():
            await straggler_gate.wait()
            raise ConnectionError("late failure")

        late = asyncio.create_task(breaker.call(straggler))
        await asyncio.sleep(0.01)
        await fail_times(breaker, dependency, 2)

        await asyncio.sleep(0.15)
        assert breaker.state == CircuitState.HALF_OPEN

        straggler_gate.set()
        with pytest.raises(ConnectionError):
            await late

        assert breaker.state == CircuitState.HALF_OPEN
        dependency.failing = False
        assert await breaker.call(dependency) == "ok"
        assert breaker.state == CircuitState.CLOSED
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_recovery_scenario(self):
        """{volume 3, threshold 50, reset 1s}: three failures open, a success after reset closes"""
        breaker = make_breaker(volume_threshold=3, error_threshold_percent=50, reset_timeout_sec=1.0)
        dependency = Dependency()

        await fail_times(breaker, dependency, 3)
        assert breaker.state == CircuitState.OPEN

        await asyncio.sleep(1.05)
        dependency.failing = False
        successes_before = breaker.stats.successes

        assert await breaker.call(dependency, "back") == "back"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.successes == successes_before + 1
        breaker.shutdown()

    @pytest.mark.asyncio
    async def test_lazy_half_open_without_timer(self):
        """Reset timeout is honored even if the timer never fired"""
        breaker = make_breaker(reset_timeout_sec=0.05)
        dependency = Dependency()
        await fail_times(breaker, dependency, 3)
        breaker.shutdown()  # cancels the timer

        await asyncio.sleep(0.08)
        dependency.failing = False

        assert await breaker.call(dependency) == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestCircuitBreakerApi:
    """Test fire, sync functions, events and manual control"""

    @pytest.mark.asyncio
    async def test_fire_uses_bound_action(self):
        dependency = Dependency(failing=False)
        breaker = CircuitBreaker(CircuitBreakerConfig(name="bound"), action=dependency)

        assert await breaker.fire("value") == "value"
        assert breaker.stats.fires == 1

    @pytest.mark.asyncio
    async def test_fire_without_action_raises(self):
        breaker = make_breaker()

        with pytest.raises(RuntimeError):
            await breaker.fire()

    @pytest.mark.asyncio
    async def test_sync_function(self):
        breaker = make_breaker()

        assert await breaker.call(lambda x: x * 2, 21) == 42

    @pytest.mark.asyncio
    async def test_events_delivered_and_listener_errors_contained(self):
        breaker = make_breaker()
        events = []

        def broken(event):
            raise RuntimeError("bad listener")

        breaker.add_listener(broken)
        breaker.add_listener(lambda e: events.append(e.type))

        await fail_times(breaker, Dependency(), 3)
        with pytest.raises(CircuitOpenError):
            await breaker.call(Dependency())

        assert events.count(CircuitEventType.FAILURE) == 3
        assert CircuitEventType.OPEN in events
        assert events[-1] == CircuitEventType.REJECT
        breaker.shutdown()

    def test_force_open_and_close(self):
        breaker = make_breaker(reset_timeout_sec=30)

        breaker.force_open()
        assert breaker.is_open

        breaker.force_close()
        assert breaker.state == CircuitState.CLOSED

    def test_stats_are_a_copy(self):
        breaker = make_breaker()

        breaker.stats.failures = 99

        assert breaker.stats.failures == 0


class TestCircuitBreakerRegistry:
    """Test the registry"""

    def test_register_returns_existing(self):
        registry = CircuitBreakerRegistry()

        first = registry.register(CircuitBreakerConfig(name="upstream-agent"))
        second = registry.register(CircuitBreakerConfig(name="upstream-agent", volume_threshold=9))

        assert first is second
        assert "upstream-agent" in registry
        assert registry.get("missing") is None

    @pytest.mark.asyncio
    async def test_registry_listener_reaches_every_breaker(self):
        registry = CircuitBreakerRegistry()
        early = registry.register(CircuitBreakerConfig(name="early", volume_threshold=1))
        events = []
        registry.add_listener(lambda e: events.append((e.breaker, e.type)))
        late = registry.register(CircuitBreakerConfig(name="late", volume_threshold=1))

        await fail_times(early, Dependency(), 1)
        await fail_times(late, Dependency(), 1)

        assert ("early", CircuitEventType.OPEN) in events
        assert ("late", CircuitEventType.OPEN) in events
        registry.shutdown()

    @pytest.mark.asyncio
    async def test_health_and_reset_all(self):
        registry = CircuitBreakerRegistry()
        breaker = registry.register(CircuitBreakerConfig(name="agent", volume_threshold=1))
        await fail_times(breaker, Dependency(), 1)

        health = registry.get_health()
        assert health["agent"]["state"] == "open"
        assert health["agent"]["failures"] == 1
        assert registry.all_stats()[0]["name"] == "agent"

        registry.reset_all()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failures == 0
