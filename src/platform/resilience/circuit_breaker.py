"""
Circuit Breaker

    CLOSED --(N consecutive failures | error rate over window)--> OPEN
    OPEN --(cooldown elapsed, next call)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN (cooldown restarts)

Transitions happen under a lock; readers get an immutable snapshot without
taking it. Calls rejected while OPEN raise CircuitOpenError carrying the
remaining cooldown, and never reach the protected dependency.

A trial that ends without a verdict (cancelled, or a non-failure error) gives
its slot back through release(). A trial that never reports at all is
reclaimed once it has been in flight for a full cooldown.

Breakers are shared process-wide through CircuitBreakerRegistry, which is
initialized and torn down explicitly by the owning app.
"""

from collections import deque
from enum import StrEnum
import threading
import time
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import attrs

from src.platform.exception.exceptions import CircuitOpenError
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics


_T = TypeVar('_T')


class CircuitState(StrEnum):
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@attrs.frozen
class CircuitBreakerConfig:
    failure_threshold: int = 5
    error_rate_threshold: float = 0.5
    window_size: int = 20
    min_calls: int = 10
    cooldown_seconds: float = 30.0
    half_open_max_calls: int = 1


@attrs.frozen
class CircuitSnapshot:
    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float]


class CircuitBreaker:
    def __init__(
        self,
        *,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self._outcomes: Deque[bool] = deque(maxlen=config.window_size)
        self._half_open_in_flight = 0
        self._trial_started_at: Optional[float] = None
        self._snapshot = CircuitSnapshot(
            state=CircuitState.CLOSED, consecutive_failures=0, opened_at=None
        )

    @property
    def snapshot(self) -> CircuitSnapshot:
        return self._snapshot

    @property
    def state(self) -> CircuitState:
        return self._snapshot.state

    def retry_after(self) -> float:
        snapshot = self._snapshot
        if snapshot.state is not CircuitState.OPEN or snapshot.opened_at is None:
            return 0.0
        return max(0.0, snapshot.opened_at + self.config.cooldown_seconds - self.clock())

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError. Every admitted call must be followed
        by exactly one of record_success(), record_failure() or release()."""
        with self._lock:
            snapshot = self._snapshot
            if snapshot.state is CircuitState.OPEN:
                remaining = self.retry_after()
                if remaining > 0:
                    raise CircuitOpenError(
                        f'Circuit {self.name} is open', retry_after=remaining
                    )
                self._transition(CircuitState.HALF_OPEN)

            if self._snapshot.state is CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    if not self._trials_abandoned():
                        raise CircuitOpenError(
                            f'Circuit {self.name} is half-open and its trial slots are taken',
                            retry_after=1.0,
                        )
                    Logger.base.warning(
                        f'🔌 [CIRCUIT] {self.name}: reclaiming {self._half_open_in_flight} '
                        f'trial slot(s) that never reported'
                    )
                    self._half_open_in_flight = 0
                if self._half_open_in_flight == 0:
                    self._trial_started_at = self.clock()
                self._half_open_in_flight += 1

    def release(self) -> None:
        """Hand back an admitted call's slot without counting it as a success or failure."""
        with self._lock:
            if self._snapshot.state is CircuitState.HALF_OPEN and self._half_open_in_flight:
                self._half_open_in_flight -= 1

    def _trials_abandoned(self) -> bool:
        started = self._trial_started_at
        return started is not None and self.clock() - started >= self.config.cooldown_seconds

    def record_success(self) -> None:
        with self._lock:
            state = self._snapshot.state
            if state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
            elif state is CircuitState.CLOSED:
                self._outcomes.append(True)
                if self._snapshot.consecutive_failures:
                    self._snapshot = attrs.evolve(self._snapshot, consecutive_failures=0)

    def record_failure(self) -> None:
        with self._lock:
            state = self._snapshot.state
            if state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif state is CircuitState.CLOSED:
                self._outcomes.append(False)
                failures = self._snapshot.consecutive_failures + 1
                self._snapshot = attrs.evolve(self._snapshot, consecutive_failures=failures)
                if failures >= self.config.failure_threshold or self._error_rate_exceeded():
                    self._transition(CircuitState.OPEN)
            # Late results arriving while OPEN are ignored

    def _error_rate_exceeded(self) -> bool:
        calls = len(self._outcomes)
        if calls < self.config.min_calls:
            return False
        failures = sum(1 for ok in self._outcomes if not ok)
        return failures / calls >= self.config.error_rate_threshold

    def _transition(self, target: CircuitState) -> None:
        previous = self._snapshot.state
        self._half_open_in_flight = 0
        self._trial_started_at = None
        if target is CircuitState.OPEN:
            self._snapshot = CircuitSnapshot(
                state=target,
                consecutive_failures=self._snapshot.consecutive_failures,
                opened_at=self.clock(),
            )
        else:
            if target is CircuitState.CLOSED:
                self._outcomes.clear()
            self._snapshot = CircuitSnapshot(state=target, consecutive_failures=0, opened_at=None)

        metrics.set_circuit_state(circuit=self.name, value=_STATE_GAUGE[target])
        log = Logger.base.warning if target is CircuitState.OPEN else Logger.base.info
        log(f'🔌 [CIRCUIT] {self.name}: {previous} -> {target}')

    async def call(self, func: Callable[..., Awaitable[_T]], *args: Any, **kwargs: Any) -> _T:
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._half_open_in_flight = 0
            self._trial_started_at = None
            self._snapshot = CircuitSnapshot(
                state=CircuitState.CLOSED, consecutive_failures=0, opened_at=None
            )


class CircuitBreakerRegistry:
    """
    Usage:
        circuit_breaker_registry.initialize(config=CircuitBreakerConfig(...))
        breaker = circuit_breaker_registry.get('payment-gateway')
        ...
        circuit_breaker_registry.teardown()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._config: Optional[CircuitBreakerConfig] = None
        self._clock: Callable[[], float] = time.monotonic

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    def initialize(
        self, *, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic
    ) -> None:
        with self._lock:
            self._config = config
            self._clock = clock
            self._breakers.clear()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if self._config is None:
                raise RuntimeError('CircuitBreakerRegistry used before initialize()')
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name=name, config=self._config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: breaker.snapshot for name, breaker in breakers.items()}

    def teardown(self) -> None:
        with self._lock:
            self._breakers.clear()
            self._config = None


circuit_breaker_registry = CircuitBreakerRegistry()
