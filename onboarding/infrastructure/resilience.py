import asyncio
import inspect
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from onboarding.obs.logger import log_event
from onboarding.obs.metrics import inc_counter


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"      # Failing, reject calls
    HALF_OPEN = "half_open"  # One trial call allowed


class CircuitOpenError(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker {name} is OPEN")


class CircuitBreaker:
    """
    Trips after `failure_threshold` consecutive failures and rejects calls
    until `recovery_timeout` has passed; the next call is a trial whose
    failure re-opens the circuit immediately.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Type[BaseException] = Exception,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.clock = clock
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._state = CircuitState.CLOSED

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self.last_failure_time is not None
            and self.clock() - self.last_failure_time >= self.recovery_timeout
        ):
            self._move_to(CircuitState.HALF_OPEN)
        return self._state

    def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state is CircuitState.OPEN:
            raise CircuitOpenError(self.name)

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._record_failure()
            raise
        self.failure_count = 0
        if self._state is not CircuitState.CLOSED:
            self._move_to(CircuitState.CLOSED)
        return result

    def _record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self._state is CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._move_to(CircuitState.OPEN)

    def _move_to(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        log_event(
            "circuit_state_changed",
            level="WARNING" if new_state is CircuitState.OPEN else "INFO",
            breaker=self.name,
            from_state=self._state.value,
            to_state=new_state.value,
            failures=self.failure_count,
        )
        inc_counter("circuit_transitions_total", {"breaker": self.name, "to": new_state.value})
        self._state = new_state

    def get_state(self) -> Dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure": self.last_failure_time,
        }


class RetryPolicy:
    """Bounded retries with exponential backoff for short, idempotent calls."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 0.05,
        max_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.max_delay = max_delay
        self.retry_on = retry_on
        self.sleep = sleep

    def _delay(self, attempt: int) -> float:
        if self.backoff_base <= 0:
            return 0.0
        return min(self.backoff_base * (2 ** attempt), self.max_delay)

    def execute(
        self,
        func: Callable,
        *args,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs,
    ) -> Any:
        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts - 1:
                    raise
                if on_retry is not None:
                    on_retry(attempt + 1, e)
                delay = self._delay(attempt)
                if delay:
                    self.sleep(delay)


class HealthChecker:
    """
    Runs registered probes for /health/detailed. A probe returns truthy when
    healthy. Synchronous probes (Redis ping) run in a worker thread so a slow
    backend never stalls the event loop. Failing non-critical probes report
    "degraded" instead of "unhealthy".
    """

    def __init__(self, timeout_seconds: float = 2.0):
        self.timeout_seconds = timeout_seconds
        self.checks: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, critical: bool = True) -> None:
        self.checks[name] = {"func": check_func, "critical": critical}

    async def run_checks(self) -> Dict:
        names = list(self.checks)
        outcomes = await asyncio.gather(*(self._probe(self.checks[n]["func"]) for n in names))
        results = dict(zip(names, outcomes))

        failed = [n for n, r in results.items() if r["status"] != "healthy"]
        if any(self.checks[n]["critical"] for n in failed):
            status = "unhealthy"
        elif failed:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "checks": results,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _probe(self, check_func: Callable) -> Dict:
        start = time.monotonic()
        try:
            if inspect.iscoroutinefunction(check_func):
                ok = await asyncio.wait_for(check_func(), self.timeout_seconds)
            else:
                ok = await asyncio.wait_for(asyncio.to_thread(check_func), self.timeout_seconds)
        except Exception as e:
            # A probe that raises is a failed probe; the error goes in the report
            return {
                "status": "unhealthy",
                "error": str(e) or type(e).__name__,
                "duration_ms": int((time.monotonic() - start) * 1000),
            }
        return {
            "status": "healthy" if ok else "unhealthy",
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
