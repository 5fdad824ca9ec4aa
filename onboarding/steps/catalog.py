"""
Step Catalog

Read-only source of wizard step definitions. The manager only depends on the
resulting ordered list of steps; where that list comes from (static table or
the Redis-backed "edge" store) is decided once at startup by a settings flag.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis
from pydantic import ValidationError

from onboarding.config import Settings
from onboarding.infrastructure.resilience import CircuitBreaker, CircuitOpenError
from onboarding.obs.logger import log_event
from onboarding.obs.metrics import inc_counter
from onboarding.steps.defaults import default_steps
from onboarding.steps.models import StepDefinition, parse_steps

DEFAULT_STEP_MINUTES = 5


def check_contiguous(steps: List[StepDefinition]) -> List[StepDefinition]:
    numbers = [s.step_number for s in steps]
    if numbers != list(range(1, len(numbers) + 1)):
        raise ValueError(f"Step numbers must be contiguous from 1, got {numbers}")
    return steps


class StepCatalog(ABC):
    """
    Ordered step definitions plus the lookups the session manager needs.
    Subclasses only provide get_steps().
    """

    @abstractmethod
    def get_steps(self) -> List[StepDefinition]:
        """Returns every step ordered by step number."""
        pass

    def get_step(self, step_number: int) -> Optional[StepDefinition]:
        for step in self.get_steps():
            if step.step_number == step_number:
                return step
        return None

    def step_numbers(self) -> List[int]:
        return [s.step_number for s in self.get_steps()]

    def max_step(self) -> int:
        numbers = self.step_numbers()
        return numbers[-1] if numbers else 0

    def is_valid_step(self, step_number) -> bool:
        if isinstance(step_number, bool) or not isinstance(step_number, int):
            return False
        return step_number in self.step_numbers()

    def next_step_number(self, step_number: int) -> Optional[int]:
        numbers = self.step_numbers()
        if step_number not in numbers:
            return None
        idx = numbers.index(step_number)
        return numbers[idx + 1] if idx + 1 < len(numbers) else None

    def estimated_minutes(self, step_number: int) -> int:
        step = self.get_step(step_number)
        if step is None or step.estimated_time_minutes is None:
            return DEFAULT_STEP_MINUTES
        return step.estimated_time_minutes


class StaticStepCatalog(StepCatalog):
    def __init__(self, steps: Optional[List[StepDefinition]] = None):
        self._steps = check_contiguous(sorted(steps or default_steps(), key=lambda s: s.step_number))

    def get_steps(self) -> List[StepDefinition]:
        return list(self._steps)


class EdgeStepCatalog(StepCatalog):
    """
    Reads the catalog JSON from Redis. A failed or empty read falls back to the
    last good copy, then to the static table. Reads are memoized for
    refresh_seconds and guarded by a circuit breaker.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str,
        fallback: Optional[StaticStepCatalog] = None,
        refresh_seconds: int = 60,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.key = key
        self.fallback = fallback or StaticStepCatalog()
        self.refresh_seconds = refresh_seconds
        self.breaker = breaker or CircuitBreaker("step_catalog", failure_threshold=3, recovery_timeout=30)
        self.clock = clock
        self._last_good: Optional[List[StepDefinition]] = None
        self._fetched_at: float = 0.0
        self.cache_stats = {"hits": 0, "misses": 0, "errors": 0}

    def _fetch(self) -> Optional[List[StepDefinition]]:
        raw = self.client.get(self.key)
        if not raw:
            return None
        return check_contiguous(parse_steps(json.loads(raw)))

    def get_steps(self) -> List[StepDefinition]:
        if self._last_good is not None and self.clock() - self._fetched_at < self.refresh_seconds:
            return list(self._last_good)

        try:
            steps = self.breaker.call(self._fetch)
        except (redis.RedisError, CircuitOpenError, ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            self.cache_stats["errors"] += 1
            inc_counter("step_catalog_reads_total", {"result": "error"})
            log_event("step_catalog_error", level="WARNING", key=self.key, error=str(e))
            if self._last_good is not None:
                return list(self._last_good)
            return self.fallback.get_steps()

        if steps is None:
            self.cache_stats["misses"] += 1
            inc_counter("step_catalog_reads_total", {"result": "miss"})
            log_event("step_catalog_fallback", level="WARNING", key=self.key)
            return self.fallback.get_steps()

        self.cache_stats["hits"] += 1
        inc_counter("step_catalog_reads_total", {"result": "hit"})
        self._last_good = steps
        self._fetched_at = self.clock()
        return list(steps)

    def get_cache_stats(self) -> Dict:
        return {**self.cache_stats, "breaker": self.breaker.get_state()}


def create_step_catalog(settings: Settings, client: Optional[redis.Redis] = None) -> StepCatalog:
    if settings.STEP_CATALOG_EDGE_ENABLED and client is not None:
        return EdgeStepCatalog(client, settings.STEP_CATALOG_KEY)
    return StaticStepCatalog()
