"""
Onboarding Session Manager

Sole owner of the wizard session lifecycle: creation, step navigation, data
merges, pause/resume, completion, expiry and deletion. One instance is
constructed per process and shared by request handlers; the session cache is
the source of truth, so several processes may serve the same sessions.

Expiry is decided lazily on every read from `last_activity`; the scheduler's
timers only make it happen sooner and refresh cache TTLs.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

import redis

from onboarding.config import Settings, settings as default_settings
from onboarding.errors import (
    IncompleteSessionError,
    InvalidStepError,
    PersistenceUnavailableError,
    SessionCompletedError,
    SessionExpiredError,
    SessionNotFoundError,
    StepBoundaryError,
    StepValidationError,
)
from onboarding.infrastructure.resilience import RetryPolicy
from onboarding.obs.context import session_context
from onboarding.obs.logger import log_event
from onboarding.obs.metrics import FAST_BINS_MS, inc_counter, record_timing
from onboarding.session.cache import SessionCache
from onboarding.session.models import (
    SessionMetadata,
    SessionPreferences,
    SessionState,
    SessionUpdate,
    StepTransition,
)
from onboarding.session.scheduler import SessionScheduler
from onboarding.steps.catalog import StepCatalog
from onboarding.steps.validator import StepValidation, create_validator

CACHE_ERRORS = (redis.RedisError, ConnectionError, TimeoutError)


class _SessionLocks:
    """Reference-counted per-session locks, dropped once nobody holds them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(session_id, [threading.RLock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(session_id, None)


class OnboardingSessionManager:
    def __init__(
        self,
        cache: SessionCache,
        catalog: StepCatalog,
        scheduler: Optional[SessionScheduler] = None,
        settings: Settings = default_settings,
        validator: Optional[Callable[[int, Dict[str, Any]], StepValidation]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.catalog = catalog
        self.scheduler = scheduler
        self.validator = validator or create_validator(catalog)
        self.clock = clock
        self.session_ttl = settings.ONBOARDING_SESSION_TTL_SECONDS
        self.cache_ttl = max(settings.ONBOARDING_CACHE_TTL_SECONDS, self.session_ttl)
        self.auto_save_interval = settings.AUTO_SAVE_INTERVAL_SECONDS
        self.history_limit = settings.SESSION_HISTORY_LIMIT
        self.retry = retry_policy or RetryPolicy(
            max_attempts=settings.CACHE_RETRY_ATTEMPTS,
            backoff_base=settings.CACHE_RETRY_BACKOFF_SECONDS,
            retry_on=CACHE_ERRORS,
        )
        self._locks = _SessionLocks()

        if scheduler is not None:
            scheduler.bind(
                auto_save=self._auto_save_checkpoint,
                expiry=self._inactivity_timeout,
                sweep=self.cleanup_expired_sessions,
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        metadata: Union[SessionMetadata, Dict[str, Any], None] = None,
        preferences: Union[SessionPreferences, Dict[str, Any], None] = None,
    ) -> SessionState:
        """Return the user's active session, or start a new one at step 1."""
        with self._locks.hold(f"user:{user_id}"), session_context(None, user_id):
            existing_id = self._cache_call("get_user_session", self.cache.get_user_session, user_id)
            if existing_id:
                existing = self.get_session(existing_id)
                if existing is not None and existing.is_active:
                    inc_counter("onboarding_sessions_total", {"outcome": "reused"})
                    log_event("session_reused", session_id=existing.session_id)
                    return existing

            now = self.clock()
            state = SessionState(
                session_id=str(uuid.uuid4()),
                user_id=user_id,
                started_at=now,
                last_activity=now,
                preferences=_coerce(SessionPreferences, preferences),
                metadata=_coerce(SessionMetadata, metadata),
            )
            state.estimated_time_remaining = self._estimate_remaining(state)

            with self._guard(state.session_id, user_id):
                self._save(state)
                self._sync_timers(state)
                inc_counter("onboarding_sessions_total", {"outcome": "created"})
                log_event(
                    "session_created",
                    total_steps=self.catalog.max_step(),
                    auto_save=state.preferences.auto_save,
                    experiment_group=state.metadata.experiment_group,
                )
            return state

    def get_session(self, session_id: str) -> Optional[SessionState]:
        """Read a session; a session idle past the TTL is marked expired first."""
        with self._guard(session_id):
            state = self._cache_call("get", self.cache.get, session_id)
            if state is None:
                return None
            if state.is_active and self._is_overdue(state):
                self._mark_expired(state, source="lazy")
            return state

    def update_session(
        self,
        session_id: str,
        updates: Union[SessionUpdate, Dict[str, Any], None] = None,
    ) -> SessionState:
        updates = _coerce(SessionUpdate, updates)
        with self._guard(session_id):
            state = self._require_live(session_id)

            if updates.current_step is not None:
                if not self.catalog.is_valid_step(updates.current_step):
                    raise InvalidStepError(updates.current_step, self.catalog.max_step())
                state.current_step = updates.current_step

            if updates.step_data:
                step = state.current_step
                merged = state.merge_step_data(step, updates.step_data)
                result = self.validator(step, merged)
                if result.can_proceed:
                    if state.mark_step_completed(step):
                        log_event("step_completed", step=step)
                    state.flags.has_errors = False
                    state.flags.needs_validation = False

            if updates.preferences is not None:
                state.preferences = state.preferences.model_copy(
                    update=updates.preferences.model_dump(exclude_none=True)
                )

            if updates.flags is not None:
                state.flags = state.flags.model_copy(
                    update=updates.flags.model_dump(exclude_none=True)
                )

            self._commit(state)
            log_event("session_updated", current_step=state.current_step, level="DEBUG")
            return state

    def go_to_next_step(self, session_id: str, triggered_by: str = "user") -> SessionState:
        """
        Advance exactly one step once the current step validates. From the last
        step this completes the session instead, provided every step is done.
        """
        with self._guard(session_id):
            state = self._require_live(session_id)
            current = state.current_step
            result = self.validator(current, state.data_for(current))

            if not result.can_proceed:
                state.flags.has_errors = True
                state.flags.needs_validation = True
                self._commit(state)
                inc_counter("onboarding_validation_failures_total", {"step": str(current)})
                log_event("step_validation_failed", step=current, errors=result.errors)
                raise StepValidationError(current, result.errors)

            state.mark_step_completed(current)
            state.flags.has_errors = False
            state.flags.needs_validation = False

            next_step = self.catalog.next_step_number(current)
            if next_step is None:
                missing = self._missing_steps(state)
                self._commit(state)
                if missing:
                    raise StepBoundaryError(
                        f"Cannot advance past step {current}: steps {missing} are not completed"
                    )
                log_event("session_completed", via="last_step")
                return state

            self._transition(state, next_step, "forward", triggered_by)
            self._commit(state)
            return state

    def go_to_previous_step(self, session_id: str, triggered_by: str = "user") -> SessionState:
        with self._guard(session_id):
            state = self._require_live(session_id)
            numbers = self.catalog.step_numbers()
            current = state.current_step
            if current not in numbers or numbers.index(current) == 0:
                raise StepBoundaryError("Already at first step")

            previous_step = numbers[numbers.index(current) - 1]
            self._transition(state, previous_step, "backward", triggered_by)
            self._commit(state)
            return state

    def pause_session(self, session_id: str, reason: Optional[str] = None) -> bool:
        with self._guard(session_id):
            state = self._require_live(session_id)
            state.flags.is_paused = True
            self._commit(state)
            log_event("session_paused", reason=reason or "user request")
            return True

    def resume_session(self, session_id: str) -> SessionState:
        with self._guard(session_id):
            state = self._require_live(session_id)
            was_paused = state.flags.is_paused
            state.flags.is_paused = False
            self._commit(state)
            if was_paused:
                log_event("session_resumed")
            return state

    def complete_session(self, session_id: str) -> bool:
        with self._guard(session_id):
            state = self.get_session(session_id)
            if state is None:
                raise SessionNotFoundError(session_id)
            if state.flags.is_completed:
                return True
            if state.flags.is_expired:
                raise SessionExpiredError(session_id)

            missing = self._missing_steps(state)
            if missing:
                raise IncompleteSessionError(session_id, missing)

            state.flags.is_completed = True
            self._commit(state)
            log_event("session_completed", via="explicit")
            return True

    def expire_session(self, session_id: str, source: str = "explicit") -> None:
        """Idempotent. Completed sessions are never expired."""
        with self._guard(session_id):
            state = self._cache_call("get", self.cache.get, session_id)
            if state is None or not state.is_active:
                self._disarm(session_id)
                return
            self._mark_expired(state, source=source)

    def delete_session(self, session_id: str) -> bool:
        with self._guard(session_id):
            state = self._cache_call("get", self.cache.get, session_id)
            self._disarm(session_id)
            if state is None:
                return False
            self._cache_call("delete", self.cache.delete, session_id, state.user_id)
            inc_counter("onboarding_sessions_deleted_total")
            log_event("session_deleted", user_id=state.user_id)
            return True

    def touch_session(self, session_id: str) -> SessionState:
        """Record activity without changing any session data."""
        with self._guard(session_id):
            state = self._require_live(session_id)
            self._commit(state)
            return state

    def cleanup_expired_sessions(self) -> int:
        """Expire every overdue session in the cache. Returns how many."""
        expired = 0
        errors = 0
        session_ids = self._cache_call("scan", lambda: list(self.cache.iter_session_ids()))
        for session_id in session_ids:
            try:
                with self._guard(session_id):
                    state = self._cache_call("get", self.cache.get, session_id)
                    if state is not None and state.is_active and self._is_overdue(state):
                        self._mark_expired(state, source="sweep")
                        expired += 1
            except PersistenceUnavailableError as e:
                errors += 1
                log_event("session_sweep_error", level="ERROR", session_id=session_id, error=str(e))
        if expired or errors:
            log_event("session_sweep_completed", expired=expired, errors=errors)
        return expired

    def completion_percentage(self, state: SessionState) -> float:
        return state.completion_percentage(self.catalog.max_step())

    # ------------------------------------------------------------------
    # Scheduler handlers
    # ------------------------------------------------------------------

    def _auto_save_checkpoint(self, session_id: str) -> None:
        # Refreshes the cache TTL only; last_activity is left alone so idle
        # sessions still expire.
        state = self.get_session(session_id)
        if state is None or not state.is_active:
            self._disarm(session_id)
            return
        if state.flags.is_paused or not state.preferences.auto_save:
            if self.scheduler is not None:
                self.scheduler.disarm_auto_save(session_id)
            return
        self._cache_call("touch", self.cache.touch, session_id, state.user_id, self.cache_ttl)
        inc_counter("onboarding_auto_saves_total")

    def _inactivity_timeout(self, session_id: str) -> None:
        with self._guard(session_id):
            state = self._cache_call("get", self.cache.get, session_id)
            if state is None or not state.is_active:
                self._disarm(session_id)
                return
            if self._is_overdue(state):
                self._mark_expired(state, source="timer")
            elif self.scheduler is not None:
                # Activity seen elsewhere pushed the deadline out
                self.scheduler.arm_expiry(session_id, state.last_activity + self.session_ttl)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self, session_id: str, user_id: Optional[str] = None) -> Iterator[None]:
        with self._locks.hold(session_id), session_context(session_id, user_id):
            yield

    def _require_live(self, session_id: str) -> SessionState:
        state = self.get_session(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        if state.flags.is_expired:
            raise SessionExpiredError(session_id)
        if state.flags.is_completed:
            raise SessionCompletedError(session_id)
        return state

    def _is_overdue(self, state: SessionState) -> bool:
        return self.clock() - state.last_activity > self.session_ttl

    def _missing_steps(self, state: SessionState) -> List[int]:
        done = set(state.completed_steps)
        return [n for n in self.catalog.step_numbers() if n not in done]

    def _estimate_remaining(self, state: SessionState) -> int:
        if state.flags.is_completed:
            return 0
        return sum(self.catalog.estimated_minutes(n) for n in self._missing_steps(state))

    def _transition(self, state: SessionState, to_step: int, direction: str, triggered_by: str) -> None:
        transition = StepTransition(
            from_step=state.current_step,
            to_step=to_step,
            direction=direction,
            triggered_by=triggered_by,
            timestamp=self.clock(),
        )
        state.record_transition(transition, limit=self.history_limit)
        state.current_step = to_step
        inc_counter(
            "onboarding_step_transitions_total",
            {"direction": direction, "triggered_by": triggered_by},
        )
        log_event(
            "step_transition",
            from_step=transition.from_step,
            to_step=to_step,
            direction=direction,
            triggered_by=triggered_by,
        )

    def _commit(self, state: SessionState) -> None:
        """Stamp activity, recompute derived fields, persist, then sync timers."""
        state.last_activity = self.clock()
        if not self._missing_steps(state):
            state.flags.is_completed = True
        state.estimated_time_remaining = self._estimate_remaining(state)
        self._save(state)
        self._sync_timers(state)

    def _mark_expired(self, state: SessionState, source: str) -> None:
        state.flags.is_expired = True
        self._save(state)
        self._disarm(state.session_id)
        inc_counter("onboarding_sessions_expired_total", {"source": source})
        log_event("session_expired", session_id=state.session_id, source=source)

    def _sync_timers(self, state: SessionState) -> None:
        if self.scheduler is None:
            return
        if not state.is_active:
            self.scheduler.disarm(state.session_id)
            return
        self.scheduler.arm_expiry(state.session_id, state.last_activity + self.session_ttl)
        if state.preferences.auto_save and not state.flags.is_paused:
            self.scheduler.arm_auto_save(state.session_id, self.auto_save_interval)
        else:
            self.scheduler.disarm_auto_save(state.session_id)

    def _disarm(self, session_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.disarm(session_id)

    def _save(self, state: SessionState) -> None:
        self._cache_call("set", self.cache.set, state, self.cache_ttl)

    def _cache_call(self, op: str, func: Callable, *args) -> Any:
        def _on_retry(attempt: int, error: BaseException) -> None:
            inc_counter("session_cache_retries_total", {"op": op})
            log_event("session_cache_retry", level="WARNING", op=op, attempt=attempt, error=str(error))

        start = time.monotonic()
        try:
            return self.retry.execute(func, *args, on_retry=_on_retry)
        except self.retry.retry_on as e:
            inc_counter("session_cache_failures_total", {"op": op})
            log_event("session_cache_unavailable", level="ERROR", op=op, error=str(e))
            raise PersistenceUnavailableError(f"Session cache unavailable during '{op}'") from e
        finally:
            record_timing(
                "session_cache_op_ms",
                (time.monotonic() - start) * 1000.0,
                {"op": op},
                bins=FAST_BINS_MS,
            )


def _coerce(model, value):
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    return model.model_validate(value)
