import random
import threading
import time
from unittest.mock import Mock

import pytest
import redis
from pydantic import ValidationError

from onboarding.errors import (
    IncompleteSessionError,
    InvalidStepError,
    OnboardingError,
    PersistenceUnavailableError,
    SessionCompletedError,
    SessionExpiredError,
    SessionNotFoundError,
    StepBoundaryError,
    StepValidationError,
)
from onboarding.obs.metrics import get_counter
from onboarding.session.cache import InMemorySessionCache, SessionCache
from onboarding.session.manager import OnboardingSessionManager
from onboarding.session.scheduler import JobKind


class _SlowIndexCache(InMemorySessionCache):
    def get_user_session(self, user_id):
        time.sleep(0.05)
        return super().get_user_session(user_id)


def _finish_step_one(manager, sid):
    manager.update_session(sid, {"step_data": {"name": "Ana"}})
    return manager.go_to_next_step(sid)


class TestCreateSession:
    def test_new_session_starts_at_step_one(self, manager, clock):
        state = manager.create_session("user-1", {"user_agent": "pytest", "experiment_group": "b"})

        assert state.current_step == 1
        assert state.completed_steps == []
        assert state.step_data == {}
        assert state.started_at == clock.now
        assert state.last_activity == clock.now
        assert state.metadata.experiment_group == "b"
        assert state.preferences.language == "es"
        # 2 + 3 + default 5 for the step without an estimate
        assert state.estimated_time_remaining == 10
        assert get_counter("onboarding_sessions_total", {"outcome": "created"}) == 1

    def test_create_is_idempotent_for_active_session(self, manager):
        first = manager.create_session("user-1")
        second = manager.create_session("user-1")

        assert first.session_id == second.session_id
        assert get_counter("onboarding_sessions_total", {"outcome": "reused"}) == 1

    def test_different_users_get_different_sessions(self, manager):
        a = manager.create_session("user-a")
        b = manager.create_session("user-b")
        assert a.session_id != b.session_id

    def test_concurrent_creates_share_one_session(self, three_step_catalog, test_settings, clock):
        cache = _SlowIndexCache(clock=clock)
        manager = OnboardingSessionManager(cache, three_step_catalog, settings=test_settings, clock=clock)
        ids = []

        def create():
            ids.append(manager.create_session("user-1").session_id)

        threads = [threading.Thread(target=create) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 1
        records = [cache.get(sid) for sid in cache.iter_session_ids()]
        assert [r.session_id for r in records if r.user_id == "user-1"] == ids[:1]

    def test_expired_session_is_replaced(self, manager, clock):
        first = manager.create_session("user-1")
        clock.advance(7201)
        second = manager.create_session("user-1")

        assert second.session_id != first.session_id
        assert manager.get_session(first.session_id).flags.is_expired is True
        assert second.is_active

    def test_completed_session_is_replaced(self, manager):
        first = manager.create_session("user-1")
        _finish_step_one(manager, first.session_id)
        manager.update_session(first.session_id, {"step_data": {"email": "a@b.com"}})
        manager.go_to_next_step(first.session_id)
        done = manager.go_to_next_step(first.session_id)
        assert done.flags.is_completed

        second = manager.create_session("user-1")
        assert second.session_id != first.session_id

    def test_timers_armed_on_create(self, manager, scheduler, clock):
        state = manager.create_session("user-1")
        assert scheduler.is_armed(JobKind.AUTO_SAVE, state.session_id)
        assert scheduler.expiry_deadline(state.session_id) == clock.now + 7200

    def test_auto_save_disabled_arms_only_expiry(self, manager, scheduler):
        state = manager.create_session("user-1", preferences={"auto_save": False})
        assert not scheduler.is_armed(JobKind.AUTO_SAVE, state.session_id)
        assert scheduler.is_armed(JobKind.EXPIRY, state.session_id)


class TestExampleScenario:
    def test_three_step_walkthrough(self, manager):
        state = manager.create_session("user-1")
        sid = state.session_id
        assert state.current_step == 1

        state = manager.update_session(sid, {"step_data": {"name": "Ana"}})
        assert state.completed_steps == [1]
        assert state.estimated_time_remaining == 8

        state = manager.go_to_next_step(sid)
        assert state.current_step == 2

        with pytest.raises(StepValidationError) as exc:
            manager.go_to_next_step(sid)
        assert "Field 'Email' is required" in exc.value.errors
        state = manager.get_session(sid)
        assert state.current_step == 2
        assert state.flags.has_errors is True
        assert state.flags.needs_validation is True

        state = manager.update_session(sid, {"step_data": {"email": "a@b.com"}})
        assert state.flags.has_errors is False
        assert state.flags.needs_validation is False
        state = manager.go_to_next_step(sid)
        assert state.current_step == 3
        assert state.completed_steps == [1, 2]

        state = manager.go_to_next_step(sid)
        assert state.flags.is_completed is True
        assert state.completed_steps == [1, 2, 3]
        assert state.current_step == 3
        assert state.estimated_time_remaining == 0
        assert manager.completion_percentage(state) == 100.0

    def test_forward_transitions_are_recorded(self, manager):
        sid = manager.create_session("user-1").session_id
        state = _finish_step_one(manager, sid)

        assert len(state.history) == 1
        transition = state.history[0]
        assert (transition.from_step, transition.to_step) == (1, 2)
        assert transition.direction == "forward"
        assert transition.triggered_by == "user"
        assert get_counter(
            "onboarding_step_transitions_total", {"direction": "forward", "triggered_by": "user"}
        ) == 1


class TestUpdateSession:
    def test_step_data_is_merged_field_by_field(self, manager):
        sid = manager.create_session("user-1").session_id
        _finish_step_one(manager, sid)
        manager.update_session(sid, {"step_data": {"email": "bad"}})
        state = manager.update_session(sid, {"step_data": {"age": 30}})

        assert state.step_data[2] == {"email": "bad", "age": 30}
        assert 2 not in state.completed_steps

    def test_invalid_data_does_not_mark_step(self, manager):
        sid = manager.create_session("user-1").session_id
        _finish_step_one(manager, sid)
        state = manager.update_session(sid, {"step_data": {"email": "a@b.com", "age": 12}})
        assert state.completed_steps == [1]

    def test_invalid_current_step_rejected_before_apply(self, manager):
        sid = manager.create_session("user-1").session_id

        with pytest.raises(InvalidStepError):
            manager.update_session(sid, {"current_step": 4, "step_data": {"name": "Ana"}})

        state = manager.get_session(sid)
        assert state.current_step == 1
        assert state.step_data == {}

    def test_current_step_jump_applies_data_to_new_step(self, manager):
        sid = manager.create_session("user-1").session_id
        state = manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "later"}})
        assert state.current_step == 3
        assert state.step_data == {3: {"notes": "later"}}
        assert state.completed_steps == [3]

    def test_completing_every_step_through_updates_completes_session(self, manager, scheduler):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        manager.update_session(sid, {"current_step": 2, "step_data": {"email": "a@b.com"}})
        state = manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "done"}})

        assert state.flags.is_completed is True
        assert not scheduler.is_armed(JobKind.AUTO_SAVE, sid)
        assert not scheduler.is_armed(JobKind.EXPIRY, sid)

    def test_preferences_are_merged(self, manager, scheduler):
        sid = manager.create_session("user-1").session_id
        state = manager.update_session(sid, {"preferences": {"language": "en", "auto_save": False}})

        assert state.preferences.language == "en"
        assert state.preferences.communication_style == "informal"
        assert not scheduler.is_armed(JobKind.AUTO_SAVE, sid)

        manager.update_session(sid, {"preferences": {"auto_save": True}})
        assert scheduler.is_armed(JobKind.AUTO_SAVE, sid)

    def test_caller_flags_applied(self, manager):
        sid = manager.create_session("user-1").session_id
        state = manager.update_session(sid, {"flags": {"force_refresh": True}})
        assert state.flags.force_refresh is True
        assert state.flags.is_paused is False

    def test_lifecycle_flags_rejected(self, manager):
        sid = manager.create_session("user-1").session_id
        with pytest.raises(ValidationError):
            manager.update_session(sid, {"flags": {"is_completed": True}})
        assert manager.get_session(sid).flags.is_completed is False

    def test_update_refreshes_last_activity(self, manager, clock, scheduler):
        sid = manager.create_session("user-1").session_id
        clock.advance(100)
        state = manager.update_session(sid, {"step_data": {"name": "Ana"}})
        assert state.last_activity == clock.now
        assert scheduler.expiry_deadline(sid) == clock.now + 7200

    def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            manager.update_session("missing", {"step_data": {"name": "Ana"}})

    def test_completed_session_rejects_updates(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        manager.update_session(sid, {"current_step": 2, "step_data": {"email": "a@b.com"}})
        manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "x"}})

        with pytest.raises(SessionCompletedError):
            manager.update_session(sid, {"step_data": {"notes": "y"}})
        with pytest.raises(StepBoundaryError):
            manager.go_to_next_step(sid)


class TestNavigation:
    def test_cannot_retreat_from_first_step(self, manager):
        sid = manager.create_session("user-1").session_id
        with pytest.raises(StepBoundaryError):
            manager.go_to_previous_step(sid)

    def test_backward_navigation_bypasses_validation(self, manager):
        sid = manager.create_session("user-1").session_id
        _finish_step_one(manager, sid)
        manager.update_session(sid, {"step_data": {"email": "a@b.com"}})
        manager.go_to_next_step(sid)

        # Step 2 is now broken, step 3 has nothing; going back still works
        manager.update_session(sid, {"current_step": 2, "step_data": {"age": 5}})
        manager.update_session(sid, {"current_step": 3})
        state = manager.go_to_previous_step(sid)
        assert state.current_step == 2
        state = manager.go_to_previous_step(sid)
        assert state.current_step == 1

        backward = [t for t in state.history if t.direction == "backward"]
        assert [(t.from_step, t.to_step) for t in backward] == [(3, 2), (2, 1)]

    def test_system_triggered_transition(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        state = manager.go_to_next_step(sid, triggered_by="system")
        assert state.history[-1].triggered_by == "system"

    def test_last_step_with_missing_steps_is_boundary(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"current_step": 3})

        with pytest.raises(StepBoundaryError) as exc:
            manager.go_to_next_step(sid)
        assert "[1, 2]" in str(exc.value)

        state = manager.get_session(sid)
        assert state.completed_steps == [3]
        assert state.flags.is_completed is False

    def test_history_is_bounded(self, memory_cache, three_step_catalog, test_settings, clock):
        settings = test_settings.model_copy(update={"SESSION_HISTORY_LIMIT": 3})
        manager = OnboardingSessionManager(memory_cache, three_step_catalog, settings=settings, clock=clock)
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        for _ in range(3):
            manager.go_to_next_step(sid)
            manager.go_to_previous_step(sid)

        state = manager.get_session(sid)
        assert len(state.history) == 3
        assert state.history[-1].direction == "backward"


class TestMonotonicProgress:
    @pytest.mark.parametrize("seed", [1, 7, 42, 2024])
    def test_random_sequences_never_lose_progress(self, manager, seed):
        rng = random.Random(seed)
        sid = manager.create_session(f"user-{seed}").session_id
        payloads = [
            {"name": "Ana"},
            {"name": ""},
            {"email": "a@b.com"},
            {"email": "nope"},
            {"age": 200},
            {"notes": "hello"},
        ]
        seen = set()

        for _ in range(60):
            before = manager.get_session(sid)
            op = rng.choice(["update", "jump", "next", "previous", "pause", "resume"])
            try:
                if op == "update":
                    after = manager.update_session(sid, {"step_data": rng.choice(payloads)})
                elif op == "jump":
                    after = manager.update_session(sid, {"current_step": rng.randint(1, 3)})
                elif op == "next":
                    can_proceed = manager.validator(
                        before.current_step, before.data_for(before.current_step)
                    ).can_proceed
                    try:
                        after = manager.go_to_next_step(sid)
                    except StepValidationError:
                        assert not can_proceed
                        after = manager.get_session(sid)
                        assert after.current_step == before.current_step
                    else:
                        assert can_proceed
                        assert after.current_step - before.current_step in (0, 1)
                elif op == "previous":
                    after = manager.go_to_previous_step(sid)
                elif op == "pause":
                    manager.pause_session(sid)
                    after = manager.get_session(sid)
                else:
                    after = manager.resume_session(sid)
            except OnboardingError:
                after = manager.get_session(sid)

            assert set(before.completed_steps) <= set(after.completed_steps)
            assert 1 <= after.current_step <= 3
            seen |= set(after.completed_steps)
            assert seen == set(after.completed_steps)


class TestPauseResume:
    def test_pause_disarms_auto_save_only(self, manager, scheduler):
        sid = manager.create_session("user-1").session_id
        assert manager.pause_session(sid, reason="lunch") is True

        state = manager.get_session(sid)
        assert state.flags.is_paused is True
        assert not scheduler.is_armed(JobKind.AUTO_SAVE, sid)
        assert scheduler.is_armed(JobKind.EXPIRY, sid)

    def test_pause_is_idempotent(self, manager):
        sid = manager.create_session("user-1").session_id
        assert manager.pause_session(sid) is True
        assert manager.pause_session(sid) is True

    def test_repeated_pause_refreshes_activity(self, manager, clock):
        sid = manager.create_session("user-1").session_id
        manager.pause_session(sid)
        clock.advance(600)
        manager.pause_session(sid)

        state = manager.get_session(sid)
        assert state.flags.is_paused is True
        assert state.last_activity == clock.now

    def test_resume_rearms_auto_save(self, manager, scheduler):
        sid = manager.create_session("user-1").session_id
        manager.pause_session(sid)
        state = manager.resume_session(sid)

        assert state.flags.is_paused is False
        assert scheduler.is_armed(JobKind.AUTO_SAVE, sid)

    def test_paused_session_still_expires(self, manager, clock):
        sid = manager.create_session("user-1").session_id
        manager.pause_session(sid)
        clock.advance(7201)

        with pytest.raises(SessionExpiredError):
            manager.resume_session(sid)

    def test_paused_with_errors_combination(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.pause_session(sid)
        with pytest.raises(StepValidationError):
            manager.go_to_next_step(sid)

        flags = manager.get_session(sid).flags
        assert flags.is_paused and flags.has_errors and flags.needs_validation
        assert not flags.is_completed and not flags.is_expired


class TestExpiry:
    def test_lazy_expiry_boundary(self, manager, clock):
        sid = manager.create_session("user-1").session_id
        clock.advance(7200)
        assert manager.get_session(sid).flags.is_expired is False
        clock.advance(1)
        state = manager.get_session(sid)
        assert state.flags.is_expired is True
        assert state.flags.is_completed is False
        assert get_counter("onboarding_sessions_expired_total", {"source": "lazy"}) == 1

    def test_expiry_is_sticky(self, manager, clock, scheduler):
        sid = manager.create_session("user-1").session_id
        clock.advance(7201)
        assert manager.get_session(sid).flags.is_expired
        assert not scheduler.is_armed(JobKind.EXPIRY, sid)
        assert not scheduler.is_armed(JobKind.AUTO_SAVE, sid)

        with pytest.raises(SessionExpiredError):
            manager.update_session(sid, {"step_data": {"name": "Ana"}})
        with pytest.raises(SessionExpiredError):
            manager.go_to_next_step(sid)
        with pytest.raises(SessionExpiredError):
            manager.go_to_previous_step(sid)
        with pytest.raises(SessionExpiredError):
            manager.pause_session(sid)
        with pytest.raises(SessionExpiredError):
            manager.resume_session(sid)
        with pytest.raises(SessionExpiredError):
            manager.complete_session(sid)

        # Reads and deletion still work
        assert manager.get_session(sid).flags.is_expired
        assert manager.delete_session(sid) is True
        assert manager.get_session(sid) is None

    def test_explicit_expire_is_idempotent(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.expire_session(sid)
        manager.expire_session(sid)

        assert manager.get_session(sid).flags.is_expired
        assert get_counter("onboarding_sessions_expired_total", {"source": "explicit"}) == 1

    def test_expire_ignores_missing_and_completed(self, manager):
        manager.expire_session("missing")

        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        manager.update_session(sid, {"current_step": 2, "step_data": {"email": "a@b.com"}})
        manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "x"}})
        manager.expire_session(sid)

        flags = manager.get_session(sid).flags
        assert flags.is_completed is True
        assert flags.is_expired is False

    def test_completed_session_never_lazily_expires(self, manager, clock):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        manager.update_session(sid, {"current_step": 2, "step_data": {"email": "a@b.com"}})
        manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "x"}})
        clock.advance(7201)

        state = manager.get_session(sid)
        assert state.flags.is_completed is True
        assert state.flags.is_expired is False

    def test_touch_extends_deadline(self, manager, clock, scheduler):
        sid = manager.create_session("user-1").session_id
        clock.advance(7000)
        manager.touch_session(sid)
        clock.advance(7000)

        assert manager.get_session(sid).flags.is_expired is False
        assert scheduler.expiry_deadline(sid) == clock.now - 7000 + 7200

    def test_cleanup_sweeps_overdue_sessions(self, memory_cache, three_step_catalog, test_settings, clock):
        manager = OnboardingSessionManager(memory_cache, three_step_catalog, settings=test_settings, clock=clock)
        manager.create_session("user-a")
        manager.create_session("user-b")
        clock.advance(3600)
        fresh = manager.create_session("user-c")
        clock.advance(3601)

        assert manager.cleanup_expired_sessions() == 2
        assert manager.cleanup_expired_sessions() == 0
        assert manager.get_session(fresh.session_id).is_active
        assert get_counter("onboarding_sessions_expired_total", {"source": "sweep"}) == 2


class TestCompletionGate:
    def test_complete_requires_every_step(self, manager):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})

        with pytest.raises(IncompleteSessionError) as exc:
            manager.complete_session(sid)
        assert exc.value.missing_steps == [2, 3]
        assert manager.get_session(sid).flags.is_completed is False

    def test_complete_is_idempotent_once_all_steps_done(self, manager, scheduler):
        sid = manager.create_session("user-1").session_id
        manager.update_session(sid, {"step_data": {"name": "Ana"}})
        manager.update_session(sid, {"current_step": 2, "step_data": {"email": "a@b.com"}})
        manager.update_session(sid, {"current_step": 3, "step_data": {"notes": "x"}})

        assert manager.complete_session(sid) is True
        assert manager.complete_session(sid) is True
        assert not scheduler.is_armed(JobKind.EXPIRY, sid)

    def test_complete_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            manager.complete_session("missing")


class TestDeleteSession:
    def test_delete_removes_record_and_index(self, manager, memory_cache, scheduler):
        state = manager.create_session("user-1")
        assert manager.delete_session(state.session_id) is True

        assert manager.get_session(state.session_id) is None
        assert memory_cache.get_user_session("user-1") is None
        assert not scheduler.is_armed(JobKind.EXPIRY, state.session_id)
        assert manager.create_session("user-1").session_id != state.session_id

    def test_delete_unknown_returns_false(self, manager):
        assert manager.delete_session("missing") is False


class TestBackgroundHandlers:
    def test_auto_save_refreshes_ttl_without_activity(self, manager, scheduler, clock, memory_cache):
        state = manager.create_session("user-1")
        clock.advance(31)
        assert scheduler.tick() == 1

        stored = memory_cache.get(state.session_id)
        assert stored.last_activity == state.last_activity
        assert get_counter("onboarding_auto_saves_total") == 1

    def test_tick_expires_idle_session(self, manager, scheduler, clock):
        sid = manager.create_session("user-1").session_id
        clock.advance(7201)
        scheduler.tick()

        assert manager.get_session(sid).flags.is_expired
        assert scheduler.armed_counts() == {"auto_save": 0, "expiry": 0, "queued": 0}

    def test_expiry_timer_rearms_after_remote_activity(
        self, manager, scheduler, clock, memory_cache, three_step_catalog, test_settings
    ):
        sid = manager.create_session("user-1").session_id
        started = clock.now
        other_replica = OnboardingSessionManager(memory_cache, three_step_catalog, settings=test_settings, clock=clock)

        clock.advance(3600)
        other_replica.touch_session(sid)
        clock.advance(3601)
        scheduler.tick()

        assert manager.get_session(sid).flags.is_expired is False
        assert scheduler.expiry_deadline(sid) == started + 3600 + 7200


class TestPersistenceFailures:
    def _manager(self, cache, three_step_catalog, test_settings, clock):
        return OnboardingSessionManager(cache, three_step_catalog, settings=test_settings, clock=clock)

    def test_retries_exhaust_into_persistence_unavailable(self, three_step_catalog, test_settings, clock):
        cache = Mock(spec=SessionCache)
        cache.get.side_effect = redis.ConnectionError("connection refused")
        manager = self._manager(cache, three_step_catalog, test_settings, clock)

        with pytest.raises(PersistenceUnavailableError) as exc:
            manager.get_session("sid-1")

        assert isinstance(exc.value.__cause__, redis.ConnectionError)
        assert cache.get.call_count == 3
        assert get_counter("session_cache_retries_total", {"op": "get"}) == 2
        assert get_counter("session_cache_failures_total", {"op": "get"}) == 1

    def test_transient_failure_is_retried(self, three_step_catalog, test_settings, clock):
        cache = Mock(spec=SessionCache)
        cache.get.side_effect = [redis.TimeoutError("slow"), None]
        manager = self._manager(cache, three_step_catalog, test_settings, clock)

        assert manager.get_session("sid-1") is None
        assert cache.get.call_count == 2

    def test_write_failure_surfaces_on_create(self, three_step_catalog, test_settings, clock):
        cache = Mock(spec=SessionCache)
        cache.get_user_session.return_value = None
        cache.set.side_effect = redis.ConnectionError("down")
        manager = self._manager(cache, three_step_catalog, test_settings, clock)

        with pytest.raises(PersistenceUnavailableError):
            manager.create_session("user-1")
        assert cache.set.call_count == 3

    def test_non_cache_errors_are_not_retried(self, three_step_catalog, test_settings, clock):
        cache = Mock(spec=SessionCache)
        cache.get.side_effect = KeyError("bug")
        manager = self._manager(cache, three_step_catalog, test_settings, clock)

        with pytest.raises(KeyError):
            manager.get_session("sid-1")
        assert cache.get.call_count == 1
