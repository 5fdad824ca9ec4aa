"""
Session Cache

Persistence contract for onboarding sessions: a TTL key-value store holding
one JSON snapshot per session plus a user -> current session index written
alongside it. The manager treats the cache as the source of truth; TTL here
is only a backstop, inactivity expiry is decided by the manager itself.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterator, Optional, Tuple

import redis
from pydantic import ValidationError

from onboarding.config import Settings
from onboarding.obs.logger import log_event
from onboarding.session.models import SessionState


class SessionCache(ABC):

    @abstractmethod
    def get(self, session_id: str) -> Optional[SessionState]:
        """Returns the stored snapshot, or None if absent."""
        pass

    @abstractmethod
    def set(self, state: SessionState, ttl_seconds: int) -> None:
        """Stores the snapshot and points the owner's index at it."""
        pass

    @abstractmethod
    def delete(self, session_id: str, user_id: Optional[str] = None) -> bool:
        """
        Removes the snapshot. The user index is removed only while it still
        points at this session. Returns True if a snapshot was removed.
        """
        pass

    @abstractmethod
    def get_user_session(self, user_id: str) -> Optional[str]:
        """Returns the session id the user index points at, if any."""
        pass

    @abstractmethod
    def touch(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        """Extends the TTL of the snapshot, and of the user index while it points at this session."""
        pass

    @abstractmethod
    def iter_session_ids(self) -> Iterator[str]:
        pass

    def ping(self) -> bool:
        return True


class InMemorySessionCache(SessionCache):
    """
    In-process dictionary with TTL semantics, for tests and single-process
    development. Snapshots are stored serialized so callers never share
    mutable state with the store.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._user_index: Dict[str, Tuple[str, float]] = {}

    def _alive(self, rec: Optional[Tuple[str, float]]) -> bool:
        return rec is not None and rec[1] > self.clock()

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            rec = self._sessions.get(session_id)
            if not self._alive(rec):
                self._sessions.pop(session_id, None)
                return None
            payload = rec[0]
        return SessionState.model_validate_json(payload)

    def set(self, state: SessionState, ttl_seconds: int) -> None:
        payload = state.model_dump_json()
        expires_at = self.clock() + ttl_seconds
        with self._lock:
            self._sessions[state.session_id] = (payload, expires_at)
            self._user_index[state.user_id] = (state.session_id, expires_at)

    def delete(self, session_id: str, user_id: Optional[str] = None) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            if user_id is not None:
                rec = self._user_index.get(user_id)
                if rec is not None and rec[0] == session_id:
                    del self._user_index[user_id]
            return removed

    def get_user_session(self, user_id: str) -> Optional[str]:
        with self._lock:
            rec = self._user_index.get(user_id)
            if not self._alive(rec):
                self._user_index.pop(user_id, None)
                return None
            return rec[0]

    def touch(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        expires_at = self.clock() + ttl_seconds
        with self._lock:
            rec = self._sessions.get(session_id)
            if rec is not None:
                self._sessions[session_id] = (rec[0], expires_at)
            idx = self._user_index.get(user_id)
            if idx is not None and idx[0] == session_id:
                self._user_index[user_id] = (session_id, expires_at)

    def iter_session_ids(self) -> Iterator[str]:
        with self._lock:
            ids = [sid for sid, rec in self._sessions.items() if self._alive(rec)]
        return iter(ids)


class RedisSessionCache(SessionCache):
    def __init__(self, client: redis.Redis, prefix: str = "onboarding:"):
        self.client = client
        self.prefix = prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self.prefix}session:{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}user_session:{user_id}"

    def get(self, session_id: str) -> Optional[SessionState]:
        data = self.client.get(self._session_key(session_id))
        if not data:
            return None
        try:
            return SessionState.model_validate_json(data)
        except ValidationError as e:
            log_event("session_record_corrupt", level="ERROR", session_id=session_id, error=str(e))
            return None

    def set(self, state: SessionState, ttl_seconds: int) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.setex(self._session_key(state.session_id), ttl_seconds, state.model_dump_json())
        pipe.setex(self._user_key(state.user_id), ttl_seconds, state.session_id)
        pipe.execute()

    def delete(self, session_id: str, user_id: Optional[str] = None) -> bool:
        session_key = self._session_key(session_id)
        if user_id is None:
            return bool(self.client.delete(session_key))

        user_key = self._user_key(user_id)

        def _compare_and_delete(pipe):
            current = pipe.get(user_key)
            pipe.multi()
            pipe.delete(session_key)
            if current == session_id:
                pipe.delete(user_key)

        results = self.client.transaction(_compare_and_delete, user_key)
        return bool(results and results[0])

    def get_user_session(self, user_id: str) -> Optional[str]:
        return self.client.get(self._user_key(user_id)) or None

    def touch(self, session_id: str, user_id: str, ttl_seconds: int) -> None:
        session_key = self._session_key(session_id)
        user_key = self._user_key(user_id)

        def _compare_and_expire(pipe):
            current = pipe.get(user_key)
            pipe.multi()
            pipe.expire(session_key, ttl_seconds)
            if current == session_id:
                pipe.expire(user_key, ttl_seconds)

        self.client.transaction(_compare_and_expire, user_key)

    def iter_session_ids(self) -> Iterator[str]:
        base = self._session_key("")
        for key in self.client.scan_iter(f"{base}*"):
            yield key[len(base):]

    def ping(self) -> bool:
        return bool(self.client.ping())


def create_session_cache(settings: Settings) -> SessionCache:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as e:
        # Fall back to in-memory if Redis is not available
        log_event(
            "session_cache_fallback",
            level="WARNING",
            backend="memory",
            error=str(e),
        )
        return InMemorySessionCache()
    return RedisSessionCache(client)
