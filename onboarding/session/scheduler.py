"""
Session Scheduler

Background ticker plus a session-id work queue. Foreground calls only arm or
disarm entries; the ticker decides what is due and runs the bound handlers
off the request path. Handler failures are logged and counted, never raised:
timers are advisory and correctness rests on lazy expiry in the manager.
"""

import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

from onboarding.obs.logger import log_event
from onboarding.obs.metrics import inc_counter


class JobKind(Enum):
    AUTO_SAVE = "auto_save"
    EXPIRY = "expiry"
    SWEEP = "sweep"


class SessionScheduler:
    def __init__(
        self,
        tick_seconds: float = 1.0,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.tick_seconds = tick_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock
        self._lock = threading.Lock()
        # session_id -> (next_due, interval)
        self._auto_save: Dict[str, Tuple[float, float]] = {}
        # session_id -> deadline
        self._expiry: Dict[str, float] = {}
        self._queue: Deque[Tuple[JobKind, Optional[str]]] = deque()
        self._handlers: Dict[JobKind, Callable] = {}
        self._next_sweep: Optional[float] = (
            clock() + sweep_interval_seconds if sweep_interval_seconds else None
        )
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    def bind(
        self,
        auto_save: Callable[[str], None],
        expiry: Callable[[str], None],
        sweep: Optional[Callable[[], object]] = None,
    ) -> None:
        self._handlers[JobKind.AUTO_SAVE] = auto_save
        self._handlers[JobKind.EXPIRY] = expiry
        if sweep is not None:
            self._handlers[JobKind.SWEEP] = sweep

    # -- arming -------------------------------------------------------------

    def arm_auto_save(self, session_id: str, interval_seconds: float) -> None:
        """Periodic; keeps the current schedule if already armed."""
        with self._lock:
            if session_id in self._auto_save:
                return
            self._auto_save[session_id] = (self.clock() + interval_seconds, interval_seconds)

    def disarm_auto_save(self, session_id: str) -> None:
        with self._lock:
            self._auto_save.pop(session_id, None)

    def arm_expiry(self, session_id: str, deadline: float) -> None:
        """Single-shot; re-arming replaces the previous deadline."""
        with self._lock:
            self._expiry[session_id] = deadline

    def disarm(self, session_id: str) -> None:
        with self._lock:
            self._auto_save.pop(session_id, None)
            self._expiry.pop(session_id, None)

    def is_armed(self, kind: JobKind, session_id: str) -> bool:
        with self._lock:
            if kind is JobKind.AUTO_SAVE:
                return session_id in self._auto_save
            if kind is JobKind.EXPIRY:
                return session_id in self._expiry
        return False

    def expiry_deadline(self, session_id: str) -> Optional[float]:
        with self._lock:
            return self._expiry.get(session_id)

    def armed_counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "auto_save": len(self._auto_save),
                "expiry": len(self._expiry),
                "queued": len(self._queue),
            }

    # -- ticking ------------------------------------------------------------

    def _collect_due(self, now: float) -> None:
        with self._lock:
            for session_id, (due, interval) in list(self._auto_save.items()):
                if due <= now:
                    self._queue.append((JobKind.AUTO_SAVE, session_id))
                    self._auto_save[session_id] = (now + interval, interval)
            for session_id, deadline in list(self._expiry.items()):
                if deadline <= now:
                    self._queue.append((JobKind.EXPIRY, session_id))
                    del self._expiry[session_id]
            if self._next_sweep is not None and self._next_sweep <= now:
                self._queue.append((JobKind.SWEEP, None))
                self._next_sweep = now + self.sweep_interval_seconds

    def _next_job(self) -> Optional[Tuple[JobKind, Optional[str]]]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def tick(self, now: Optional[float] = None) -> int:
        """Queue everything due at `now` and drain the queue. Returns jobs run."""
        self._collect_due(self.clock() if now is None else now)
        ran = 0
        while True:
            job = self._next_job()
            if job is None:
                return ran
            kind, session_id = job
            handler = self._handlers.get(kind)
            if handler is None:
                continue
            try:
                if kind is JobKind.SWEEP:
                    handler()
                else:
                    handler(session_id)
                inc_counter("scheduler_jobs_total", {"kind": kind.value, "result": "ok"})
            except Exception as e:
                inc_counter("scheduler_jobs_total", {"kind": kind.value, "result": "error"})
                log_event(
                    "scheduler_job_failed",
                    level="ERROR",
                    kind=kind.value,
                    session_id=session_id,
                    error=str(e),
                )
            ran += 1

    async def run(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.tick_seconds)
            # Handlers do blocking cache I/O; keep it off the event loop
            await asyncio.to_thread(self.tick)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        self._stopping = False
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
