"""Request and session context helpers using ContextVars.

Identifiers set here are attached to every structured log line emitted
while they are in scope.
"""

from contextvars import ContextVar
from contextlib import contextmanager
from typing import Iterator, Optional


# Public ContextVars (names are stable API)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


@contextmanager
def session_context(session_id: Optional[str], user_id: Optional[str] = None) -> Iterator[None]:
    """Bind session/user identifiers for the duration of a block."""
    sid_token = session_id_var.set(session_id)
    uid_token = user_id_var.set(user_id) if user_id is not None else None
    try:
        yield
    finally:
        session_id_var.reset(sid_token)
        if uid_token is not None:
            user_id_var.reset(uid_token)
