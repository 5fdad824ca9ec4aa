"""ASGI middleware tying requests to request ids, latency and logs."""

from typing import Any, Callable, Optional
import re
import time
import uuid

from onboarding.obs.context import request_id_var
from onboarding.obs.logger import log_event
from onboarding.obs.metrics import inc_counter, record_timing

REQUEST_ID_HEADER = b"x-request-id"
_SESSION_SEGMENT = re.compile(r"(/sessions/)[^/]+")


def route_label(path: str) -> str:
    """Collapse session ids in a path so metric labels stay bounded."""
    return _SESSION_SEGMENT.sub(r"\1{session_id}", path)


def _incoming_request_id(scope: dict) -> Optional[str]:
    for name, value in scope.get("headers") or []:
        if name.lower() == REQUEST_ID_HEADER:
            rid = value.decode("latin-1").strip()
            return rid[:128] or None
    return None


class ObservabilityMiddleware:
    def __init__(self, app: Callable):
        self.app = app

    async def __call__(self, scope: dict, receive: Callable, send: Callable[[dict], Any]):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        req_id = _incoming_request_id(scope) or str(uuid.uuid4())
        token = request_id_var.set(req_id)
        route = route_label(scope.get("path", ""))
        start = time.monotonic()
        status_code = 500

        async def send_wrapper(message: dict):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 200))
                headers = list(message.get("headers") or [])
                headers.append((REQUEST_ID_HEADER, req_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            log_event("request_failed", level="ERROR", route=route, error=repr(e))
            raise
        finally:
            elapsed_ms = (time.monotonic() - start) * 1000.0
            record_timing("request_latency_ms", elapsed_ms, {"route": route})
            inc_counter("requests_total", {"route": route, "status": str(status_code)})
            log_event(
                "request",
                level="WARNING" if status_code >= 500 else "INFO",
                method=scope.get("method", ""),
                route=route,
                status=status_code,
                ms_total=round(elapsed_ms, 2),
            )
            request_id_var.reset(token)
