"""Structured JSON logging to stdout.

One JSON object per line, enriched with the request/session/user ids bound in
`obs.context`. User ids and client addresses are masked before they are
written; events below LOG_LEVEL are dropped.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from onboarding.config import settings
from onboarding.obs.context import request_id_var, session_id_var, user_id_var

LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


def _mask_user(value: Any) -> Any:
    s = str(value) if value is not None else ""
    if not s:
        return s
    if len(s) <= 4:
        return "***"
    return f"***{s[-4:]}"


def _mask_ip(value: Any) -> Any:
    s = str(value or "")
    if "." in s:
        return ".".join(s.split(".")[:2] + ["x", "x"])
    if ":" in s:
        return s.split(":")[0] + ":x"
    return s


_MASKERS = {"user_id": _mask_user, "ip_address": _mask_ip}


def enabled(level: str) -> bool:
    return LEVELS.get(level, 20) >= LEVELS.get(settings.LOG_LEVEL, 20)


def log_event(event: str, **fields: Any) -> None:
    level = fields.pop("level", "INFO")
    if not enabled(level):
        return

    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "request_id": request_id_var.get(),
        "session_id": session_id_var.get(),
        "user_id": user_id_var.get(),
    }
    # Explicit fields win over context
    payload.update(fields)
    for key, mask in _MASKERS.items():
        if key in payload:
            payload[key] = mask(payload[key])

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str), flush=True)
    except (TypeError, ValueError):
        # Logging must never take a session operation down with it
        pass
