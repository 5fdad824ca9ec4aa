"""Observability for the session engine.

`context` binds request/session/user ids, `logger` writes JSON lines that
carry them, `metrics` holds in-process series served at /metrics, and
`middleware` wires all three into each HTTP request.
"""

__all__ = ["context", "logger", "metrics", "middleware"]
