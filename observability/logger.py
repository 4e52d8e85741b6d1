"""
Observability Layer — Structured Logging & metrics.

Responsibility:
- Log command lifecycle events in a structured JSON format
- Track latency of model calls, tool calls and undo replays
- Contextual logging (command_id, workspace_id, trace_id)

Error detail that must never reach a client is logged here.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("observability")


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class Observability:
    """Structured logger for command events."""

    def __init__(self, command_id: str | None = None, workspace_id: str | None = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.workspace_id = workspace_id
        self.trace_id = str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Log a structured event."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "command_id": self.command_id,
            "trace_id": self.trace_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        if self.workspace_id:
            entry["workspace_id"] = self.workspace_id

        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, default=_json_default))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Context manager to measure execution time of an operation."""
        start_time = time.perf_counter()
        meta = metadata or {}
        success = True
        error = None
        try:
            yield
        except BaseException as e:
            success = False
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
            )

