"""
Execution tracing.

Every agent execution gets one tracer. It writes one JSON line per event to the
``observability`` logger and keeps per-stage wall-clock timings so the engine
can report where the time went once the run is persisted.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

logger = logging.getLogger("observability")


class ExecutionTracer:
    """JSON event logger scoped to a single execution."""

    def __init__(self, execution_id: str | None = None, component: str = "engine"):
        self.execution_id = execution_id or str(uuid.uuid4())
        self.component = component
        self.timings: dict[str, float] = {}

    def event(self, name: str, fields: dict[str, Any] | None = None, level: int = logging.INFO) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "executionId": self.execution_id,
            "component": self.component,
            "event": name,
            **(fields or {}),
        }
        logger.log(level, json.dumps(record, ensure_ascii=False, default=str))

    @contextmanager
    def stage(self, name: str, fields: dict[str, Any] | None = None) -> Iterator[None]:
        """Time a block; repeated stages accumulate."""
        started = time.perf_counter()
        failure: str | None = None
        try:
            yield
        except Exception as exc:
            failure = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            self.timings[name] = round(self.timings.get(name, 0.0) + elapsed_ms, 2)
            self.event(
                f"stage.{name}",
                {"elapsedMs": elapsed_ms, "failed": failure is not None, "error": failure, **(fields or {})},
                level=logging.WARNING if failure else logging.DEBUG,
            )

    def total_ms(self) -> float:
        return round(sum(self.timings.values()), 2)
