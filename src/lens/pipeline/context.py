"""RunContext — the run-level state passed to every materialization."""

from __future__ import annotations
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from lens.tables.base import Table


@dataclass
class StepTrace:
    name: str
    status: str = "pending"
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    rows_in: int | None = None
    rows_out: int | None = None
    error: dict | None = None
    metadata: dict = field(default_factory=dict)


class RunContext:
    """Runtime context for one warehouse run.

    ``run_started_at`` is fixed for the whole run; the history versioner
    uses it to close records whose keys vanished from the source.
    ``for_model`` derives a per-model context that shares the run's logs
    and steps but names its own target table.
    """

    def __init__(
        self,
        run_id: str | None = None,
        run_started_at: datetime | None = None,
        full_refresh: bool = False,
        params: dict | None = None,
        model_name: str | None = None,
        target: "Table | None" = None,
    ):
        self.run_id = run_id or str(uuid.uuid4())
        self.run_started_at = run_started_at or datetime.now(tz=timezone.utc).replace(tzinfo=None)
        self.full_refresh = full_refresh
        self.params = params or {}
        self.model_name = model_name
        self.target = target
        self._logs: list[str] = []
        self._steps: list[StepTrace] = []

    def for_model(self, model_name: str, target: "Table | None" = None) -> "RunContext":
        child = RunContext(
            run_id=self.run_id,
            run_started_at=self.run_started_at,
            full_refresh=self.full_refresh,
            params=self.params,
            model_name=model_name,
            target=target,
        )
        child._logs = self._logs
        child._steps = self._steps
        return child

    def log(self, message: str) -> None:
        """Log a message (captured in the run trace)."""
        ts = datetime.now(tz=timezone.utc).isoformat()
        prefix = f"[{self.model_name}] " if self.model_name else ""
        self._logs.append(f"[{ts}] {prefix}{message}")

    def step(self, name: str) -> "StepContext":
        """Start a named step for tracing."""
        return StepContext(self, name)

    def param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)

    def get_logs(self) -> str:
        return "\n".join(self._logs)

    def get_trace(self) -> dict:
        return {
            "run_id": self.run_id,
            "run_started_at": self.run_started_at.isoformat(),
            "full_refresh": self.full_refresh,
            "steps": [
                {
                    "name": s.name,
                    "status": s.status,
                    "started_at": s.started_at.isoformat() if s.started_at else None,
                    "finished_at": s.finished_at.isoformat() if s.finished_at else None,
                    "duration_ms": s.duration_ms,
                    "rows_in": s.rows_in,
                    "rows_out": s.rows_out,
                    "error": s.error,
                    **s.metadata,
                }
                for s in self._steps
            ],
            "log_lines": len(self._logs),
        }


class StepContext:
    """Context manager for traced steps."""

    def __init__(self, ctx: RunContext, name: str):
        self.ctx = ctx
        self.trace = StepTrace(name=name)

    async def __aenter__(self):
        self.trace.started_at = datetime.now(tz=timezone.utc)
        self.trace.status = "running"
        self.ctx._steps.append(self.trace)
        self.ctx.log(f"Step started: {self.trace.name}")
        return self.trace

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.trace.finished_at = datetime.now(tz=timezone.utc)
        if self.trace.started_at:
            self.trace.duration_ms = int(
                (self.trace.finished_at - self.trace.started_at).total_seconds() * 1000
            )
        if exc_type:
            self.trace.status = "failed"
            self.trace.error = {"type": exc_type.__name__, "message": str(exc_val)}
            self.ctx.log(f"Step failed: {self.trace.name} — {exc_val}")
        else:
            self.trace.status = "success"
            self.ctx.log(f"Step completed: {self.trace.name}")
        return False  # don't suppress exceptions
