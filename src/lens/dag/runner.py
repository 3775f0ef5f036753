"""DAG runner — materializes models group by group, in dependency order."""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Awaitable

from lens.core.errors import RunError
from lens.dag.resolver import DAGResolver
from lens.pipeline.types import RunStatus

logger = logging.getLogger("lens.dag")

PARTIAL = "partial"


@dataclass
class DAGRunResult:
    """Outcome of one warehouse run."""
    status: str = RunStatus.PENDING.value  # pending | running | success | failed | partial
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    results: dict[str, dict] = field(default_factory=dict)  # model name → materialization stats
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    execution_order: list[list[str]] = field(default_factory=list)

    def finish(self) -> None:
        self.finished_at = datetime.now(tz=timezone.utc)
        self.duration_ms = int((self.finished_at - self.started_at).total_seconds() * 1000)
        if self.failed and len(self.failed) == len(self.results):
            self.status = RunStatus.FAILED.value
        elif self.failed or self.skipped:
            self.status = PARTIAL
        else:
            self.status = RunStatus.SUCCESS.value

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "results": self.results,
            "failed": self.failed,
            "skipped": self.skipped,
            "execution_order": self.execution_order,
        }


class DAGRunner:
    """Runs a model graph one parallel group at a time.

    A model whose upstream failed or was skipped is skipped too. With
    ``fail_fast`` the first failure skips every later group.
    """

    def __init__(
        self,
        dag: DAGResolver,
        run_fn: Callable[[str], Awaitable[dict]],
        max_parallel: int = 4,
        fail_fast: bool = False,
    ):
        """
        Args:
            dag: The model graph
            run_fn: Async function that materializes a model by name and returns its stats
            max_parallel: Max models running at once within a group
            fail_fast: Skip all remaining models after the first failure
        """
        self.dag = dag
        self.run_fn = run_fn
        self.max_parallel = max_parallel
        self.fail_fast = fail_fast

    async def run(self, select: str | None = None) -> DAGRunResult:
        """Run the graph, or the part of it picked by a selector (see DAGResolver.select)."""
        dag = self.dag.select(select) if select else self.dag
        groups = dag.parallel_groups()
        result = DAGRunResult(
            status=RunStatus.RUNNING.value,
            started_at=datetime.now(tz=timezone.utc),
            execution_order=groups,
        )
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run_one(name: str) -> None:
            async with semaphore:
                logger.info(f"Running model: {name}")
                try:
                    stats = await self.run_fn(name)
                except RunError as e:
                    # The model's table rolled back; other models carry on
                    logger.error(f"Model {name} aborted: {e}")
                    self._fail(result, name, e)
                    return
                except Exception as e:
                    logger.exception(f"Model {name} failed: {e}")
                    self._fail(result, name, e)
                    return
                result.results[name] = stats
                if stats.get("status") == RunStatus.FAILED.value:
                    result.failed.append(name)

        for group in groups:
            if self.fail_fast and result.failed:
                result.skipped.extend(group)
                continue

            blocked = set(result.failed) | set(result.skipped)
            runnable = []
            for name in group:
                if dag.get_upstream(name) & blocked:
                    logger.info(f"Skipping {name}: an upstream model did not complete")
                    result.skipped.append(name)
                else:
                    runnable.append(name)

            await asyncio.gather(*[run_one(name) for name in runnable])

        result.finish()
        return result

    def _fail(self, result: DAGRunResult, name: str, error: Exception) -> None:
        result.failed.append(name)
        result.results[name] = {
            "status": RunStatus.FAILED.value,
            "error": str(error),
            "error_type": type(error).__name__,
        }

    async def run_downstream(self, trigger: str) -> DAGRunResult:
        """Run a model and every model downstream of it."""
        return await self.run(select=f"{trigger}+")
