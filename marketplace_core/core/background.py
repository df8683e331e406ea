"""
Fire-and-forget side work that must never break the caller's flow.

Each submitted coroutine runs as its own task; its outcome is captured in a
``BackgroundResult``, logged, and otherwise discarded.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Coroutine, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackgroundResult:
    name: str
    ok: bool
    error: Optional[str] = None


async def run_detached(name: str, coro: Coroutine[Any, Any, Any]) -> BackgroundResult:
    """Await ``coro`` and turn its outcome into a result instead of an exception."""
    try:
        await coro
    except Exception as e:
        logger.warning("background_task_failed", task=name, error=str(e), exc_info=True)
        return BackgroundResult(name=name, ok=False, error=str(e))
    logger.debug("background_task_completed", task=name)
    return BackgroundResult(name=name, ok=True)


class BackgroundTasks:
    """Keeps references to running detached tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: Set["asyncio.Task[BackgroundResult]"] = set()

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[BackgroundResult]":
        task = asyncio.create_task(run_detached(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> List[BackgroundResult]:
        """Wait for every task submitted so far."""
        if not self._tasks:
            return []
        return list(await asyncio.gather(*self._tasks))
