"""
Supervised fire-and-forget tasks.

Alert ingestion must answer its caller as soon as the alert is persisted,
so dispatch runs as an asyncio task that nothing awaits. The supervisor
keeps a strong reference to each task until it finishes, logs any
exception that escaped the task body, and lets the app lifespan drain
outstanding work on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Owns background tasks spawned on behalf of HTTP requests.

    Usage:
        supervisor = TaskSupervisor()
        supervisor.spawn(orchestrator.dispatch(alert), name=f"dispatch:{alert.id}")
        ...
        await supervisor.drain(timeout=10.0)
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all outstanding tasks; cancel whatever is left at timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        logger.info("Draining %d background task(s)", len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
