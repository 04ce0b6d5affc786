"""Single-drain in-process FIFO for background jobs."""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Generic, TypeVar

from recall_chat.logging import get_logger

log = get_logger(__name__)

J = TypeVar("J")


class DrainQueue(ABC, Generic[J]):
    """FIFO job queue drained by at most one task at a time.

    A failing job is logged and dropped; it never stops the drain or blocks
    the jobs queued behind it. Jobs are not durable across restarts.
    """

    name = "worker"

    def __init__(self) -> None:
        self._queue: deque[J] = deque()
        self._draining = False
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def draining(self) -> bool:
        return self._draining

    def pending(self) -> list[J]:
        return list(self._queue)

    def _push(self, job: J) -> None:
        self._queue.append(job)
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._draining:
            return
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                job = self._queue.popleft()
                try:
                    await self._run(job)
                except Exception as e:
                    log.error("Background job failed", worker=self.name, job=repr(job), error=str(e))
        finally:
            self._draining = False
            self._drain_task = None

    @abstractmethod
    async def _run(self, job: J) -> None:
        pass

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        while True:
            task = self._drain_task
            if task is None:
                return
            await task
