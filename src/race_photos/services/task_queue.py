"""Bounded worker pool for per-photo processing units."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time queue counters."""

    running: int
    queued: int
    max_concurrent: int


@dataclass
class BoundedTaskQueue:
    """FIFO backlog drained by a fixed number of asyncio workers.

    Workers start lazily on the first enqueue so the queue can be built
    outside a running event loop. A failing unit is logged and counted as
    finished; it is never retried.
    """

    max_concurrent: int = 4
    _backlog: asyncio.Queue[UnitOfWork] | None = field(default=None, init=False)
    _workers: list[asyncio.Task[None]] = field(default_factory=list, init=False)
    _running: int = field(default=0, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

    def enqueue(self, unit: UnitOfWork) -> None:
        """Add a unit to the backlog without waiting for it to run."""
        self._ensure_workers().put_nowait(unit)

    @property
    def stats(self) -> QueueStats:
        """Return running, queued and capacity counts."""
        queued = self._backlog.qsize() if self._backlog is not None else 0
        return QueueStats(
            running=self._running,
            queued=queued,
            max_concurrent=self.max_concurrent,
        )

    async def join(self) -> None:
        """Wait until every enqueued unit has finished."""
        if self._backlog is not None:
            await self._backlog.join()

    async def close(self) -> None:
        """Stop the workers; units still in the backlog are dropped."""
        if self._loop is asyncio.get_running_loop():
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._backlog = None
        self._loop = None

    def _ensure_workers(self) -> asyncio.Queue[UnitOfWork]:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # Workers from a previous event loop can no longer run.
            self._loop = loop
            self._backlog = None
            self._workers.clear()
            self._running = 0
        if self._backlog is None:
            self._backlog = asyncio.Queue()
        backlog = self._backlog
        if not self._workers:
            for index in range(self.max_concurrent):
                self._workers.append(
                    asyncio.create_task(
                        self._worker(backlog), name=f"photo-worker-{index}"
                    )
                )
        return backlog

    async def _worker(self, backlog: asyncio.Queue[UnitOfWork]) -> None:
        while True:
            unit = await backlog.get()
            self._running += 1
            try:
                await unit()
            except Exception:
                logger.exception("Processing unit failed")
            finally:
                self._running -= 1
                backlog.task_done()
