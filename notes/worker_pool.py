"""
Note Worker Pool

Bounded asyncio worker pool for note processing. Core workers live for the
lifetime of the pool; burst workers are added while the queue holds a
backlog and exit again once they sit idle. Submissions beyond the queue
depth are rejected (or wait up to ``submit_timeout``), never dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Set

from exceptions import QueueFullError

logger = logging.getLogger(__name__)

Handler = Callable[[str], Awaitable[object]]


class NoteWorkerPool:
    def __init__(
        self,
        handler: Handler,
        core_workers: int = 5,
        max_workers: int = 10,
        queue_depth: int = 25,
        submit_timeout: float = 0.0,
        burst_idle_timeout: float = 5.0,
    ):
        if core_workers < 1 or max_workers < core_workers:
            raise ValueError(f"invalid worker bounds: core={core_workers}, max={max_workers}")
        if queue_depth < 1:
            raise ValueError(f"queue depth must be positive, got {queue_depth}")
        self.handler = handler
        self.core_workers = core_workers
        self.max_workers = max_workers
        self.queue_depth = queue_depth
        self.submit_timeout = submit_timeout
        self.burst_idle_timeout = burst_idle_timeout

        self._queue: Optional[asyncio.Queue] = None
        self._core: List[asyncio.Task] = []
        self._burst: Set[asyncio.Task] = set()
        self._accepting = False
        self._busy = 0
        self._feeder: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._accepting

    def stats(self) -> dict:
        return {
            "accepting": self._accepting,
            "queued": self._queue.qsize() if self._queue else 0,
            "busy": self._busy,
            "core_workers": len(self._core),
            "burst_workers": len(self._burst),
        }

    async def start(self) -> None:
        if self._accepting:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_depth)
        self._core = [
            asyncio.create_task(self._worker(f"note-worker-{i}"))
            for i in range(self.core_workers)
        ]
        self._accepting = True
        logger.info(
            f"🚀 Note worker pool started: {self.core_workers} core, up to {self.max_workers} workers, "
            f"queue depth {self.queue_depth}"
        )

    async def _worker(self, name: str, idle_timeout: Optional[float] = None) -> None:
        while True:
            try:
                if idle_timeout is None:
                    task_id = await self._queue.get()
                else:
                    task_id = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"{name} idle, exiting")
                return

            self._busy += 1
            try:
                await self.handler(task_id)
            except Exception:
                logger.exception(f"❌ {name} failed processing task {task_id}")
            finally:
                self._busy -= 1
                self._queue.task_done()

    def _maybe_burst(self) -> None:
        workers = len(self._core) + len(self._burst)
        if self._queue.qsize() == 0 or workers >= self.max_workers:
            return
        task = asyncio.create_task(
            self._worker(f"note-burst-{workers}", idle_timeout=self.burst_idle_timeout)
        )
        self._burst.add(task)
        task.add_done_callback(self._burst.discard)
        logger.info(f"Burst worker added ({workers + 1}/{self.max_workers}), backlog {self._queue.qsize()}")

    async def submit(self, task_id: str, wait: bool = False) -> None:
        """
        Queue a processing task.

        With ``wait`` the call blocks until the queue has room instead of
        applying ``submit_timeout``.

        Raises:
            QueueFullError: pool not accepting, or queue still full after submit_timeout
        """
        if not self._accepting:
            raise QueueFullError("Note worker pool is not accepting work")
        if wait:
            await self._queue.put(task_id)
        elif self.submit_timeout > 0:
            try:
                await asyncio.wait_for(self._queue.put(task_id), timeout=self.submit_timeout)
            except asyncio.TimeoutError as e:
                raise QueueFullError(f"Note queue full after waiting {self.submit_timeout}s") from e
        else:
            try:
                self._queue.put_nowait(task_id)
            except asyncio.QueueFull as e:
                raise QueueFullError(f"Note queue full ({self.queue_depth} waiting)") from e
        self._maybe_burst()

    def feed(self, task_ids: Sequence[str]) -> asyncio.Task:
        """
        Queue a backlog in the background, each task waiting for room.

        Used for tasks resubmitted at startup, which may outnumber the queue
        depth. Tasks not queued before shutdown stay pending in the database.
        """
        async def _feed() -> None:
            for i, task_id in enumerate(task_ids):
                try:
                    await self.submit(task_id, wait=True)
                except QueueFullError:
                    logger.warning(f"Pool stopped, {len(task_ids) - i} resubmitted task(s) left pending")
                    return
            logger.info(f"Resubmitted {len(task_ids)} task(s)")

        self._feeder = asyncio.create_task(_feed())
        return self._feeder

    async def shutdown(self, timeout: float = 30.0) -> bool:
        """
        Stop intake and drain queued and in-flight work.

        Returns True when everything drained within ``timeout``.
        """
        if self._queue is None:
            return True
        self._accepting = False
        if self._feeder is not None and not self._feeder.done():
            self._feeder.cancel()
            await asyncio.gather(self._feeder, return_exceptions=True)
        drained = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            drained = False
            logger.warning(
                f"⚠️ Note worker pool did not drain within {timeout}s "
                f"({self._queue.qsize()} queued, {self._busy} in flight)"
            )

        workers = self._core + list(self._burst)
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._core = []
        self._burst.clear()
        logger.info("🛑 Note worker pool stopped")
        return drained
