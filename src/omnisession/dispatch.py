"""Per-session sequential persistence queues.

Each session id gets its own SessionQueue: an asyncio.Queue drained by
one worker task. Jobs for one session therefore reach the gateway in
the order they were submitted, and a slow save_message can never be
overtaken by the next one. Different sessions have independent queues
and their gateway calls may be in flight at the same time.

    dispatcher = PersistenceDispatcher(runner=store._execute)
    dispatcher.submit(PersistJob(PersistOp.SAVE_MESSAGE, "sess-1", call))
    await dispatcher.drain()

Workers are started lazily on first submit, so submit() must be called
with a running event loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from omnisession.events import PersistOp

logger = logging.getLogger(__name__)


@dataclass
class PersistJob:
    """One gateway call waiting for its turn."""
    operation: PersistOp
    session_id: str
    call: Callable[[], Awaitable[None]]
    message_id: str | None = None


JobRunner = Callable[[PersistJob], Awaitable[None]]

_STOP = object()


class SessionQueue:
    """FIFO of persistence jobs for a single session."""

    def __init__(self, session_id: str, runner: JobRunner):
        self.session_id = session_id
        self._runner = runner
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._retired = False

    def submit(self, job: PersistJob) -> None:
        if self._retired:
            raise RuntimeError(f"Queue for session {self.session_id} is retired")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=f"persist:{self.session_id}")
        self._queue.put_nowait(job)

    def retire(self) -> None:
        """Finish the queued jobs, then let the worker exit."""
        if self._retired:
            return
        self._retired = True
        if self._task is not None:
            self._queue.put_nowait(_STOP)

    def discard_pending(self) -> int:
        """Drop jobs that have not started yet. Returns how many."""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if item is _STOP:
                # Keep the stop marker so the worker still exits
                self._queue.put_nowait(_STOP)
                break
            dropped += 1
        return dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def retired(self) -> bool:
        return self._retired

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker without waiting for queued jobs."""
        self._retired = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is _STOP:
                    return
                logger.debug(
                    f"Running {job.operation.value} for session {self.session_id}")
                await self._runner(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Gateway failures are reported by the runner itself
                logger.exception(
                    f"Persistence job {job.operation.value} crashed for session {self.session_id}")
            finally:
                self._queue.task_done()


class PersistenceDispatcher:
    """Routes persistence jobs to per-session queues."""

    def __init__(self, runner: JobRunner):
        self._runner = runner
        self._queues: dict[str, SessionQueue] = {}
        self._retiring: list[SessionQueue] = []

    def submit(self, job: PersistJob) -> None:
        queue = self._queues.get(job.session_id)
        if queue is None:
            queue = SessionQueue(job.session_id, self._runner)
            self._queues[job.session_id] = queue
        queue.submit(job)

    def retire(self, session_id: str) -> None:
        """Stop accepting jobs for a session once its queue empties."""
        queue = self._queues.pop(session_id, None)
        if queue is None:
            return
        queue.retire()
        self._retiring.append(queue)

    def discard(self, session_id: str) -> int:
        """Drop a session's not-yet-started jobs and retire its queue."""
        queue = self._queues.get(session_id)
        if queue is None:
            return 0
        dropped = queue.discard_pending()
        self.retire(session_id)
        return dropped

    def pending(self, session_id: str | None = None) -> int:
        if session_id is not None:
            queue = self._queues.get(session_id)
            return queue.pending if queue else 0
        return sum(q.pending for q in self._all_queues())

    def _all_queues(self) -> list[SessionQueue]:
        return list(self._queues.values()) + list(self._retiring)

    async def drain(self) -> None:
        """Wait until every queued job (including ones queued meanwhile) ran."""
        while True:
            queues = self._all_queues()
            await asyncio.gather(*(q.join() for q in queues))
            self._retiring = [q for q in self._retiring if not q.done]
            if all(q.pending == 0 for q in self._all_queues()):
                return

    async def close(self) -> None:
        await self.drain()
        queues = self._all_queues()
        self._queues.clear()
        self._retiring.clear()
        for queue in queues:
            await queue.stop()
