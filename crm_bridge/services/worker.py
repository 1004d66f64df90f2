from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog

from crm_bridge.schemas.webhook import SyncJob, SyncResult

logger = structlog.get_logger(__name__)

SyncHandler = Callable[[SyncJob], Awaitable[SyncResult]]


class SyncWorker:
    """Runs sync jobs one at a time, off the request path."""

    def __init__(self, handler: SyncHandler, poll_sec: float = 1.0) -> None:
        self.handler = handler
        self.poll_sec = poll_sec
        self.queue: asyncio.Queue[SyncJob] = asyncio.Queue()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self.queue.qsize()

    def submit(self, job: SyncJob) -> None:
        self.queue.put_nowait(job)
        logger.info(
            "sync_enqueued",
            conversation_id=job.conversation_id,
            account_id=job.account_id,
            pending=self.queue.qsize(),
        )

    async def process(self, job: SyncJob) -> SyncResult | None:
        with structlog.contextvars.bound_contextvars(
            conversation_id=job.conversation_id,
            account_id=job.account_id,
        ):
            try:
                return await self.handler(job)
            except Exception as exc:
                logger.exception("sync_failed", error=str(exc))
                return None

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                job = await asyncio.wait_for(self.queue.get(), timeout=self.poll_sec)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process(job)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._stop_event = None
