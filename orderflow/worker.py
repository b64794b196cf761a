from __future__ import annotations
import asyncio
from typing import Optional

import structlog

from .pipeline import Pipeline

logger = structlog.get_logger(__name__)


class FulfillmentWorker:
    """
    Background loop of the fulfillment scheduler.

    Every ``poll_seconds``: requeue jobs whose worker died, expire overdue
    payments, then run one batch of due jobs. A failing tick is logged and
    the loop carries on.
    """

    def __init__(self, pipeline: Pipeline, poll_seconds: float = 10.0):
        self.pipeline = pipeline
        self.poll_seconds = poll_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Fulfillment worker started",
                    poll_seconds=self.poll_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Fulfillment worker stopped")

    async def tick(self) -> int:
        await self.pipeline.housekeeping()
        results = await self.pipeline.run_batch()
        return len(results)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Fulfillment tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.poll_seconds)
            except asyncio.TimeoutError:
                pass
