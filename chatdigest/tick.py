"""
Tick loop: the single cooperative driver of the engine.

Each tick runs the command processor, then the scheduler, each behind its
own error boundary. Ticks never overlap: the next sleep starts only after
the current tick has finished.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from chatdigest.commands import CommandProcessor
from chatdigest.metrics import record_tick_error
from chatdigest.scheduler import Scheduler
from chatdigest.utils import utcnow

logger = logging.getLogger(__name__)


class TickLoop:
    def __init__(
        self,
        processor: CommandProcessor,
        scheduler: Scheduler,
        interval_seconds: float = 5.0,
    ):
        self.processor = processor
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self._stop = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self, now: Optional[datetime] = None) -> None:
        try:
            if await self.processor.check_logout():
                # The session was just reset; nothing else may send this tick
                return
            await self.processor.drain_queue(now)
        except Exception as e:
            logger.exception(f"Command processing failed: {e}")
            record_tick_error("commands")

        try:
            await self.scheduler.evaluate_schedules(now)
        except Exception as e:
            logger.exception(f"Schedule evaluation failed: {e}")
            record_tick_error("scheduler")

    async def run_forever(self) -> None:
        if self._running:
            logger.debug("Tick loop already running, skipping duplicate start")
            return
        self._running = True
        started_at = utcnow()
        self._stop.clear()
        logger.info(f"Tick loop started (interval={self.interval_seconds}s)")

        try:
            try:
                self.processor.recover_interrupted(started_at)
            except Exception as e:
                logger.exception(f"Interrupted command recovery failed: {e}")
                record_tick_error("recovery")

            while not self._stop.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Tick loop stopped")

    def stop(self) -> None:
        self._stop.set()
