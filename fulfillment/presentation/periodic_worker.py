import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Runs a job every ``interval`` seconds: booking reminders, outbox retention cleanup."""

    def __init__(self, name: str, job: Callable[[], Awaitable[Any]], interval: float):
        self._name = name
        self._job = job
        self._interval = interval

    async def run_once(self) -> Any:
        try:
            return await self._job()
        except Exception:
            logger.exception(f"Periodic job {self._name} failed")
            return None

    async def run(self):
        logger.info(f"Periodic job {self._name} started, every {self._interval}s")
        while True:
            await self.run_once()
            await asyncio.sleep(self._interval)
