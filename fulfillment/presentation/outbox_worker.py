import asyncio
import logging

from fulfillment.application.process_outbox_events import DispatchResult, ProcessOutboxEventsUseCase

logger = logging.getLogger(__name__)


class OutboxWorker:
    def __init__(self, use_case: ProcessOutboxEventsUseCase, poll_interval: float = 1.0):
        self._use_case = use_case
        self._poll_interval = poll_interval

    async def run_once(self) -> DispatchResult | None:
        try:
            return await self._use_case()
        except Exception:
            # One broken sweep must not stop the dispatcher
            logger.exception("Outbox sweep failed")
            return None

    async def run(self):
        logger.info(f"Outbox worker started, polling every {self._poll_interval}s")
        while True:
            await self.run_once()
            await asyncio.sleep(self._poll_interval)
