"""
Side-effect dispatcher.

Effects are queued after their transaction commits and delivered by a small
pool of worker tasks, each delivery under its own exponential-backoff retry.
Nothing here ever reaches back into the ingestion call: a full queue or a
permanently failing handler is logged and counted, not raised.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from common.retry import RetryConfig, retry_async
from common.schemas import Effect
from ingestion_service.effects import EffectHandler

logger = logging.getLogger(__name__)


class SideEffectDispatcher:

    def __init__(
        self,
        handlers: Dict[str, EffectHandler],
        retry_config: RetryConfig,
        workers: int = 2,
        queue_size: int = 1000,
    ):
        self.handlers = handlers
        self.retry_config = retry_config
        self.workers = workers
        self.queue_size = queue_size
        self.queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        if self.running:
            return
        self.queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"effect-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"Side-effect dispatcher started with {self.workers} workers")

    async def stop(self, drain_timeout: Optional[float] = 10.0):
        """Stop the workers, first giving queued effects a chance to go out"""
        if not self.running:
            return
        if drain_timeout:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Dispatcher stopped with {self.queue.qsize()} effects still queued")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Side-effect dispatcher stopped")

    async def join(self):
        """Wait until every queued effect has been delivered or given up on"""
        if self.queue is not None:
            await self.queue.join()

    def dispatch(self, effect: Effect) -> bool:
        if self.queue is None:
            self.dropped += 1
            logger.error(f"Dispatcher not started, dropping effect {effect.effect_id}")
            return False
        try:
            self.queue.put_nowait(effect)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Effect queue full ({self.queue_size}), dropping effect {effect.effect_id}")
            return False
        return True

    def dispatch_many(self, effects: Iterable[Effect]) -> int:
        return sum(1 for effect in effects if self.dispatch(effect))

    async def _worker(self, n: int):
        while True:
            effect = await self.queue.get()
            try:
                await self._deliver(effect)
            finally:
                self.queue.task_done()

    async def _deliver(self, effect: Effect):
        handler = self.handlers.get(effect.kind)
        if handler is None:
            self.failed += 1
            logger.error(f"No handler for effect kind {effect.kind}, dropping {effect.effect_id}")
            return

        async def attempt():
            if asyncio.iscoroutinefunction(handler):
                return await handler(effect)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, handler, effect)

        attempt.__name__ = f"{effect.kind}[{effect.effect_id}]"
        try:
            await retry_async(attempt, self.retry_config)
            self.delivered += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.error(f"EFFECT_FAILED kind={effect.kind} effect_id={effect.effect_id} error={e}")

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "workers": len(self._tasks),
            "queued": self.queue.qsize() if self.queue is not None else 0,
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
        }
