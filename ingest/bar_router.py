import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from api.metrics import metrics
from config import config
from monitoring.async_utils import cancel_and_wait
from strategy.market_types import Bar

logger = logging.getLogger(__name__)

Handler = Callable[[Bar], Awaitable[object]]


class BarRouter:
    """Fan bars out to one bounded queue and one consumer task per symbol.

    Bars for a symbol are handled one at a time in arrival order; symbols
    progress independently. When a queue is full the oldest pending bar for
    that symbol is dropped.
    """

    def __init__(self, handler: Handler, queue_maxsize: Optional[int] = None):
        self.handler = handler
        if queue_maxsize is None:
            queue_maxsize = config.section('websocket').get('queue_maxsize', 500)
        self.queue_maxsize = max(1, int(queue_maxsize))
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def symbols(self):
        return list(self._queues)

    async def route_batch(self, bars: Iterable[Bar]) -> None:
        for bar in bars:
            self.submit(bar)

    def submit(self, bar: Bar) -> None:
        if self._closed:
            logger.debug("Router closed; dropping %s bar", bar.symbol)
            return
        queue = self._queue_for(bar.symbol)
        if queue.full():
            try:
                stale = queue.get_nowait()
                queue.task_done()
                metrics.record_drop(bar.symbol)
                logger.warning(
                    "%s bar queue full; dropped bar %s",
                    bar.symbol,
                    stale.timestamp.isoformat(),
                )
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(bar)
        metrics.update_queue_depth(bar.symbol, queue.qsize())

    async def join(self) -> None:
        """Wait until every queued bar has been handled."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def stop(self) -> None:
        self._closed = True
        await cancel_and_wait(self._workers.values())
        self._workers.clear()

    def _queue_for(self, symbol: str) -> asyncio.Queue:
        queue = self._queues.get(symbol)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_maxsize)
            self._queues[symbol] = queue
            self._workers[symbol] = asyncio.create_task(self._consume(symbol, queue))
        return queue

    async def _consume(self, symbol: str, queue: asyncio.Queue) -> None:
        while True:
            bar = await queue.get()
            try:
                await self.handler(bar)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Bar handler failed for %s at %s", symbol, bar.timestamp.isoformat())
            finally:
                queue.task_done()
                metrics.update_queue_depth(symbol, queue.qsize())
