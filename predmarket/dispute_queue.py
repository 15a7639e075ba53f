"""
At-least-once in-process queue for dispute envelopes ({"dispute_id": n}).

A handler that raises gets its message redelivered, up to max_deliveries
attempts in total. After that the message is dead-lettered, logged and
handed to `on_dead_letter`. Handlers must therefore be idempotent.

A handler that raises RetryLater is asking to see the message again after
`delay` seconds, e.g. while another consumer holds the dispute's lease.
That redelivery does not count against max_deliveries.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


Handler = Callable[[dict, str], Awaitable[object]]
DeadLetterHandler = Callable[[dict, BaseException], Awaitable[object]]


class RetryLater(Exception):
    def __init__(self, delay: float, reason: str = ""):
        super().__init__(reason or f"retry in {delay:.0f}s")
        self.delay = delay


@dataclass
class Delivery:
    envelope: dict
    attempts: int = 0


class DisputeQueue:

    def __init__(self, max_deliveries: int = 5, retry_delay: float = 0.0,
                 on_dead_letter: Optional[DeadLetterHandler] = None,
                 sleep: Callable[[float], Awaitable[object]] = asyncio.sleep):
        self.max_deliveries = max_deliveries
        self.retry_delay = retry_delay
        self.on_dead_letter = on_dead_letter
        self.sleep = sleep
        self.dead_letters: list[dict] = []
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue()
        self._timers: set[asyncio.Task] = set()

    async def publish(self, envelope: dict) -> None:
        await self._queue.put(Delivery(envelope=dict(envelope)))

    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    def _redeliver(self, delivery: Delivery, delay: float) -> None:
        """Put the delivery back after `delay` without holding a consumer.

        The original get() is only marked done once the message is queued
        again, so join() keeps waiting for it.
        """
        async def later():
            try:
                if delay > 0:
                    await self.sleep(delay)
                await self._queue.put(delivery)
            finally:
                self._queue.task_done()

        timer = asyncio.create_task(later())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _dead_letter(self, delivery: Delivery, error: Exception) -> None:
        self.dead_letters.append(delivery.envelope)
        logger.error("dead-lettered %s after %d attempts: %s",
                     delivery.envelope, delivery.attempts, error)
        if self.on_dead_letter is None:
            return
        try:
            await self.on_dead_letter(delivery.envelope, error)
        except Exception:
            logger.exception("dead-letter handler failed for %s",
                             delivery.envelope)

    async def consume(self, handler: Handler, consumer_id: str) -> None:
        """Run forever, handing each envelope to `handler`."""
        while True:
            delivery = await self._queue.get()
            delivery.attempts += 1
            try:
                await handler(delivery.envelope, consumer_id)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except RetryLater as e:
                delivery.attempts -= 1
                logger.info("deferring %s for %.1fs: %s", delivery.envelope,
                            e.delay, e)
                self._redeliver(delivery, e.delay)
            except Exception as e:
                if delivery.attempts >= self.max_deliveries:
                    try:
                        await self._dead_letter(delivery, e)
                    finally:
                        self._queue.task_done()
                else:
                    logger.warning("delivery %d of %s failed, requeueing: %s",
                                   delivery.attempts, delivery.envelope, e)
                    self._redeliver(delivery, self.retry_delay)
            else:
                self._queue.task_done()

    async def close(self) -> None:
        """Cancel pending delayed redeliveries."""
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)


def start_consumers(queue: DisputeQueue, handler: Handler,
                    count: int) -> list[asyncio.Task]:
    return [asyncio.create_task(queue.consume(handler, f"consumer-{i}"))
            for i in range(count)]
