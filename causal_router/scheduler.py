"""Bounded work queue driving the router.

Usage::

    loop = RouterLoop(router, max_inflight=4)
    runner = asyncio.create_task(loop.run())
    await loop.submit(signal)
    await loop.close()      # finish queued work, then return
    await runner

Signals are consumed in arrival order by a single consumer which acquires an
in-flight slot before starting each pipeline, so pipelines start FIFO and at
most ``max_inflight`` run at once. ``stop()`` is the cancellation token: it
is honoured before every dequeue and before every execution attempt, after
which in-flight pipelines are drained and the ledger is flushed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Set

from causal_router.metrics import MetricsRegistry
from causal_router.models import Signal
from causal_router.router import RoutingOutcome, SignalRouter

LOGGER = logging.getLogger(__name__)

_CLOSE = object()

OutcomeCallback = Callable[[RoutingOutcome], None]


class RouterLoop:
    def __init__(
        self,
        router: SignalRouter,
        *,
        max_inflight: int = 4,
        queue_size: int = 1000,
        flush_interval_seconds: float = 30.0,
        metrics: MetricsRegistry | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        if max_inflight < 1:
            raise ValueError("max_inflight must be at least 1")
        self._router = router
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._slots = asyncio.Semaphore(max_inflight)
        self._cancel = asyncio.Event()
        self._closed = False
        self._flush_interval_seconds = flush_interval_seconds
        self._metrics = metrics or MetricsRegistry()
        self._on_outcome = on_outcome
        self._tasks: Set[asyncio.Task] = set()
        self._inflight = 0
        self._processed = 0
        self._failed = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def inflight(self) -> int:
        return self._inflight

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def submit(self, signal: Signal) -> None:
        """Enqueue a signal, waiting while the queue is full."""
        if self._closed or self._cancel.is_set():
            raise RuntimeError("router loop is no longer accepting signals")
        await self._queue.put(signal)
        self._metrics.gauge("queue_depth").set(self._queue.qsize())

    def submit_nowait(self, signal: Signal) -> bool:
        """Enqueue without waiting; False when the queue is full."""
        if self._closed or self._cancel.is_set():
            raise RuntimeError("router loop is no longer accepting signals")
        try:
            self._queue.put_nowait(signal)
        except asyncio.QueueFull:
            LOGGER.warning("router queue full; signal dropped signal_type=%s", signal.type)
            return False
        self._metrics.gauge("queue_depth").set(self._queue.qsize())
        return True

    async def close(self) -> None:
        """Stop accepting signals; ``run`` returns once queued work is done."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSE)

    def stop(self) -> None:
        """Cancel: queued signals are abandoned, in-flight pipelines wind down."""
        self._cancel.set()

    async def run(self) -> None:
        flusher = asyncio.create_task(self._flush_periodically())
        try:
            while not self._cancel.is_set():
                item = await self._next()
                if item is None:
                    break
                await self._slots.acquire()
                if self._cancel.is_set():
                    self._slots.release()
                    LOGGER.info("signal abandoned on stop signal_type=%s", item.type)
                    break
                task = asyncio.create_task(self._process(item))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            flusher.cancel()
            await asyncio.gather(flusher, return_exceptions=True)
            abandoned = self._queue.qsize()
            if abandoned and self._cancel.is_set():
                LOGGER.info("router stopped with %d queued signals abandoned", abandoned)
            await self._router.ledger.flush()
            LOGGER.info("router loop finished processed=%d failed=%d", self._processed, self._failed)

    async def _next(self) -> Signal | None:
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (getter, stopper):
                if not pending.done():
                    pending.cancel()
        if not getter.done() or getter.cancelled():
            return None
        item = getter.result()
        self._metrics.gauge("queue_depth").set(self._queue.qsize())
        if item is _CLOSE:
            return None
        return item

    async def _process(self, signal: Signal) -> None:
        self._inflight += 1
        self._metrics.gauge("inflight").set(self._inflight)
        try:
            outcome = await self._router.route_signal(signal, self._cancel)
        except Exception:
            self._failed += 1
            LOGGER.exception("pipeline failed signal_type=%s origin_id=%s", signal.type, signal.origin_id)
        else:
            self._processed += 1
            if self._on_outcome is not None:
                self._on_outcome(outcome)
        finally:
            self._inflight -= 1
            self._metrics.gauge("inflight").set(self._inflight)
            self._slots.release()

    async def _flush_periodically(self) -> None:
        if self._flush_interval_seconds <= 0:
            return
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            await self._router.ledger.flush()
