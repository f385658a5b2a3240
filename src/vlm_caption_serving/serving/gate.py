"""
Admission gate and bounded outbound channel for the asyncio serving loop.
"""

import asyncio
import logging
from typing import AsyncIterator, Generic, Optional, TypeVar

from vlm_caption_serving.errors import ResourceExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionGate:
    """
    Counting gate that bounds concurrent inference work.

    ``acquire`` suspends while all permits are taken. Once the gate is
    closed, pending and future acquisitions fail with ``ResourceExhausted``.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_use = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> None:
        if self._closed:
            raise ResourceExhausted("Too many concurrent requests")
        await self._semaphore.acquire()
        if self._closed:
            # Pass the wake-up on so every waiter observes the close.
            self._semaphore.release()
            raise ResourceExhausted("Too many concurrent requests")
        self._in_use += 1
        logger.debug("Permit acquired (%d/%d in use)", self._in_use, self._capacity)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("AdmissionGate released more times than acquired")
        self._in_use -= 1
        self._semaphore.release()
        logger.debug("Permit released (%d/%d in use)", self._in_use, self._capacity)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._semaphore.release()

    async def __aenter__(self) -> "AdmissionGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class ChannelClosed(Exception):
    """Raised when sending on a channel whose receiver has gone away"""


_FINISHED = object()


class OutboundChannel(Generic[T]):
    """
    Bounded single-consumer channel between worker tasks and a response stream.

    Producers ``send``; the consumer iterates with ``async for`` until the
    producer side calls ``finish``. ``close`` is the consumer hanging up:
    senders blocked on a full queue are released with ``ChannelClosed``.
    """

    def __init__(self, capacity: int = 128) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = asyncio.Event()
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, item: T) -> None:
        if self._closed.is_set():
            raise ChannelClosed("receiver closed")
        put = asyncio.ensure_future(self._queue.put(item))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not put.done():
                put.cancel()
        if put.cancelled() or not put.done():
            raise ChannelClosed("receiver closed")

    async def finish(self, error: Optional[BaseException] = None) -> None:
        """Mark the producer side done; ``error`` is re-raised to the consumer."""
        self._error = error
        if self._closed.is_set():
            return
        try:
            await self.send(_FINISHED)
        except ChannelClosed:
            pass

    def close(self) -> None:
        self._closed.set()

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is _FINISHED:
                if self._error is not None:
                    raise self._error
                return
            yield item
