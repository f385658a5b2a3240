"""
Request serving layer: single-request and batch-stream captioning.

Both paths share one admission gate and one worker thread pool. The event
loop only admits and multiplexes; model inference always runs on the pool.
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional, Set

from prometheus_client import Counter, Gauge, Histogram

from vlm_caption_serving.errors import (
    CaptionServiceError,
    ImageError,
    PayloadTooLarge,
    ProcessingFailure,
    ValidationError,
)
from vlm_caption_serving.models.variants import ModelType
from vlm_caption_serving.serving.gate import AdmissionGate, ChannelClosed, OutboundChannel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------
REQUEST_COUNT = Counter(
    "caption_requests_total", "Caption requests by method and status code", ["method", "code"]
)
INFERENCE_DURATION = Histogram(
    "caption_inference_duration_seconds", "Time spent generating one caption", ["model"]
)
INFLIGHT = Gauge("caption_inflight_requests", "Captions currently being generated")

MAX_IMAGE_BYTES = 12 * 1024 * 1024


@dataclass
class CaptionRequest:
    """One image to caption.

    ``defect`` is set by the transport when the inbound message itself could
    not be parsed; such a request always fails validation.
    """

    model: Any
    image: bytes
    request_id: Optional[str] = None
    defect: Optional[str] = None


@dataclass
class CaptionResult:
    """Either a caption or the error that replaced it."""

    description: Optional[str] = None
    error: Optional[CaptionServiceError] = None
    request_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"error": self.error.to_dict(), "request_id": self.request_id}
        return {"description": self.description, "request_id": self.request_id}


class CaptionService:
    """
    Admit caption requests and run them on the worker pool.

    Args:
        engine: Object with ``generate(model_type, image_bytes) -> str``.
        max_concurrent_requests: Admission gate capacity (also the pool size).
        outbound_capacity: Results buffered per batch stream before workers block.
        max_image_bytes: Largest accepted image payload.
        executor: Worker pool to use instead of a private one.
    """

    def __init__(
        self,
        engine: Any,
        max_concurrent_requests: int = 16,
        outbound_capacity: int = 128,
        max_image_bytes: int = MAX_IMAGE_BYTES,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.engine = engine
        self.gate = AdmissionGate(max_concurrent_requests)
        self.outbound_capacity = outbound_capacity
        self.max_image_bytes = max_image_bytes
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_concurrent_requests, thread_name_prefix="caption-worker"
        )
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Any, engine: Any) -> "CaptionService":
        return cls(
            engine,
            max_concurrent_requests=config.max_concurrent_requests,
            outbound_capacity=config.outbound_capacity,
            max_image_bytes=config.max_image_bytes,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(self, request: CaptionRequest) -> ModelType:
        """
        Check a request before it is admitted.

        Returns:
            The parsed model type.

        Raises:
            ValidationError: Malformed message, empty image or unknown model.
            PayloadTooLarge: Image larger than ``max_image_bytes``.
        """
        if request.defect:
            raise ValidationError(request.defect)
        if not request.image:
            raise ValidationError("Empty vector of bytes")
        if len(request.image) > self.max_image_bytes:
            raise PayloadTooLarge(len(request.image), self.max_image_bytes)
        return ModelType.parse(request.model)

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------
    async def process_one(self, request: CaptionRequest) -> CaptionResult:
        """
        Caption one image.

        Raises:
            CaptionServiceError: Any failure, carrying its status code.
        """
        try:
            model_type = self.validate(request)
            await self.gate.acquire()
            description = await self._generate(model_type, request.image, release_permit=True)
        except CaptionServiceError as e:
            REQUEST_COUNT.labels(method="single", code=e.code.value).inc()
            raise
        REQUEST_COUNT.labels(method="single", code="OK").inc()
        return CaptionResult(description=description, request_id=request.request_id)

    async def _generate(self, model_type: ModelType, image: bytes, release_permit: bool = False) -> str:
        """
        Run ``engine.generate`` on the worker pool.

        With ``release_permit`` the caller's permit is handed back when the
        worker finishes, not when the caller stops waiting: a cancelled
        caller cannot free a permit while its thread is still running.
        """
        loop = asyncio.get_running_loop()
        INFLIGHT.inc()
        start = time.perf_counter()
        try:
            future = loop.run_in_executor(self._executor, self.engine.generate, model_type, image)
        except RuntimeError as e:
            INFLIGHT.dec()
            if release_permit:
                self.gate.release()
            raise CaptionServiceError(f"Error executing worker task: {e}") from e
        future.add_done_callback(functools.partial(self._worker_done, model_type, start, release_permit))

        try:
            return await asyncio.shield(future)
        except (ProcessingFailure, ImageError) as e:
            logger.error("Error processing image with %s: %s", model_type.name, e.message)
            raise ProcessingFailure(
                f"Error processing image: {e.message}", model_id=getattr(e, "model_id", model_type.name),
            ) from e
        except CaptionServiceError:
            raise
        except asyncio.CancelledError:
            logger.info("Caller of a %s caption went away; the worker runs to completion", model_type.name)
            raise
        except Exception as e:
            logger.exception("Worker task failed for %s", model_type.name)
            raise CaptionServiceError(f"Error executing worker task: {e}") from e

    def _worker_done(self, model_type: ModelType, start: float, release_permit: bool, future: asyncio.Future) -> None:
        INFLIGHT.dec()
        INFERENCE_DURATION.labels(model=model_type.name).observe(time.perf_counter() - start)
        if release_permit:
            self.gate.release()
        # Mark the outcome retrieved even when nobody awaits it any more.
        if not future.cancelled():
            future.exception()

    # ------------------------------------------------------------------
    # Batch stream
    # ------------------------------------------------------------------
    async def process_stream(
        self, requests: AsyncIterable[CaptionRequest]
    ) -> AsyncIterator[CaptionResult]:
        """
        Caption a stream of images, yielding one result per request.

        Results come out in completion order. A permit is taken before each
        item is spawned, so a saturated gate stops the inbound stream from
        being read. If the caller stops iterating, reading stops too; items
        already running finish and their results are dropped.

        An exception raised by ``requests`` itself is re-raised here once
        every in-flight item has been delivered.
        """
        channel: OutboundChannel[CaptionResult] = OutboundChannel(self.outbound_capacity)
        pump = asyncio.ensure_future(self._pump(requests, channel))
        try:
            async for result in channel:
                yield result
        finally:
            channel.close()
            if not pump.done():
                pump.cancel()

    async def _pump(self, requests: AsyncIterable[CaptionRequest], channel: OutboundChannel) -> None:
        pending: Set[asyncio.Task] = set()
        error: Optional[BaseException] = None
        try:
            async for request in requests:
                if channel.closed:
                    break
                try:
                    model_type = self.validate(request)
                    await self.gate.acquire()
                except CaptionServiceError as e:
                    await self._emit(channel, CaptionResult(error=e, request_id=request.request_id))
                    continue
                task = asyncio.ensure_future(self._run_item(model_type, request, channel))
                pending.add(task)
                task.add_done_callback(pending.discard)
                self._track(task)
        except Exception as e:
            logger.warning("Inbound stream failed: %s", e)
            error = e

        if pending:
            await asyncio.wait(set(pending))
        await channel.finish(error)

    async def _run_item(self, model_type: ModelType, request: CaptionRequest, channel: OutboundChannel) -> None:
        try:
            try:
                description = await self._generate(model_type, request.image)
                result = CaptionResult(description=description, request_id=request.request_id)
            except CaptionServiceError as e:
                result = CaptionResult(error=e, request_id=request.request_id)
            await self._emit(channel, result)
        finally:
            self.gate.release()

    async def _emit(self, channel: OutboundChannel, result: CaptionResult) -> None:
        code = "OK" if result.ok else result.error.code.value
        REQUEST_COUNT.labels(method="batch", code=code).inc()
        try:
            await channel.send(result)
        except ChannelClosed:
            logger.info("Dropping result for request %s: stream closed", result.request_id)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def close(self) -> None:
        """Refuse new work, wait for detached batch items, stop the pool."""
        self.gate.close()
        if self._tasks:
            await asyncio.wait(set(self._tasks))
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        logger.info("Caption service closed")
