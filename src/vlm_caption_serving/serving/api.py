"""
FastAPI transport for the caption service.

POST /v1/process-image             one multipart upload, one caption
WS   /v1/process-image/batch       bidirectional stream of images and captions
"""

import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import pydantic
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest
from pydantic import BaseModel

from vlm_caption_serving import __version__
from vlm_caption_serving.config import ServiceConfig, load_config
from vlm_caption_serving.errors import CaptionServiceError
from vlm_caption_serving.serving.service import CaptionRequest, CaptionService

logger = logging.getLogger(__name__)


class CaptionResponse(BaseModel):
    description: str


class ErrorResponse(BaseModel):
    code: str
    message: str


class BatchMessage(BaseModel):
    """One inbound WebSocket text frame."""

    model: Any = "BLIP"
    image: str = ""
    request_id: Optional[str] = None
    end_of_stream: bool = False


def parse_batch_message(text: str) -> Optional[CaptionRequest]:
    """
    Turn a WebSocket text frame into a request.

    Returns None for the end-of-stream marker. A frame that cannot be parsed
    still yields a request, with ``defect`` set, so it fails on its own.
    """
    try:
        message = BatchMessage.model_validate_json(text)
    except pydantic.ValidationError as e:
        return CaptionRequest(model=None, image=b"", defect=f"Malformed batch message: {e.error_count()} errors")
    if message.end_of_stream:
        return None
    try:
        image = base64.b64decode(message.image, validate=True)
    except (binascii.Error, ValueError):
        return CaptionRequest(
            model=message.model, image=b"", request_id=message.request_id,
            defect="Image is not valid base64",
        )
    return CaptionRequest(model=message.model, image=image, request_id=message.request_id)


async def _inbound(websocket: WebSocket) -> AsyncIterator[CaptionRequest]:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        text = message.get("text")
        if text is None:
            yield CaptionRequest(model=None, image=b"", defect="Binary frames are not supported")
            continue
        request = parse_batch_message(text)
        if request is None:
            logger.debug("Batch client finished sending")
            return
        yield request


def create_app(
    service: Optional[CaptionService] = None,
    config: Optional[ServiceConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Ready service to serve. When omitted, models are loaded from
            ``config`` (or the config file) at startup and released on shutdown.
        config: Service configuration used when ``service`` is omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            from vlm_caption_serving.inference.predictor import CaptionEngine
            from vlm_caption_serving.models.loaders import load_registry

            cfg = config or load_config()
            registry, tokenizer = load_registry(cfg)
            engine = CaptionEngine(
                registry, tokenizer,
                bos_token_id=cfg.bos_token_id,
                eos_token_id=cfg.eos_token_id,
                max_steps=cfg.max_steps,
            )
            app.state.service = CaptionService.from_config(cfg, engine)
            logger.info("Caption service ready")
        yield
        if owned:
            await app.state.service.close()

    app = FastAPI(title="VLM Caption Serving API", version=__version__, lifespan=lifespan)
    app.state.service = service

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CaptionServiceError)
    async def caption_error_handler(request: Request, exc: CaptionServiceError):
        return JSONResponse(status_code=exc.code.http_status, content=exc.to_dict())

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "healthy", "service": "VLM Caption Serving API"}

    @app.get("/health")
    async def health(request: Request):
        """Detailed health check."""
        svc = request.app.state.service
        registry = getattr(svc.engine, "registry", None) if svc is not None else None
        return {
            "status": "healthy" if svc is not None else "starting",
            "model_loaded": registry is not None,
            "models": {t.name: str(v.input_device) for t, v in registry.items()} if registry else {},
            "gate": {"capacity": svc.gate.capacity, "in_use": svc.gate.in_use} if svc is not None else None,
        }

    @app.post(
        "/v1/process-image",
        response_model=CaptionResponse,
        responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def process_image(request: Request, file: UploadFile = File(...), model: str = Form("BLIP")):
        """Generate a caption for one uploaded image."""
        svc: CaptionService = request.app.state.service
        # One byte past the limit is enough for validation to reject it.
        contents = await file.read(svc.max_image_bytes + 1)
        result = await svc.process_one(CaptionRequest(model=model, image=contents))
        logger.info("Generated caption: %s", result.description)
        return CaptionResponse(description=result.description)

    @app.websocket("/v1/process-image/batch")
    async def process_image_batch(websocket: WebSocket):
        """Caption a stream of base64 images, replying in completion order."""
        svc: CaptionService = websocket.app.state.service
        await websocket.accept()
        results = svc.process_stream(_inbound(websocket))
        try:
            async for result in results:
                await websocket.send_json(result.to_dict())
        except WebSocketDisconnect:
            logger.info("Batch client disconnected")
            return
        finally:
            await results.aclose()
        await websocket.close(code=1000)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type="text/plain")

    return app
