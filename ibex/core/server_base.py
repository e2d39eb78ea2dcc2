"""
OpenAI-compatible HTTP surface for the Ibex server.

`create_app()` wires the completion and embedding pipelines to their model
slots and returns a FastAPI application. Nothing here is module-global: every
app owns its slots, engine and config, so several apps can coexist (tests, the
lifecycle manager's restarts).
"""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import IbexConfig
from ..context import RequestContext
from ..errors import (
    EmptyInputError,
    ErrorType,
    IbexError,
    IbexException,
    error_envelope,
    validation_error,
)
from ..logging import get_logger, set_log_level, uvicorn_log_config
from .embedding import EmbeddingOrchestrator
from .engine import InferenceEngine, MLXEngine
from .generation import ChatMessage, GenerationOrchestrator, GenerationRequest
from .slot import ModelSlot

logger = get_logger()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
SSE_DONE_FRAME = "data: [DONE]\n\n"


class ChatMessagePayload(BaseModel):
    # Any role string is accepted; unknown roles speak as the user
    role: str
    content: str


class ChatCompletionRequest(BaseModel):
    model: str
    messages: List[ChatMessagePayload]
    stream: bool = False
    max_tokens: Optional[int] = Field(default=None, gt=0)
    temperature: Optional[float] = Field(default=None, ge=0.0)


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[Dict[str, Any]]
    usage: Optional[Dict[str, int]] = None


class EmbeddingRequest(BaseModel):
    input: str
    model: Optional[str] = None


class EmbeddingObject(BaseModel):
    object: str = "embedding"
    embedding: List[float]
    index: int = 0


class EmbeddingResponse(BaseModel):
    object: str = "list"
    data: List[EmbeddingObject]
    model: str
    usage: Dict[str, int] = Field(default_factory=lambda: {"prompt_tokens": 0, "total_tokens": 0})


def sse_frame(payload: Dict[str, Any]) -> str:
    """One SSE event: `data: ` + single-line JSON + blank line."""
    return f"data: {json.dumps(payload)}\n\n"


class CompletionPipeline:
    """Chat completions: decode, lazy-load the chat model, render JSON or SSE."""

    def __init__(self, config: IbexConfig, slot: ModelSlot, orchestrator: GenerationOrchestrator):
        self.config = config
        self.slot = slot
        self.orchestrator = orchestrator

    def build_request(self, body: ChatCompletionRequest) -> GenerationRequest:
        return GenerationRequest(
            model_identity=body.model,
            messages=[ChatMessage(role=m.role, content=m.content) for m in body.messages],
            max_tokens=body.max_tokens if body.max_tokens is not None else self.config.default_max_tokens,
            temperature=body.temperature if body.temperature is not None else self.config.default_temperature,
            stream=body.stream,
        )

    async def handle(self, body: ChatCompletionRequest) -> Union[ChatCompletionResponse, StreamingResponse]:
        completion_id = f"chatcmpl-{uuid.uuid4()}"
        created = int(time.time())
        request = self.build_request(body)

        await self.slot.load_if_needed(request.model_identity)

        if request.stream:
            return StreamingResponse(
                self.stream_events(request, completion_id, created),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        content = await self.orchestrator.complete(request)
        return ChatCompletionResponse(
            id=completion_id,
            created=created,
            model=request.model_identity,
            choices=[
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        )

    def _chunk(self, completion_id: str, created: int, model: str, delta: Dict[str, Any],
               finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }

    async def stream_events(self, request: GenerationRequest, completion_id: str, created: int) -> AsyncIterator[str]:
        """Render the fragment stream as SSE frames, one frame per fragment.

        Closing this generator (client disconnect) closes the orchestrator
        stream, which stops the engine.
        """
        model = request.model_identity
        fragments = self.orchestrator.stream(request)
        try:
            async for fragment in fragments:
                yield sse_frame(self._chunk(completion_id, created, model, {"content": fragment}))
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Client disconnected, generation cancelled", model=model)
            raise
        except Exception as e:
            logger.warning(f"Streaming aborted: {e}", model=model)
            error_chunk = self._chunk(completion_id, created, model, {}, finish_reason="error")
            error_chunk["error"] = str(e)
            yield sse_frame(error_chunk)
        finally:
            await fragments.aclose()

        if self.config.sse_done_sentinel:
            yield SSE_DONE_FRAME


class EmbeddingPipeline:
    """Embeddings: decode, optionally lazy-load the named model, render JSON."""

    def __init__(self, slot: ModelSlot, orchestrator: EmbeddingOrchestrator):
        self.slot = slot
        self.orchestrator = orchestrator

    async def handle(self, body: EmbeddingRequest) -> EmbeddingResponse:
        if not body.input or not body.input.strip():
            raise EmptyInputError("Input cannot be empty")

        if body.model:
            await self.slot.load_if_needed(body.model)

        vector = await self.orchestrator.embed(body.input, body.model)
        return EmbeddingResponse(
            data=[EmbeddingObject(embedding=vector, index=0)],
            model=body.model or "unknown",
        )


async def _preload(slot: ModelSlot, identity: Optional[str]) -> None:
    if not identity:
        return
    try:
        await slot.load(identity)
    except Exception as e:
        error_msg = f"Pre-load failed for {slot.kind} model '{identity}': {e}"
        logger.error(error_msg)
        raise RuntimeError(error_msg) from e


def create_app(
    config: Optional[IbexConfig] = None,
    engine: Optional[InferenceEngine] = None,
    chat_slot: Optional[ModelSlot] = None,
    embedding_slot: Optional[ModelSlot] = None,
    preload: bool = False,
) -> FastAPI:
    """Build the HTTP application.

    Slots start empty and models load on the first matching request. With
    `preload=True` the config's chat/embedding models are loaded during
    startup and a failure aborts startup.
    """
    config = config or IbexConfig()
    engine = engine or MLXEngine(config)
    chat_slot = chat_slot or ModelSlot("chat", engine.load_chat_model)
    embedding_slot = embedding_slot or ModelSlot("embedding", engine.load_embedding_model)

    completions = CompletionPipeline(config, chat_slot, GenerationOrchestrator(chat_slot, engine))
    embeddings = EmbeddingPipeline(embedding_slot, EmbeddingOrchestrator(embedding_slot, engine))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Ibex server starting up...")
        if preload:
            await _preload(chat_slot, config.chat_model)
            await _preload(embedding_slot, config.embedding_model)
        yield
        logger.info("Ibex server shutting down...")
        chat_slot.unload()
        embedding_slot.unload()

    app = FastAPI(
        title="Ibex API",
        description="OpenAI-compatible API for local MLX models",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.engine = engine
    app.state.chat_slot = chat_slot
    app.state.embedding_slot = embedding_slot

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next):
        """Bind a request id for logging and echo it as X-Request-ID."""
        with RequestContext(request.headers.get("X-Request-ID")) as request_id:
            request.state.request_id = request_id
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(IbexException)
    async def ibex_exception_handler(request: Request, exc: IbexException):
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(exc.to_error(), request_id=request_id),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        request_id = getattr(request.state, "request_id", None)
        error_type_map = {
            400: ErrorType.VALIDATION_ERROR,
            503: ErrorType.MODEL_NOT_LOADED,
        }
        error = IbexError(
            type=error_type_map.get(exc.status_code, ErrorType.INTERNAL_ERROR),
            message=str(exc.detail),
            retryable=(exc.status_code == 503),
        )
        return JSONResponse(status_code=exc.status_code, content=error_envelope(error, request_id=request_id))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Report malformed JSON and schema violations as 400 instead of FastAPI's 422."""
        request_id = getattr(request.state, "request_id", None)
        detail = "; ".join(
            f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}"
            for e in exc.errors()
        )
        error = validation_error("Request validation failed", detail=detail)
        return JSONResponse(status_code=400, content=error_envelope(error, request_id=request_id))

    @app.get("/health", response_class=PlainTextResponse)
    @app.get("/v1/health", response_class=PlainTextResponse)
    async def health_check():
        return "OK"

    @app.post("/v1/chat/completions")
    async def create_chat_completion(request: ChatCompletionRequest):
        try:
            return await completions.handle(request)
        except (IbexException, HTTPException):
            raise
        except Exception as e:
            logger.error(f"Chat completion failed: {e}", error_key="chat_completion", model=request.model)
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/v1/embeddings")
    async def create_embedding(request: EmbeddingRequest):
        try:
            return await embeddings.handle(request)
        except (IbexException, HTTPException):
            raise
        except Exception as e:
            logger.error(f"Embedding failed: {e}", error_key="embedding", model=request.model)
            raise HTTPException(status_code=500, detail=str(e))

    return app


def run_server(config: IbexConfig, engine: Optional[InferenceEngine] = None) -> None:
    """Run Ibex in the foreground, preloading the configured models."""
    import uvicorn

    set_log_level(config.log_level)
    app = create_app(config, engine=engine, preload=True)

    logger.info(f"Starting Ibex server on http://{config.host}:{config.port}")
    if config.chat_model:
        logger.info(f"Chat model: {config.chat_model}")
    if config.embedding_model:
        logger.info(f"Embedding model: {config.embedding_model}")
    logger.info("Press Ctrl-C to stop the server")

    # Keep uvicorn's default logging unless JSON output is requested
    options: Dict[str, Any] = {}
    log_config = uvicorn_log_config(config.log_level)
    if log_config is not None:
        options["log_config"] = log_config

    try:
        uvicorn.run(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            access_log=config.log_level.lower() in ["debug", "info"],
            timeout_graceful_shutdown=int(config.shutdown_timeout),
            lifespan="on",
            **options,
        )
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
