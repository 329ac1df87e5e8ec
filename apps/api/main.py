# apps/api/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay.core.errors import NotFound, RateLimitExceeded, RelayError, StoreError, ValidationError
from relay.core.logging import CONVERSATION_HEADER, configure_logging, request_logging_middleware
from relay.core.metrics import RATE_LIMITED
from relay.core.settings import AppSettings, get_settings
from relay.orchestration.background import BackgroundTasks
from relay.orchestration.cancellation import CancellationRegistry, InProcessCancellationRegistry
from relay.orchestration.chat_turn import ChatOptions, ChatProxy, latest_user_message
from relay.orchestration.rate_limiter import FixedWindowRateLimiter, client_key
from relay.providers.base import Provider
from relay.providers.openai_compat import get_provider
from relay.storage.base import ConversationStore
from relay.storage.repo import SqlConversationStore, make_engine

log = logging.getLogger("app.chat")

ALLOWED_METHODS = ["GET", "POST", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Trace-Id", "X-Forwarded-For"]
EXPOSED_HEADERS = [CONVERSATION_HEADER, "Retry-After"]


class ChatMessageIn(BaseModel):
    role: str
    content: Optional[str] = None


class ChatOptionsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    web_search_enabled: bool = Field(default=False, alias="webSearchEnabled")

    def to_options(self) -> ChatOptions:
        return ChatOptions(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            web_search_enabled=self.web_search_enabled,
        )


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessageIn] = Field(default_factory=list)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    options: Optional[ChatOptionsIn] = None


class PreflightCORSMiddleware(CORSMiddleware):
    """CORS where every OPTIONS request gets ``204 No Content``.

    Browser preflights go through the regular allow-list checks; any other
    OPTIONS request is answered here with the fixed method list.
    """

    async def __call__(self, scope, receive, send) -> None:  # type: ignore[override]
        if scope["type"] == "http" and scope["method"] == "OPTIONS":
            headers = Headers(scope=scope)
            if "origin" not in headers or "access-control-request-method" not in headers:
                response = Response(
                    status_code=204,
                    headers={
                        "Allow": ", ".join(ALLOWED_METHODS),
                        "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
                        "Access-Control-Allow-Headers": ", ".join(ALLOWED_HEADERS),
                    },
                )
                await response(scope, receive, send)
                return
        await super().__call__(scope, receive, send)

    def preflight_response(self, request_headers):  # type: ignore[override]
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            k: v for k, v in response.headers.items() if k.lower() not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


def _error_response(exc: RelayError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


def _build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}

    @router.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @router.post("/chat")
    async def chat(request: Request, req: ChatRequest):
        state = request.app.state
        key = client_key(request.headers.get(state.settings.rate_limit_key_header))
        decision = state.rate_limiter.hit(key)
        if not decision.allowed:
            RATE_LIMITED.inc()
            logging.getLogger("app.ratelimit").info(
                {"event": "ratelimit.rejected", "client": key, "retry_after": decision.retry_after}
            )
            raise RateLimitExceeded(decision.retry_after)

        user_text = latest_user_message([m.model_dump() for m in req.messages])
        options = req.options.to_options() if req.options else ChatOptions()
        turn = await state.proxy.handle_chat_turn(req.conversation_id, user_text, options)
        headers = {
            CONVERSATION_HEADER: turn.conversation_id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(turn.body, media_type="text/plain; charset=utf-8", headers=headers)

    @router.post("/chat/{conversation_id}/cancel")
    async def cancel_chat(request: Request, conversation_id: str) -> JSONResponse:
        if request.app.state.registry.cancel(conversation_id):
            return JSONResponse(content={"status": "cancelled"})
        return JSONResponse(status_code=404, content={"status": "not found or already complete"})

    @router.get("/history")
    async def history(
        request: Request, conversation_id: Optional[str] = Query(default=None, alias="id")
    ) -> JSONResponse:
        if not conversation_id:
            raise ValidationError("query parameter 'id' is required")
        store: ConversationStore = request.app.state.store
        try:
            messages = await store.fetch(conversation_id)
        except StoreError:
            logging.getLogger("app.store").exception(
                {"event": "history.read_failed", "conversation_id": conversation_id}
            )
            return JSONResponse(status_code=500, content={"error": "failed to read conversation history"})
        if messages is None:
            raise NotFound(f"conversation {conversation_id} not found")
        return JSONResponse(
            content={"conversationId": conversation_id, "history": [m.to_wire() for m in messages]}
        )

    return router


def create_app(
    settings: Optional[AppSettings] = None,
    *,
    provider: Optional[Provider] = None,
    store: Optional[ConversationStore] = None,
    registry: Optional[CancellationRegistry] = None,
) -> FastAPI:
    settings = settings or get_settings()
    tasks = BackgroundTasks()
    owned_store: Optional[SqlConversationStore] = None
    if store is None:
        owned_store = SqlConversationStore(make_engine(settings.db_url))
        store = owned_store
    registry = registry or InProcessCancellationRegistry(reject_concurrent=settings.reject_concurrent_turns)
    provider = provider or get_provider(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Transcripts are persisted after responses are sent; let them land.
        await tasks.drain(timeout=settings.shutdown_grace_sec)
        if owned_store is not None:
            owned_store.dispose()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.tasks = tasks
    app.state.store = store
    app.state.registry = registry
    app.state.rate_limiter = FixedWindowRateLimiter(
        settings.rate_limit_max_requests, settings.rate_limit_window_sec
    )
    app.state.proxy = ChatProxy(
        provider=provider, store=store, registry=registry, tasks=tasks, settings=settings
    )

    app.add_middleware(
        PreflightCORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=ALLOWED_METHODS,
        allow_headers=ALLOWED_HEADERS,
        expose_headers=EXPOSED_HEADERS,
    )
    app.middleware("http")(request_logging_middleware)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            log.warning({"event": "chat.failed", "code": exc.code, "error": exc.message})
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{where}: {first.get('msg', 'invalid request')}" if where else "invalid request body"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        text = "Not found" if exc.status_code == 404 else str(exc.detail)
        return PlainTextResponse(text, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    router = _build_router()
    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app


def _default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)
    return create_app(settings)


app = _default_app()
