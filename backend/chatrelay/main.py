import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.api import auth, conversations, instructions, models
from chatrelay.api.deps import redirect_back, wants_json
from chatrelay.core.config import settings
from chatrelay.core.database import async_session, init_models
from chatrelay.core.exceptions import ChatServiceError, InvalidRequestError, ProviderError
from chatrelay.core.logging_config import request_id_var, setup_logging
from chatrelay.integrations.openrouter_client import build_openrouter_client
from chatrelay.services.chat_service import ChatRelay
from chatrelay.services.model_catalog import ModelCatalog

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every log line of a request with its X-Request-ID (or a fresh one)."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    await init_models()

    client = build_openrouter_client()
    catalog = ModelCatalog(
        fetch=client.list_models,
        default_model=settings.default_model,
        ttl_seconds=settings.model_cache_ttl_seconds,
    )
    app.state.catalog = catalog
    app.state.relay = ChatRelay(
        provider=client,
        catalog=catalog,
        session_factory=async_session,
        stream_deadline=settings.stream_deadline_seconds,
    )
    logger.info("%s started, default model %s", settings.app_name, settings.default_model)

    yield

    await client.aclose()


async def chat_service_error_handler(request: Request, exc: ChatServiceError):
    # Form posts get sent back where they came from with a notice.
    if isinstance(exc, (ProviderError, InvalidRequestError)) and not wants_json(request):
        return redirect_back(request, fallback="/conversations", error=f"Error: {exc.message}")

    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, InvalidRequestError):
        content["fields"] = exc.fields
    return JSONResponse(status_code=exc.status_code, content=content)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    if wants_json(request):
        return await request_validation_exception_handler(request, exc)

    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    notice = f"Error: invalid or missing {', '.join(fields)}" if fields else "Error: invalid request"
    return redirect_back(request, fallback="/conversations", error=notice)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.add_exception_handler(ChatServiceError, chat_service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Routers
    app.include_router(auth.router)
    app.include_router(conversations.router)
    app.include_router(models.router)
    app.include_router(instructions.router)

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok"}

    return app


app = create_app()
