import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from Rapport.config import Settings, get_settings
from Rapport.database import SessionLocal
from Rapport.errors import register_exception_handlers
from Rapport.rate_limiters.rate_limiter import RateLimiter, build_rate_limiter
from Rapport.request_context import REQUEST_ID_HEADER, RequestIdLogFilter, RequestIdMiddleware
from Rapport.services.ai_client import AIChatClient, build_ai_client
from Rapport.services.chat_stream import ChatStreamRelay
from Rapport.subapps.chat_routes import router as chat_router
from Rapport.subapps.conversation_routes import router as conversation_router
from Rapport.subapps.system_routes import router as system_router

logger = logging.getLogger(__name__)


def _configure_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        )
    for handler in root_logger.handlers:
        if not any(isinstance(f, RequestIdLogFilter) for f in handler.filters):
            handler.addFilter(RequestIdLogFilter())


def _install_ai_client(app: FastAPI, ai_client: AIChatClient) -> None:
    app.state.ai_client = ai_client
    app.state.chat_relay = ChatStreamRelay(ai_client)


def create_app(
    settings: Optional[Settings] = None,
    *,
    ai_client: Optional[AIChatClient] = None,
    session_factory: Optional[sessionmaker] = None,
    ai_rate_limiter: Optional[RateLimiter] = None,
    auth_rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # The provider client lives for the process: built at startup, closed at shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.ai_client is None:
            try:
                owned = build_ai_client(settings)
            except ValueError as e:
                logger.error("ai_client.unavailable: %s", e)
            else:
                _install_ai_client(app, owned)
                logger.info("ai_client.ready: provider=%s model=%s", settings.ai_provider, owned.model)
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    app = FastAPI(title="Rapport", lifespan=lifespan)

    app.state.settings = settings
    app.state.session_factory = session_factory or SessionLocal
    app.state.ai_client = None
    app.state.chat_relay = None
    if ai_client is not None:
        _install_ai_client(app, ai_client)
    app.state.ai_rate_limiter = ai_rate_limiter or build_rate_limiter(
        name="ai",
        max_requests=settings.ai_rate_limit_max,
        window_seconds=settings.ai_rate_limit_window_seconds,
        redis_url=settings.redis_url,
    )
    app.state.auth_rate_limiter = auth_rate_limiter or build_rate_limiter(
        name="auth",
        max_requests=settings.auth_rate_limit_max,
        window_seconds=settings.auth_rate_limit_window_seconds,
        redis_url=settings.redis_url,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, "Retry-After"],
    )
    # Added last so it wraps CORS and every response carries the request id
    app.add_middleware(RequestIdMiddleware)

    register_exception_handlers(app)

    app.include_router(system_router)
    app.include_router(chat_router)
    app.include_router(conversation_router)
    return app


_configure_logging(get_settings().log_level)

app = create_app()
