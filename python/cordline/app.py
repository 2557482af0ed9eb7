"""Cordline FastAPI application factory.

Collaborators are injected here and nowhere else: the fanout bus, the
moderation gate, the token verifier and the user bootstrap. Anything not
passed in is built from settings.

Middleware order matters. Starlette runs middleware in reverse order of
registration, so add_request_id_middleware() must be called after
create_app(); the request id is then bound before auth runs and every
response, 401s included, carries X-Request-ID.
"""

from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import redis
from fastapi import FastAPI

from cordline.api.routes import create_api_router
from cordline.auth.middleware import AuthMiddleware, BootstrapCallback
from cordline.auth.verifier import SupabaseJwksVerifier, TokenVerifier
from cordline.config import FanoutBackend, Settings, get_settings
from cordline.db.session import get_session_factory
from cordline.logging import configure_logging, get_logger
from cordline.middleware.request_id import RequestIDMiddleware
from cordline.responses import register_exception_handlers
from cordline.services.fanout import (
    InProcessMessageBus,
    MessageBus,
    NoOpMessageBus,
    RedisMessageBus,
)
from cordline.services.moderation import KeywordModerator, Moderator
from cordline.services.users import ensure_user, username_from_claims

configure_logging()

logger = get_logger(__name__)


def create_bootstrap_callback() -> BootstrapCallback:
    """Mirror the authenticated user into the local users table.

    Runs on every authenticated request with its own short-lived session,
    so username lookups and sender display names work before any route runs.
    """
    session_factory = get_session_factory()

    def bootstrap(user_id: UUID, claims: dict[str, Any]) -> None:
        username, display_name = username_from_claims(user_id, claims)
        db = session_factory()
        try:
            ensure_user(db, user_id, username=username, display_name=display_name)
        finally:
            db.close()

    return bootstrap


def create_token_verifier(settings: Settings) -> SupabaseJwksVerifier:
    return SupabaseJwksVerifier(
        jwks_url=settings.supabase_jwks_url,  # type: ignore[arg-type]
        issuer=settings.normalized_issuer,  # type: ignore[arg-type]
        audiences=settings.audience_list,
    )


def create_message_bus(settings: Settings) -> MessageBus:
    """Build the fanout bus selected by FANOUT_BACKEND."""
    backend = settings.fanout_backend
    if backend == FanoutBackend.NONE:
        return NoOpMessageBus()
    if backend == FanoutBackend.REDIS:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True, socket_timeout=5)
        bus = RedisMessageBus(client)
        bus.start()
        return bus
    return InProcessMessageBus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.message_bus is None:
        settings = get_settings()
        app.state.message_bus = create_message_bus(settings)
        logger.info("message_bus_initialized", backend=settings.fanout_backend.value)

    yield

    bus = app.state.message_bus
    if isinstance(bus, RedisMessageBus):
        bus.stop()
        bus.redis_client.close()
        logger.info("message_bus_stopped", backend=FanoutBackend.REDIS.value)


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier: TokenVerifier | None = None,
    message_bus: MessageBus | None = None,
    moderator: Moderator | None = None,
    bootstrap_callback: BootstrapCallback | None = None,
) -> FastAPI:
    """Create the API application.

    Args:
        skip_auth_middleware: Leave auth off entirely (route-level tests only).
        token_verifier: Verifier for bearer tokens; Supabase JWKS when None.
        message_bus: Fanout bus; built from FANOUT_BACKEND at startup when None.
        moderator: Moderation gate; a keyword gate from MODERATION_BLOCKLIST when None.
        bootstrap_callback: Local user mirroring; session-backed ensure_user when None.
    """
    settings = get_settings()

    app = FastAPI(
        title="Cordline API",
        description="Direct messaging with delivery tracking and self-destructing encrypted cords",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.message_bus = message_bus
    app.state.moderator = moderator or KeywordModerator.from_settings(settings)

    register_exception_handlers(app)
    app.include_router(create_api_router())

    if not skip_auth_middleware:
        app.add_middleware(
            AuthMiddleware,
            verifier=token_verifier or create_token_verifier(settings),
            requires_internal_header=settings.requires_internal_header,
            internal_secret=settings.cordline_internal_secret,
            bootstrap_callback=bootstrap_callback or create_bootstrap_callback(),
        )
        logger.info(
            "auth_middleware_enabled",
            env=settings.cordline_env.value,
            internal_header_required=settings.requires_internal_header,
        )

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Register the request-id middleware; call after create_app so it runs outermost."""
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
