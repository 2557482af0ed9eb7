"""Request authentication.

AuthMiddleware turns a bearer token into a Viewer on request.state before
any route runs; get_viewer is the route-side dependency that reads it back.
In staging/prod the BFF also has to present the shared internal secret.
"""

import hmac
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from cordline.auth.verifier import TokenVerifier, subject_user_id
from cordline.errors import ERROR_CODE_TO_STATUS, ApiError, ApiErrorCode
from cordline.logging import bind_log_context, get_logger
from cordline.responses import error_response

logger = get_logger(__name__)

INTERNAL_HEADER = "x-cordline-internal"
PUBLIC_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})

# Called with (user_id, claims) once the token is verified.
BootstrapCallback = Callable[[UUID, dict[str, Any]], None]


@dataclass(frozen=True)
class Viewer:
    user_id: UUID


class AuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests; attach a Viewer to the rest.

    Checks, in order: public path bypass, internal header (staging/prod),
    bearer token verification, local user bootstrap.
    """

    def __init__(
        self,
        app: ASGIApp,
        verifier: TokenVerifier,
        requires_internal_header: bool = False,
        internal_secret: str | None = None,
        bootstrap_callback: BootstrapCallback | None = None,
    ):
        super().__init__(app)
        self.verifier = verifier
        self.requires_internal_header = requires_internal_header
        self.internal_secret = internal_secret
        self.bootstrap_callback = bootstrap_callback

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        try:
            viewer = self._authenticate(request)
        except ApiError as e:
            return JSONResponse(
                status_code=ERROR_CODE_TO_STATUS.get(e.code, 500),
                content=error_response(e.code, e.message),
            )

        request.state.viewer = viewer
        bind_log_context(user_id=viewer.user_id)
        return await call_next(request)

    def _authenticate(self, request: Request) -> Viewer:
        if self.requires_internal_header:
            self._check_internal_header(request)

        claims = self.verifier.verify(self._bearer_token(request))
        user_id = subject_user_id(claims)

        if self.bootstrap_callback is not None:
            try:
                self.bootstrap_callback(user_id, claims)
            except Exception:
                logger.exception("user_bootstrap_failed", user_id=str(user_id))
                raise ApiError(ApiErrorCode.E_INTERNAL, "Internal server error") from None

        return Viewer(user_id=user_id)

    def _check_internal_header(self, request: Request) -> None:
        if not self.internal_secret:
            logger.error("internal_secret_not_configured")
            raise ApiError(ApiErrorCode.E_INTERNAL, "Internal server error")

        supplied = request.headers.get(INTERNAL_HEADER)
        if supplied is None or not hmac.compare_digest(
            supplied.encode(), self.internal_secret.encode()
        ):
            logger.warning(
                "auth_failure",
                reason="internal_header_missing" if supplied is None else "internal_header_mismatch",
                request_path=request.url.path,
            )
            raise ApiError(ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required")

    @staticmethod
    def _bearer_token(request: Request) -> str:
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            logger.warning(
                "auth_failure",
                reason="missing_header" if not scheme else "invalid_header_format",
                request_path=request.url.path,
            )
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
        return token


def get_viewer(request: Request) -> Viewer:
    """Route dependency for the authenticated user (the `current user id`)."""
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer
