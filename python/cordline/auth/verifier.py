"""Token verification.

Provides:
- TokenVerifier: Protocol for token verification
- SupabaseJwksVerifier: Verifier using Supabase JWKS (used in all environments)

Note: Test-only verifiers are in tests/support/mock_verifier.py
"""

import threading
from typing import Any, Protocol
from uuid import UUID

import jwt
from jwt import PyJWKClient
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
    PyJWKClientError,
)

from cordline.errors import ApiError, ApiErrorCode
from cordline.logging import get_logger

logger = get_logger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60

# Supabase cloud signs with RS256, local Supabase with ES256
ALLOWED_ALGORITHMS = ["RS256", "ES256"]

# Most specific first: InvalidTokenError is the base of the others.
_DECODE_FAILURES: list[tuple[type[InvalidTokenError], str, str]] = [
    (ExpiredSignatureError, "expired_token", "Token expired"),
    (InvalidSignatureError, "invalid_signature", "Invalid token signature"),
    (InvalidIssuerError, "invalid_issuer", "Invalid token issuer"),
    (InvalidAudienceError, "invalid_audience", "Invalid token audience"),
    (DecodeError, "decode_error", "Invalid token format"),
    (InvalidTokenError, "invalid_token", "Invalid token"),
]


def _unauthenticated(reason: str, message: str) -> ApiError:
    logger.warning("auth_failure", reason=reason)
    return ApiError(ApiErrorCode.E_UNAUTHENTICATED, message)


def subject_user_id(claims: dict[str, Any]) -> UUID:
    """Parse the sub claim as a user id.

    Raises:
        ApiError(E_UNAUTHENTICATED): If sub is missing or not a UUID.
    """
    sub = claims.get("sub")
    if not sub:
        raise _unauthenticated("missing_sub", "Invalid token: missing sub")
    try:
        return UUID(str(sub))
    except ValueError as e:
        raise _unauthenticated("invalid_sub", "Invalid token: sub is not a valid UUID") from e


class TokenVerifier(Protocol):
    """Verifies a bearer token and returns its claims."""

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid, expired, or malformed.
            ApiError(E_AUTH_UNAVAILABLE): Infrastructure failure (JWKS unreachable).
        """
        ...


class SupabaseJwksVerifier:
    """Token verifier backed by the Supabase JWKS endpoint.

    Checks signature, exp (with clock skew), iss, aud and that sub is a UUID.
    On an unknown kid the key set is refetched once before giving up.
    """

    def __init__(self, jwks_url: str, issuer: str, audiences: list[str], cache_ttl: int = 3600):
        self.jwks_url = jwks_url
        self.issuer = issuer.rstrip("/")
        self.audiences = audiences
        self.cache_ttl = cache_ttl
        self._lock = threading.Lock()
        self._client: PyJWKClient | None = None

    def _jwks_client(self, refresh: bool = False) -> PyJWKClient:
        with self._lock:
            if self._client is None or refresh:
                self._client = PyJWKClient(self.jwks_url, cache_keys=True, lifespan=self.cache_ttl)
            return self._client

    def _signing_key(self, token: str) -> Any:
        try:
            return self._jwks_client().get_signing_key_from_jwt(token)
        except PyJWKClientError as e:
            if "Unable to find" not in str(e) and "kid" not in str(e).lower():
                raise
            logger.info("jwks_refresh", reason="kid_miss")

        try:
            return self._jwks_client(refresh=True).get_signing_key_from_jwt(token)
        except PyJWKClientError as e:
            raise _unauthenticated("kid_not_found", "Invalid token: signing key not found") from e

    def verify(self, token: str) -> dict[str, Any]:
        try:
            signing_key = self._signing_key(token)
        except PyJWKClientError as e:
            logger.warning("auth_failure", reason="jwks_unavailable", error=str(e))
            raise ApiError(
                ApiErrorCode.E_AUTH_UNAVAILABLE, "Authentication service unavailable"
            ) from e

        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self.audiences,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iss", "sub"], "verify_aud": True},
            )
        except InvalidTokenError as e:
            for exc_type, reason, message in _DECODE_FAILURES:
                if isinstance(e, exc_type):
                    raise _unauthenticated(reason, message) from e
            raise

        subject_user_id(claims)
        return claims
