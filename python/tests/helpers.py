"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication
- Header generation for test requests
"""

import time
from uuid import UUID, uuid4

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from tests.support.mock_verifier import MockJwtVerifier

# Default test token settings
DEFAULT_ISSUER = "test-issuer"
DEFAULT_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour


def mint_test_token(
    user_id: UUID | str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    **extra_claims,
) -> str:
    """Mint a valid test JWT signed with the MockJwtVerifier key.

    Args:
        user_id: The `sub` claim.
        expires_in: Token validity in seconds from now (negative for expired).
        issuer: The `iss` claim value.
        audience: The `aud` claim value.
        **extra_claims: Additional claims (e.g. user_metadata).
    """
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }
    return jwt.encode(payload, MockJwtVerifier.get_private_key(), algorithm="RS256")


def auth_headers(user_id: UUID | str, username: str | None = None, **token_kwargs) -> dict[str, str]:
    """Headers with a valid bearer token for user_id.

    username, when given, is carried in user_metadata the way Supabase does.
    """
    if username is not None:
        token_kwargs.setdefault("user_metadata", {"username": username})
    token = mint_test_token(user_id, **token_kwargs)
    return {"Authorization": f"Bearer {token}"}


def create_test_user_id() -> UUID:
    """Generate a random UUID for a test user."""
    return uuid4()


def mint_expired_token(user_id: UUID | str) -> str:
    """Mint a token that expired well outside the clock skew allowance."""
    return mint_test_token(user_id, expires_in=-3600)


def mint_token_with_bad_signature(user_id: UUID | str) -> str:
    """Mint a well-formed token signed with a key the verifier does not know."""
    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": DEFAULT_ISSUER,
        "aud": DEFAULT_AUDIENCE,
        "iat": now,
        "exp": now + DEFAULT_EXPIRES_IN,
    }
    return jwt.encode(payload, other_key, algorithm="RS256")
