"""Bearer-token authentication for the messaging API.

Exposes the token verifier protocol with its Supabase JWKS implementation,
the middleware that attaches a Viewer to each request, and the get_viewer
dependency routes use as the current user id.

Test-only verifiers live in tests/support/mock_verifier.py.
"""

from cordline.auth.middleware import AuthMiddleware, Viewer, get_viewer
from cordline.auth.verifier import SupabaseJwksVerifier, TokenVerifier

__all__ = [
    "AuthMiddleware",
    "SupabaseJwksVerifier",
    "TokenVerifier",
    "Viewer",
    "get_viewer",
]
