"""User bootstrap and lookup.

Users are created on first authenticated request from the JWT claims.
Creation is race-safe: concurrent first requests converge on one row.
"""

from collections.abc import Iterable
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cordline.db.models import User
from cordline.db.session import transaction
from cordline.errors import ApiErrorCode, NotFoundError
from cordline.logging import get_logger

logger = get_logger(__name__)


def fallback_username(user_id: UUID) -> str:
    """Deterministic username for accounts whose claims carry none."""
    return f"user_{user_id.hex[:12]}"


def username_from_claims(user_id: UUID, claims: dict[str, Any]) -> tuple[str, str | None]:
    """Pick (username, display_name) out of Supabase JWT claims."""
    metadata = claims.get("user_metadata") or {}
    username = (
        metadata.get("username")
        or claims.get("preferred_username")
        or fallback_username(user_id)
    )
    display_name = metadata.get("full_name") or metadata.get("name")
    return username.strip(), display_name


def ensure_user(
    db: Session,
    user_id: UUID,
    username: str | None = None,
    display_name: str | None = None,
) -> User:
    """Ensure a user row exists for user_id.

    Idempotent: an existing row is returned untouched. If the requested
    username is taken by someone else, the fallback username is used.

    Args:
        db: Database session.
        user_id: The user's ID (JWT sub claim).
        username: Preferred username.
        display_name: Optional display name.

    Returns:
        The user row.
    """
    user = db.get(User, user_id)
    if user is not None:
        return user

    candidates = [username or fallback_username(user_id)]
    if candidates[0] != fallback_username(user_id):
        candidates.append(fallback_username(user_id))

    for candidate in candidates:
        try:
            with transaction(db):
                user = User(id=user_id, username=candidate, display_name=display_name)
                db.add(user)
                db.flush()
            logger.info("user_created", user_id=str(user_id), username=candidate)
            return user
        except IntegrityError:
            # Either a concurrent request created this user, or the username is taken.
            existing = db.get(User, user_id)
            if existing is not None:
                return existing

    raise RuntimeError(f"Could not create user {user_id}")


def get_user_by_username(db: Session, username: str) -> User:
    """Look up a user by username.

    Raises:
        NotFoundError(E_USER_NOT_FOUND): If no such user exists.
    """
    user = db.scalar(select(User).where(User.username == username))
    if user is None:
        raise NotFoundError(ApiErrorCode.E_USER_NOT_FOUND, "User not found")
    return user


def get_users_by_usernames(db: Session, usernames: Iterable[str]) -> list[User]:
    """Look up several users; every name must resolve.

    Raises:
        NotFoundError(E_USER_NOT_FOUND): If any username is unknown.
    """
    wanted = set(usernames)
    users = list(db.scalars(select(User).where(User.username.in_(wanted))))
    if len(users) != len(wanted):
        raise NotFoundError(ApiErrorCode.E_USER_NOT_FOUND, "User not found")
    return users
