"""Explicit partial-update requests.

Each update request is a dataclass of optional fields. None means "leave
unchanged"; build_update() emits an UPDATE that assigns only the fields that
were provided, or nothing at all when the request is empty.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Update, update


@dataclass(frozen=True)
class UpdateRequest:
    """Base for patch structures."""

    def assignments(self) -> dict[str, Any]:
        """Provided fields only, keyed by column attribute name."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.assignments()


@dataclass(frozen=True)
class CordSettingsUpdate(UpdateRequest):
    """Changes to an encrypted cord."""

    is_active: bool | None = None
    self_destruct_timer: int | None = None


@dataclass(frozen=True)
class ConversationActivityUpdate(UpdateRequest):
    """Activity timestamps bumped on a conversation when a message lands."""

    updated_at: datetime | None = None
    last_message_at: datetime | None = None


def build_update(model: type, where: list[ColumnElement[bool]], patch: UpdateRequest) -> Update | None:
    """Build an UPDATE for model assigning only the patch's provided fields.

    Args:
        model: ORM class to update.
        where: Criteria selecting the row(s).
        patch: The update request.

    Returns:
        The UPDATE statement, or None when the patch provides nothing.
    """
    values = patch.assignments()
    if not values:
        return None
    return update(model).where(*where).values(**values)
