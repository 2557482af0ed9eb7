"""Moderation gate consulted before a message is stored.

Content filtering itself belongs to the moderation collaborator; the
messaging core only asks check(text) -> ModerationResult and refuses to
insert flagged text.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from cordline.config import Settings


@dataclass(frozen=True)
class ModerationResult:
    """Outcome of a moderation check."""

    flagged: bool
    reason: str | None = None


class Moderator(Protocol):
    """Anything that can vet message text."""

    def check(self, text: str) -> ModerationResult: ...


class KeywordModerator:
    """Blocklist moderator: flags text containing any listed word (case-insensitive)."""

    def __init__(self, blocklist: Iterable[str]):
        self.blocklist = [word.lower() for word in blocklist if word]

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeywordModerator":
        return cls(settings.moderation_blocklist_words)

    def check(self, text: str) -> ModerationResult:
        lowered = text.lower()
        for word in self.blocklist:
            if word in lowered:
                return ModerationResult(flagged=True, reason="Message contains prohibited words")
        return ModerationResult(flagged=False)
