"""Conversation service layer.

Implements get-or-create, membership checks, listing and cord settings.

All operations:
- Reject non-participants with E_FORBIDDEN, whether or not the conversation
  exists (existence is never leaked)
- Serialize get-or-create for the same participant set through the unique
  dedup_key: a losing racer rolls back and re-reads the winner's row
- Support cursor-based pagination

Service functions correspond 1:1 with route handlers.
"""

import base64
import json
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cordline.config import Settings, get_settings
from cordline.db.models import (
    Conversation,
    ConversationParticipant,
    EncryptedCord,
    User,
)
from cordline.db.session import transaction
from cordline.errors import ApiErrorCode, ForbiddenError, InvalidRequestError, NotFoundError
from cordline.logging import get_logger
from cordline.schemas.conversation import ConversationOut, CordOut, PageInfo, ParticipantOut
from cordline.services.patch import CordSettingsUpdate, build_update

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Pagination limits
DEFAULT_LIMIT = 50
MIN_LIMIT = 1
MAX_LIMIT = 100


# =============================================================================
# Cursor Encoding/Decoding
# =============================================================================


def encode_conversation_cursor(updated_at: datetime, id: UUID) -> str:
    """Encode a cursor for conversation pagination.

    Cursor payload: {"updated_at": "<iso>", "id": "<uuid>"}
    Encoding: base64url without padding
    """
    payload = {"updated_at": updated_at.isoformat(), "id": str(id)}
    json_bytes = json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(json_bytes).decode("ascii").rstrip("=")


def decode_conversation_cursor(cursor: str) -> tuple[datetime, UUID]:
    """Decode a cursor for conversation pagination.

    Raises:
        InvalidRequestError(E_INVALID_CURSOR): If cursor is malformed.
    """
    try:
        padding = 4 - len(cursor) % 4
        if padding != 4:
            cursor += "=" * padding

        payload = json.loads(base64.urlsafe_b64decode(cursor).decode("utf-8"))
        return datetime.fromisoformat(payload["updated_at"]), UUID(payload["id"])
    except Exception:
        raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid cursor") from None


# =============================================================================
# Helper Functions
# =============================================================================


def clamp_limit(limit: int) -> int:
    """Clamp limit to valid range [MIN_LIMIT, MAX_LIMIT]."""
    return min(max(limit, MIN_LIMIT), MAX_LIMIT)


def conversation_dedup_key(user_ids: Iterable[UUID], encrypted: bool) -> str:
    """Normalized identity of a participant set plus mode.

    Ids are sorted so the key does not depend on who initiated.
    """
    ordered = sorted({str(user_id) for user_id in user_ids})
    mode = "encrypted" if encrypted else "plain"
    return f"{mode}:{','.join(ordered)}"


def resolve_timer(timer: int | None, settings: Settings | None = None) -> int:
    """Return the cord timer to use, applying the default and the upper bound.

    Raises:
        InvalidRequestError(E_INVALID_TIMER): If timer is outside (0, max].
    """
    settings = settings or get_settings()
    if timer is None:
        return settings.default_self_destruct_timer_s
    if timer <= 0 or timer > settings.max_self_destruct_timer_s:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_TIMER,
            f"Self-destruct timer must be between 1 and {settings.max_self_destruct_timer_s} seconds",
        )
    return timer


def is_participant(db: Session, conversation_id: UUID, user_id: UUID) -> bool:
    """Whether user_id is a member of conversation_id."""
    found = db.scalar(
        select(ConversationParticipant.user_id).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
    )
    return found is not None


def require_participant(db: Session, conversation_id: UUID, user_id: UUID) -> None:
    """Raise unless user_id is a member of conversation_id.

    Raises:
        ForbiddenError(E_FORBIDDEN): If not a participant, including when the
            conversation does not exist.
    """
    if not is_participant(db, conversation_id, user_id):
        raise ForbiddenError(ApiErrorCode.E_FORBIDDEN, "Not a participant of this conversation")


def participant_ids(db: Session, conversation_id: UUID) -> list[UUID]:
    """Member ids of a conversation."""
    return list(
        db.scalars(
            select(ConversationParticipant.user_id).where(
                ConversationParticipant.conversation_id == conversation_id
            )
        )
    )


def lock_conversation(db: Session, conversation_id: UUID) -> Conversation | None:
    """Load a conversation with a row lock (SELECT ... FOR UPDATE).

    Serializes writers of the same conversation for the rest of the transaction.
    """
    return db.execute(
        select(Conversation).where(Conversation.id == conversation_id).with_for_update()
    ).scalar_one_or_none()


def get_cord(db: Session, conversation_id: UUID) -> EncryptedCord | None:
    return db.get(EncryptedCord, conversation_id)


def _find_by_dedup_key(db: Session, dedup_key: str) -> UUID | None:
    return db.scalar(select(Conversation.id).where(Conversation.dedup_key == dedup_key))


def _load_participants(db: Session, conversation_ids: list[UUID]) -> dict[UUID, list[ParticipantOut]]:
    rows = db.execute(
        select(ConversationParticipant, User)
        .join(User, User.id == ConversationParticipant.user_id)
        .where(ConversationParticipant.conversation_id.in_(conversation_ids))
        .order_by(ConversationParticipant.joined_at, User.username)
    ).all()

    by_conversation: dict[UUID, list[ParticipantOut]] = defaultdict(list)
    for participant, user in rows:
        by_conversation[participant.conversation_id].append(
            ParticipantOut(
                user_id=user.id,
                username=user.username,
                display_name=user.display_name,
                last_read_at=participant.last_read_at,
            )
        )
    return by_conversation


def _load_cords(db: Session, conversation_ids: list[UUID]) -> dict[UUID, EncryptedCord]:
    cords = db.scalars(
        select(EncryptedCord).where(EncryptedCord.conversation_id.in_(conversation_ids))
    )
    return {cord.conversation_id: cord for cord in cords}


def conversation_to_out(
    conversation: Conversation,
    unread_count: int,
    participants: list[ParticipantOut],
    cord: EncryptedCord | None,
) -> ConversationOut:
    """Convert a Conversation ORM model to the viewer-scoped ConversationOut."""
    return ConversationOut(
        id=conversation.id,
        is_encrypted=bool(cord and cord.is_active),
        self_destruct_timer=cord.self_destruct_timer if cord else None,
        unread_count=unread_count,
        participants=participants,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        last_message_at=conversation.last_message_at,
    )


# =============================================================================
# Service Functions
# =============================================================================


def _get_or_create(
    db: Session,
    creator_id: UUID,
    member_ids: set[UUID],
    encrypted: bool,
    timer: int | None,
) -> tuple[UUID, bool]:
    dedup_key = conversation_dedup_key(member_ids, encrypted)

    existing_id = _find_by_dedup_key(db, dedup_key)
    if existing_id is not None:
        return existing_id, False

    resolved_timer = resolve_timer(timer) if encrypted else None

    try:
        with transaction(db):
            conversation = Conversation(creator_id=creator_id, dedup_key=dedup_key)
            db.add(conversation)
            db.flush()

            db.add_all(
                ConversationParticipant(
                    conversation_id=conversation.id, user_id=member_id, unread_count=0
                )
                for member_id in sorted(member_ids, key=str)
            )
            if encrypted:
                db.add(
                    EncryptedCord(
                        conversation_id=conversation.id,
                        is_active=True,
                        self_destruct_timer=resolved_timer,
                    )
                )
            db.flush()
    except IntegrityError:
        # Lost the race: another request created the same participant set.
        existing_id = _find_by_dedup_key(db, dedup_key)
        if existing_id is None:
            raise
        logger.info("conversation_create_race_resolved", conversation_id=str(existing_id))
        return existing_id, False

    logger.info(
        "conversation_created",
        conversation_id=str(conversation.id),
        participant_count=len(member_ids),
        encrypted=encrypted,
    )
    return conversation.id, True


def get_or_create_conversation(
    db: Session,
    user_a: UUID,
    user_b: UUID,
    encrypted: bool = False,
    timer: int | None = None,
) -> tuple[UUID, bool]:
    """Return the one conversation between two users, creating it if needed.

    Plain and encrypted conversations between the same pair are distinct.

    Args:
        db: Database session.
        user_a: Initiating user (recorded as creator).
        user_b: Peer.
        encrypted: Attach an encrypted cord when creating.
        timer: Cord self-destruct timer in seconds (default from settings).

    Returns:
        (conversation_id, created)

    Raises:
        InvalidRequestError(E_SELF_CONVERSATION): If user_a == user_b.
        InvalidRequestError(E_INVALID_TIMER): If timer is out of range.
    """
    if user_a == user_b:
        raise InvalidRequestError(
            ApiErrorCode.E_SELF_CONVERSATION, "Cannot start a conversation with yourself"
        )
    return _get_or_create(db, user_a, {user_a, user_b}, encrypted, timer)


def get_or_create_group_conversation(
    db: Session,
    creator_id: UUID,
    peer_ids: Iterable[UUID],
    encrypted: bool = False,
    timer: int | None = None,
) -> tuple[UUID, bool]:
    """Return the conversation for exactly creator + peers, creating it if needed.

    Raises:
        InvalidRequestError(E_SELF_CONVERSATION): If no peer other than the creator.
    """
    member_ids = {creator_id, *peer_ids}
    if len(member_ids) < 2:
        raise InvalidRequestError(
            ApiErrorCode.E_SELF_CONVERSATION, "Cannot start a conversation with yourself"
        )
    return _get_or_create(db, creator_id, member_ids, encrypted, timer)


def get_conversation(db: Session, viewer_id: UUID, conversation_id: UUID) -> ConversationOut:
    """Get a conversation as seen by one of its participants.

    Raises:
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
    """
    row = db.execute(
        select(Conversation, ConversationParticipant.unread_count)
        .join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id,
        )
        .where(
            Conversation.id == conversation_id,
            ConversationParticipant.user_id == viewer_id,
        )
    ).first()
    if row is None:
        raise ForbiddenError(ApiErrorCode.E_FORBIDDEN, "Not a participant of this conversation")

    conversation, unread_count = row
    participants = _load_participants(db, [conversation.id])
    return conversation_to_out(
        conversation, unread_count, participants[conversation.id], get_cord(db, conversation.id)
    )


def list_conversations(
    db: Session,
    viewer_id: UUID,
    limit: int = DEFAULT_LIMIT,
    cursor: str | None = None,
) -> tuple[list[ConversationOut], PageInfo]:
    """List the viewer's conversations, most recently active first.

    Args:
        db: Database session.
        viewer_id: The viewer's user ID.
        limit: Maximum number of results (clamped to [1, 100]).
        cursor: Opaque pagination cursor.

    Returns:
        (conversations, page_info)

    Raises:
        InvalidRequestError(E_INVALID_CURSOR): If cursor is malformed.
    """
    limit = clamp_limit(limit)

    stmt = (
        select(Conversation, ConversationParticipant.unread_count)
        .join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id,
        )
        .where(ConversationParticipant.user_id == viewer_id)
    )

    if cursor:
        cursor_updated_at, cursor_id = decode_conversation_cursor(cursor)
        # Keyset for DESC ordering: (updated_at, id) < (cursor.updated_at, cursor.id)
        stmt = stmt.where(
            or_(
                Conversation.updated_at < cursor_updated_at,
                and_(
                    Conversation.updated_at == cursor_updated_at,
                    Conversation.id < cursor_id,
                ),
            )
        )

    rows = db.execute(
        stmt.order_by(Conversation.updated_at.desc(), Conversation.id.desc()).limit(limit + 1)
    ).all()

    has_more = len(rows) > limit
    rows = rows[:limit]

    ids = [conversation.id for conversation, _ in rows]
    participants = _load_participants(db, ids) if ids else {}
    cords = _load_cords(db, ids) if ids else {}

    conversations = [
        conversation_to_out(
            conversation, unread_count, participants[conversation.id], cords.get(conversation.id)
        )
        for conversation, unread_count in rows
    ]

    next_cursor = None
    if has_more and rows:
        last = rows[-1][0]
        next_cursor = encode_conversation_cursor(last.updated_at, last.id)

    return conversations, PageInfo(next_cursor=next_cursor)


def add_participant(
    db: Session, actor_id: UUID, conversation_id: UUID, user_id: UUID
) -> ConversationOut:
    """Add a member to a conversation (idempotent).

    The conversation stops answering get-or-create for its original pair
    once its membership changes.

    Raises:
        ForbiddenError(E_FORBIDDEN): If actor is not a participant.
    """
    require_participant(db, conversation_id, actor_id)

    if not is_participant(db, conversation_id, user_id):
        with transaction(db):
            conversation = lock_conversation(db, conversation_id)
            if conversation is None:
                raise ForbiddenError(
                    ApiErrorCode.E_FORBIDDEN, "Not a participant of this conversation"
                )
            if not is_participant(db, conversation_id, user_id):
                db.add(
                    ConversationParticipant(
                        conversation_id=conversation_id, user_id=user_id, unread_count=0
                    )
                )
                conversation.dedup_key = None
                db.flush()
        logger.info(
            "participant_added",
            conversation_id=str(conversation_id),
            added_user_id=str(user_id),
        )

    return get_conversation(db, actor_id, conversation_id)


def update_cord_settings(
    db: Session, actor_id: UUID, conversation_id: UUID, patch: CordSettingsUpdate
) -> CordOut:
    """Apply a partial update to a conversation's encrypted cord.

    Only the provided fields are written; an empty patch is a no-op.

    Raises:
        ForbiddenError(E_FORBIDDEN): If actor is not a participant.
        NotFoundError(E_CORD_NOT_FOUND): If the conversation has no cord.
        InvalidRequestError(E_INVALID_TIMER): If the new timer is out of range.
    """
    require_participant(db, conversation_id, actor_id)

    cord = get_cord(db, conversation_id)
    if cord is None:
        raise NotFoundError(ApiErrorCode.E_CORD_NOT_FOUND, "Conversation has no encrypted cord")

    if patch.self_destruct_timer is not None:
        resolve_timer(patch.self_destruct_timer)

    stmt = build_update(EncryptedCord, [EncryptedCord.conversation_id == conversation_id], patch)
    if stmt is not None:
        with transaction(db):
            db.execute(stmt)
        db.refresh(cord)
        logger.info(
            "cord_updated",
            conversation_id=str(conversation_id),
            fields=sorted(patch.assignments()),
        )

    return CordOut.model_validate(cord)
