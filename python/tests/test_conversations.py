"""Tests for the conversation service: get-or-create, membership, listing and cords."""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cordline.db.models import Conversation, ConversationParticipant, EncryptedCord, utcnow
from cordline.errors import ApiError, ApiErrorCode, ForbiddenError
from cordline.services import conversations
from cordline.services.conversations import (
    add_participant,
    conversation_dedup_key,
    decode_conversation_cursor,
    encode_conversation_cursor,
    get_conversation,
    get_or_create_conversation,
    get_or_create_group_conversation,
    list_conversations,
    participant_ids,
    resolve_timer,
    update_cord_settings,
)
from cordline.services.patch import CordSettingsUpdate
from tests.factories import create_test_user


class TestDedupKey:
    def test_key_is_order_independent(self):
        a, b = uuid4(), uuid4()
        assert conversation_dedup_key([a, b], False) == conversation_dedup_key([b, a], False)

    def test_mode_is_part_of_the_key(self):
        a, b = uuid4(), uuid4()
        assert conversation_dedup_key([a, b], False) != conversation_dedup_key([a, b], True)
        assert conversation_dedup_key([a, b], True).startswith("encrypted:")


class TestGetOrCreateConversation:
    def test_creates_once_and_reuses(self, db_session: Session, alice, bob):
        """The second call returns the same conversation without creating."""
        first_id, created = get_or_create_conversation(db_session, alice.id, bob.id)
        second_id, created_again = get_or_create_conversation(db_session, alice.id, bob.id)

        assert created is True
        assert created_again is False
        assert first_id == second_id

    def test_symmetric_in_participants(self, db_session: Session, alice, bob):
        """Bob starting the conversation finds the one Alice created."""
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        reverse_id, created = get_or_create_conversation(db_session, bob.id, alice.id)

        assert reverse_id == conversation_id
        assert created is False

    def test_both_users_become_participants(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)

        assert set(participant_ids(db_session, conversation_id)) == {alice.id, bob.id}
        counts = db_session.scalars(
            select(ConversationParticipant.unread_count).where(
                ConversationParticipant.conversation_id == conversation_id
            )
        ).all()
        assert counts == [0, 0]

    def test_creator_is_recorded(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        conversation = db_session.get(Conversation, conversation_id)
        assert conversation.creator_id == alice.id

    def test_plain_and_encrypted_are_distinct(self, db_session: Session, alice, bob):
        plain_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        encrypted_id, created = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True
        )

        assert created is True
        assert encrypted_id != plain_id
        assert db_session.get(EncryptedCord, plain_id) is None

    def test_encrypted_gets_active_cord_with_default_timer(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True
        )
        cord = db_session.get(EncryptedCord, conversation_id)

        assert cord.is_active is True
        assert cord.self_destruct_timer == 60

    def test_encrypted_with_explicit_timer(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True, timer=5
        )
        assert db_session.get(EncryptedCord, conversation_id).self_destruct_timer == 5

    def test_self_conversation_rejected(self, db_session: Session, alice):
        with pytest.raises(ApiError) as exc_info:
            get_or_create_conversation(db_session, alice.id, alice.id)
        assert exc_info.value.code == ApiErrorCode.E_SELF_CONVERSATION

    def test_invalid_timer_rejected_without_creating(self, db_session: Session, alice, bob):
        with pytest.raises(ApiError) as exc_info:
            get_or_create_conversation(db_session, alice.id, bob.id, encrypted=True, timer=0)

        assert exc_info.value.code == ApiErrorCode.E_INVALID_TIMER
        assert db_session.scalar(select(Conversation.id)) is None

    def test_race_loser_returns_winner(self, db_session: Session, alice, bob, monkeypatch):
        """A unique-key collision on insert is resolved by re-reading the winner."""
        winner_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)

        real_find = conversations._find_by_dedup_key
        calls = []

        def find_misses_first_time(db, dedup_key):
            calls.append(dedup_key)
            if len(calls) == 1:
                return None
            return real_find(db, dedup_key)

        monkeypatch.setattr(conversations, "_find_by_dedup_key", find_misses_first_time)

        conversation_id, created = get_or_create_conversation(db_session, bob.id, alice.id)

        assert conversation_id == winner_id
        assert created is False
        assert len(calls) == 2
        total = db_session.scalars(select(Conversation.id)).all()
        assert total == [winner_id]


class TestGroupConversations:
    def test_group_has_every_member(self, db_session: Session, alice, bob, carol):
        conversation_id, created = get_or_create_group_conversation(
            db_session, alice.id, [bob.id, carol.id]
        )

        assert created is True
        assert set(participant_ids(db_session, conversation_id)) == {alice.id, bob.id, carol.id}

    def test_same_member_set_is_reused(self, db_session: Session, alice, bob, carol):
        first_id, _ = get_or_create_group_conversation(db_session, alice.id, [bob.id, carol.id])
        second_id, created = get_or_create_group_conversation(
            db_session, carol.id, [alice.id, bob.id]
        )

        assert second_id == first_id
        assert created is False

    def test_creator_only_rejected(self, db_session: Session, alice):
        with pytest.raises(ApiError) as exc_info:
            get_or_create_group_conversation(db_session, alice.id, [alice.id])
        assert exc_info.value.code == ApiErrorCode.E_SELF_CONVERSATION


class TestAddParticipant:
    def test_adds_member_and_detaches_pair(self, db_session: Session, alice, bob, carol):
        """After membership changes, get-or-create for the pair makes a new conversation."""
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)

        out = add_participant(db_session, alice.id, conversation_id, carol.id)

        assert {p.user_id for p in out.participants} == {alice.id, bob.id, carol.id}
        assert db_session.get(Conversation, conversation_id).dedup_key is None

        new_id, created = get_or_create_conversation(db_session, alice.id, bob.id)
        assert created is True
        assert new_id != conversation_id

    def test_adding_existing_member_is_noop(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)

        out = add_participant(db_session, alice.id, conversation_id, bob.id)

        assert len(out.participants) == 2
        assert db_session.get(Conversation, conversation_id).dedup_key is not None

    def test_non_member_cannot_add(self, db_session: Session, alice, bob, carol):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        with pytest.raises(ForbiddenError):
            add_participant(db_session, carol.id, conversation_id, carol.id)


class TestGetConversation:
    def test_participant_sees_conversation(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True, timer=30
        )

        out = get_conversation(db_session, bob.id, conversation_id)

        assert out.id == conversation_id
        assert out.is_encrypted is True
        assert out.self_destruct_timer == 30
        assert out.unread_count == 0
        assert {p.username for p in out.participants} == {"alice", "bob"}

    def test_non_participant_forbidden(self, db_session: Session, alice, bob, carol):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        with pytest.raises(ForbiddenError) as exc_info:
            get_conversation(db_session, carol.id, conversation_id)
        assert exc_info.value.code == ApiErrorCode.E_FORBIDDEN

    def test_missing_conversation_is_also_forbidden(self, db_session: Session, alice):
        """Existence is not leaked: an unknown id looks the same as a foreign one."""
        with pytest.raises(ForbiddenError):
            get_conversation(db_session, alice.id, uuid4())


class TestListConversations:
    def _backdate(self, db_session: Session, conversation_id, minutes: int):
        db_session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(updated_at=utcnow() - timedelta(minutes=minutes))
        )
        db_session.commit()

    def test_most_recent_first_with_cursor(self, db_session: Session, alice):
        peers = [create_test_user(db_session) for _ in range(3)]
        ids = []
        for age, peer in zip([30, 20, 10], peers):
            conversation_id, _ = get_or_create_conversation(db_session, alice.id, peer.id)
            self._backdate(db_session, conversation_id, age)
            ids.append(conversation_id)

        first_page, page = list_conversations(db_session, alice.id, limit=2)
        assert [c.id for c in first_page] == [ids[2], ids[1]]
        assert page.next_cursor is not None

        second_page, page = list_conversations(db_session, alice.id, limit=2, cursor=page.next_cursor)
        assert [c.id for c in second_page] == [ids[0]]
        assert page.next_cursor is None

    def test_only_own_conversations(self, db_session: Session, alice, bob, carol):
        get_or_create_conversation(db_session, alice.id, bob.id)
        mine, _ = list_conversations(db_session, carol.id)
        assert mine == []

    def test_bad_cursor_rejected(self, db_session: Session, alice):
        with pytest.raises(ApiError) as exc_info:
            list_conversations(db_session, alice.id, cursor="not-a-cursor")
        assert exc_info.value.code == ApiErrorCode.E_INVALID_CURSOR

    def test_cursor_round_trip(self):
        now = utcnow()
        conversation_id = uuid4()
        assert decode_conversation_cursor(encode_conversation_cursor(now, conversation_id)) == (
            now,
            conversation_id,
        )


class TestCordSettings:
    def test_partial_update_changes_only_given_field(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True, timer=120
        )

        out = update_cord_settings(
            db_session, alice.id, conversation_id, CordSettingsUpdate(is_active=False)
        )

        assert out.is_active is False
        assert out.self_destruct_timer == 120

    def test_empty_patch_is_noop(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True, timer=120
        )
        out = update_cord_settings(db_session, bob.id, conversation_id, CordSettingsUpdate())
        assert out.is_active is True
        assert out.self_destruct_timer == 120

    def test_plain_conversation_has_no_cord(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(db_session, alice.id, bob.id)
        with pytest.raises(ApiError) as exc_info:
            update_cord_settings(
                db_session, alice.id, conversation_id, CordSettingsUpdate(is_active=True)
            )
        assert exc_info.value.code == ApiErrorCode.E_CORD_NOT_FOUND

    def test_timer_out_of_range(self, db_session: Session, alice, bob):
        conversation_id, _ = get_or_create_conversation(
            db_session, alice.id, bob.id, encrypted=True
        )
        with pytest.raises(ApiError) as exc_info:
            update_cord_settings(
                db_session,
                alice.id,
                conversation_id,
                CordSettingsUpdate(self_destruct_timer=10**9),
            )
        assert exc_info.value.code == ApiErrorCode.E_INVALID_TIMER


class TestResolveTimer:
    def test_default_when_absent(self):
        assert resolve_timer(None) == 60

    @pytest.mark.parametrize("timer", [0, -5, 7 * 24 * 3600 + 1])
    def test_out_of_range(self, timer):
        with pytest.raises(ApiError) as exc_info:
            resolve_timer(timer)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_TIMER
