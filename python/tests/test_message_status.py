"""Tests for per-participant delivery status and the message summary rollup."""

from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from cordline.db.models import DeliveryStatus, Message
from cordline.errors import ApiError, ApiErrorCode, ForbiddenError, NotFoundError
from cordline.services.conversations import get_or_create_group_conversation
from cordline.services.fanout import STATUS_UPDATE_EVENT
from cordline.services.message_status import list_statuses, parse_reportable_status, update_status
from cordline.services.messages import send_message
from tests.factories import create_test_conversation
from tests.support.buses import RecordingMessageBus


def _summary(db_session: Session, message_id) -> str:
    db_session.expire_all()
    return db_session.get(Message, message_id).status


def _statuses(db_session: Session, viewer_id, conversation_id, message_id) -> dict:
    return {
        row.user_id: row.status
        for row in list_statuses(db_session, viewer_id, conversation_id, message_id)
    }


class TestParseReportableStatus:
    @pytest.mark.parametrize("status", ["delivered", "read"])
    def test_reportable(self, status):
        assert parse_reportable_status(status) == DeliveryStatus(status)

    @pytest.mark.parametrize("status", ["sent", "seen", "", "READ"])
    def test_not_reportable(self, status):
        with pytest.raises(ApiError) as exc_info:
            parse_reportable_status(status)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_STATUS


class TestDirectConversationStatus:
    @pytest.fixture
    def sent(self, db_session: Session, alice, bob, bus: RecordingMessageBus):
        conversation_id = create_test_conversation(db_session, alice.id, bob.id)
        message = send_message(db_session, alice.id, conversation_id, text="hi", bus=bus)
        bus.clear()
        return conversation_id, message.id

    def test_delivered_then_read(self, db_session: Session, alice, bob, bus, sent):
        conversation_id, message_id = sent

        assert update_status(db_session, bob.id, message_id, "delivered", bus) is True
        assert _summary(db_session, message_id) == "delivered"

        assert update_status(db_session, bob.id, message_id, "read", bus) is True
        assert _summary(db_session, message_id) == "read"
        assert _statuses(db_session, alice.id, conversation_id, message_id) == {
            alice.id: "read",
            bob.id: "read",
        }

    def test_read_directly_skips_delivered(self, db_session: Session, bob, bus, sent):
        _, message_id = sent
        assert update_status(db_session, bob.id, message_id, "read", bus) is True
        assert _summary(db_session, message_id) == "read"

    def test_repeat_and_regression_are_noops(self, db_session: Session, alice, bob, bus, sent):
        conversation_id, message_id = sent
        update_status(db_session, bob.id, message_id, "read", bus)
        bus.clear()

        assert update_status(db_session, bob.id, message_id, "read", bus) is False
        assert update_status(db_session, bob.id, message_id, "delivered", bus) is False

        assert _statuses(db_session, bob.id, conversation_id, message_id)[bob.id] == "read"
        assert _summary(db_session, message_id) == "read"
        assert bus.events == []

    def test_sender_is_notified_on_each_advance(self, db_session: Session, alice, bob, bus, sent):
        _, message_id = sent

        update_status(db_session, bob.id, message_id, "delivered", bus)
        update_status(db_session, bob.id, message_id, "read", bus)

        events = bus.of_type(STATUS_UPDATE_EVENT)
        assert [e.user_id for e in events] == [alice.id, alice.id]
        assert [e.payload["status"] for e in events] == ["read"]
        assert events[0].payload["message_id"] == str(message_id)
        assert bus.for_user(bob.id) == []

    def test_conversation_scope_enforced(self, db_session: Session, alice, bob, carol, bus, sent):
        _, message_id = sent
        other_conversation = create_test_conversation(db_session, bob.id, carol.id)

        with pytest.raises(NotFoundError) as exc_info:
            update_status(
                db_session, bob.id, message_id, "read", bus, conversation_id=other_conversation
            )
        assert exc_info.value.code == ApiErrorCode.E_MESSAGE_NOT_FOUND

    def test_unknown_message(self, db_session: Session, bob, bus):
        with pytest.raises(NotFoundError):
            update_status(db_session, bob.id, uuid4(), "read", bus)

    def test_non_participant_forbidden(self, db_session: Session, carol, bus, sent):
        _, message_id = sent
        with pytest.raises(ForbiddenError):
            update_status(db_session, carol.id, message_id, "delivered", bus)

    def test_invalid_status_rejected_before_lookup(self, db_session: Session, bob, bus, sent):
        _, message_id = sent
        with pytest.raises(ApiError) as exc_info:
            update_status(db_session, bob.id, message_id, "sent", bus)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_STATUS


class TestGroupConversationStatus:
    @pytest.fixture
    def sent(self, db_session: Session, alice, bob, carol, bus: RecordingMessageBus):
        conversation_id, _ = get_or_create_group_conversation(
            db_session, alice.id, [bob.id, carol.id]
        )
        message = send_message(db_session, alice.id, conversation_id, text="hi", bus=bus)
        bus.clear()
        return conversation_id, message.id

    def test_summary_waits_for_every_recipient(
        self, db_session: Session, alice, bob, carol, bus, sent
    ):
        _, message_id = sent

        update_status(db_session, bob.id, message_id, "read", bus)
        assert _summary(db_session, message_id) == "sent"
        assert bus.events == []

        update_status(db_session, carol.id, message_id, "delivered", bus)
        assert _summary(db_session, message_id) == "sent"
        assert bus.events == []

        update_status(db_session, carol.id, message_id, "read", bus)
        assert _summary(db_session, message_id) == "read"

        assert [e.payload["status"] for e in bus.for_user(alice.id)] == ["read"]

    def test_summary_delivered_once_every_recipient_delivered(
        self, db_session: Session, alice, bob, carol, bus, sent
    ):
        _, message_id = sent

        update_status(db_session, bob.id, message_id, "delivered", bus)
        update_status(db_session, carol.id, message_id, "delivered", bus)

        assert _summary(db_session, message_id) == "delivered"
        assert [e.payload["status"] for e in bus.for_user(alice.id)] == ["delivered"]

    def test_list_statuses_per_participant(self, db_session: Session, alice, bob, carol, bus, sent):
        conversation_id, message_id = sent
        update_status(db_session, carol.id, message_id, "delivered", bus)

        assert _statuses(db_session, bob.id, conversation_id, message_id) == {
            alice.id: "read",
            bob.id: "sent",
            carol.id: "delivered",
        }
