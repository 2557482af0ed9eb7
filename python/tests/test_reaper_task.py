"""Tests for the self-destruct reaper Celery task and its beat schedule."""

import importlib
from datetime import timedelta

from sqlalchemy.orm import Session

from cordline.celery import celery_app
from cordline.db.models import Message, utcnow
from cordline.services.messages import send_message
from cordline.tasks.reap_expired_messages import reap_expired_messages
from tests.factories import create_test_conversation, set_message_fields

# The package re-exports the task under the module's name.
reaper_module = importlib.import_module("cordline.tasks.reap_expired_messages")


class TestBeatSchedule:
    def test_reaper_is_scheduled(self):
        entry = celery_app.conf.beat_schedule["reap-expired-messages"]
        assert entry["task"] == "reap_expired_messages"
        assert entry["schedule"] == 30.0

    def test_task_is_registered(self):
        assert "reap_expired_messages" in celery_app.tasks


class TestReapTask:
    def test_task_deletes_expired_messages(self, db_session: Session, alice, bob, bus, monkeypatch):
        conversation_id = create_test_conversation(db_session, alice.id, bob.id, encrypted=True)
        message = send_message(db_session, alice.id, conversation_id, text="x", bus=bus)
        set_message_fields(db_session, message.id, delete_at=utcnow() - timedelta(seconds=5))
        monkeypatch.setattr(reaper_module, "get_session_factory", lambda: lambda: db_session)

        result = reap_expired_messages.apply(kwargs={"request_id": "reaper-test"}).get()

        assert result == {"deleted": 1}
        assert db_session.get(Message, message.id) is None

    def test_nothing_to_reap(self, db_session: Session, monkeypatch):
        monkeypatch.setattr(reaper_module, "get_session_factory", lambda: lambda: db_session)
        assert reap_expired_messages.apply().get() == {"deleted": 0}
