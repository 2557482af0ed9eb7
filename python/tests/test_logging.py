"""Tests for structured logging context.

Covers:
- Binding and clearing correlation fields
- The structlog processor that stamps bound fields onto entries
- Task context replacing request context
"""

from uuid import uuid4

import pytest

from cordline.logging import (
    add_log_context,
    bind_log_context,
    clear_log_context,
    configure_task_logging,
    get_request_id,
)


@pytest.fixture(autouse=True)
def fresh_context():
    clear_log_context()
    yield
    clear_log_context()


class TestLogContext:
    def test_bound_fields_are_added_to_entries(self):
        bind_log_context(request_id="req-1", path="/conversations", method="POST")

        event = add_log_context(None, "info", {"event": "message_sent"})

        assert event == {
            "event": "message_sent",
            "request_id": "req-1",
            "path": "/conversations",
            "method": "POST",
        }

    def test_explicit_fields_win(self):
        bind_log_context(request_id="req-1")

        event = add_log_context(None, "info", {"event": "x", "request_id": "explicit"})

        assert event["request_id"] == "explicit"

    def test_none_values_are_skipped(self):
        bind_log_context(request_id="req-1", user_id=None)

        assert "user_id" not in add_log_context(None, "info", {"event": "x"})

    def test_later_binds_merge(self):
        user_id = uuid4()
        bind_log_context(request_id="req-1")
        bind_log_context(user_id=user_id)

        event = add_log_context(None, "info", {"event": "x"})

        assert event["request_id"] == "req-1"
        assert event["user_id"] == str(user_id)

    def test_clear(self):
        bind_log_context(request_id="req-1")
        clear_log_context()

        assert get_request_id() is None
        assert add_log_context(None, "info", {"event": "x"}) == {"event": "x"}


class TestTaskLogging:
    def test_task_context_replaces_request_context(self):
        bind_log_context(request_id="req-1", path="/conversations")

        configure_task_logging(task_name="reap_expired_messages", task_id="t-1")

        event = add_log_context(None, "info", {"event": "x"})
        assert event == {"event": "x", "task_name": "reap_expired_messages", "task_id": "t-1"}
        assert get_request_id() is None

    def test_task_keeps_enqueuing_request_id(self):
        configure_task_logging(request_id="req-9", task_name="reap_expired_messages")
        assert get_request_id() == "req-9"
