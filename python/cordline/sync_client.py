"""Reference client for keeping a local message timeline in sync.

Polling the message list is the source of truth; fanout events are only
hints. A timeline that receives every event converges to the same state
as one that only polls, and duplicates or out-of-order deliveries are
harmless:
- merge is idempotent by message id
- order is (created_at, id), never arrival order
- a message's status never moves backwards locally
- messages past delete_at are dropped
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx

from cordline.db.models import DeliveryStatus, utcnow
from cordline.logging import get_logger
from cordline.schemas.conversation import MessageOut
from cordline.services.fanout import NEW_MESSAGE_EVENT, STATUS_UPDATE_EVENT

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


def _rank(status: str) -> int:
    return DeliveryStatus(status).rank


class SyncClientError(Exception):
    """An API call made by the sync client failed."""

    def __init__(self, status_code: int, code: str | None, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class MessageTimeline:
    """Local, order-independent view of one conversation's messages."""

    def __init__(self, conversation_id: UUID):
        self.conversation_id = conversation_id
        self.stale = False
        self._messages: dict[UUID, MessageOut] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: UUID) -> bool:
        return message_id in self._messages

    def get(self, message_id: UUID) -> MessageOut | None:
        return self._messages.get(message_id)

    @property
    def messages(self) -> list[MessageOut]:
        """Messages sorted by (created_at, id)."""
        return sorted(self._messages.values(), key=lambda m: (m.created_at, str(m.id)))

    def merge(self, incoming: Iterable[MessageOut]) -> int:
        """Merge server copies into the timeline.

        Returns:
            Number of messages added or changed.
        """
        changed = 0
        for message in incoming:
            if message.conversation_id != self.conversation_id:
                continue
            current = self._messages.get(message.id)
            if current is None:
                self._messages[message.id] = message
                changed += 1
                continue

            updates: dict[str, Any] = {}
            if _rank(message.status) > _rank(current.status):
                updates["status"] = message.status
            if message.delete_at is not None and current.delete_at is None:
                updates["delete_at"] = message.delete_at
            if updates:
                self._messages[message.id] = current.model_copy(update=updates)
                changed += 1
        return changed

    def apply_status(self, message_id: UUID, status: str) -> bool:
        """Raise a known message's status; unknown ids mark the timeline stale."""
        current = self._messages.get(message_id)
        if current is None:
            self.stale = True
            return False
        if _rank(status) <= _rank(current.status):
            return False
        self._messages[message_id] = current.model_copy(update={"status": status})
        return True

    def prune_expired(self, now: datetime | None = None) -> int:
        """Drop messages whose self-destruct deadline has passed."""
        now = now or utcnow()
        expired = [
            message_id
            for message_id, message in self._messages.items()
            if message.delete_at is not None and message.delete_at <= now
        ]
        for message_id in expired:
            del self._messages[message_id]
        return len(expired)


class SyncClient:
    """Keeps a MessageTimeline in sync with the API over HTTP.

    Args:
        base_url: API base URL.
        token: Bearer token.
        conversation_id: The conversation to follow.
        http_client: Optional preconfigured httpx.Client (tests pass a MockTransport).
        page_size: Page size for list requests.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        conversation_id: UUID,
        http_client: httpx.Client | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.conversation_id = conversation_id
        self.page_size = page_size
        self.timeline = MessageTimeline(conversation_id)
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(base_url=base_url, timeout=10.0)
        self._client.headers["Authorization"] = f"Bearer {token}"

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SyncClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        response = self._client.request(method, path, **kwargs)
        if response.is_error:
            code = None
            message = response.text
            try:
                error = response.json().get("error", {})
                code = error.get("code")
                message = error.get("message", message)
            except ValueError:
                pass
            raise SyncClientError(response.status_code, code, message)
        return response.json()

    @property
    def _messages_path(self) -> str:
        return f"/conversations/{self.conversation_id}/messages"

    def poll(self) -> int:
        """Fetch the newest page and merge it; clears the stale flag.

        Returns:
            Number of messages added or changed.
        """
        body = self._request("GET", self._messages_path, params={"limit": self.page_size})
        changed = self.timeline.merge(MessageOut.model_validate(m) for m in body["data"])
        self.timeline.prune_expired()
        self.timeline.stale = False
        return changed

    def backfill(self) -> int:
        """Walk older pages until the beginning of the conversation."""
        changed = 0
        before = None
        while True:
            params: dict[str, Any] = {"limit": self.page_size}
            if before is not None:
                params["before"] = before
            body = self._request("GET", self._messages_path, params=params)
            changed += self.timeline.merge(MessageOut.model_validate(m) for m in body["data"])
            before = body["page"]["next_cursor"]
            if before is None:
                break
        self.timeline.prune_expired()
        return changed

    def send(
        self,
        text: str | None = None,
        image_url: str | None = None,
        video_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        payload: dict[str, Any] = {"text": text, "metadata": metadata}
        if image_url or video_url:
            payload["media"] = {"image_url": image_url, "video_url": video_url}
        body = self._request("POST", self._messages_path, json=payload)
        message = MessageOut.model_validate(body["data"])
        self.timeline.merge([message])
        return message

    def report_status(self, message_id: UUID, status: str) -> bool:
        body = self._request(
            "POST", f"{self._messages_path}/{message_id}/status", json={"status": status}
        )
        return bool(body["data"]["changed"])

    def mark_read(self) -> None:
        self._request("POST", f"/conversations/{self.conversation_id}/read")

    def handle_event(self, event: str, payload: dict[str, Any]) -> None:
        """Apply a fanout hint. Anything not understood just marks the timeline stale."""
        try:
            if event == NEW_MESSAGE_EVENT:
                self.timeline.merge([MessageOut.model_validate(payload)])
                return
            if event == STATUS_UPDATE_EVENT:
                if UUID(payload["conversation_id"]) == self.conversation_id:
                    self.timeline.apply_status(UUID(payload["message_id"]), payload["status"])
                return
        except (KeyError, ValueError) as e:
            logger.debug("sync_event_ignored", fanout_event=event, error=str(e))
        self.timeline.stale = True
