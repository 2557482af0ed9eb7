"""Push channel: Server-Sent Events for the authenticated viewer.

Each connection subscribes to the viewer's fanout queue and receives
new_message and message_status_update events. A comment line is sent
every SSE_KEEPALIVE_S seconds while idle.
"""

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from cordline.api.deps import get_message_bus
from cordline.auth.middleware import Viewer, get_viewer
from cordline.config import get_settings
from cordline.errors import ApiError, ApiErrorCode
from cordline.services.fanout import MessageBus, format_sse

router = APIRouter(tags=["events"])


async def event_stream(
    request: Request, bus: MessageBus, viewer: Viewer, keepalive_s: float
) -> AsyncIterator[str]:
    with bus.subscribe(viewer.user_id) as subscription:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            item = await subscription.get(timeout=keepalive_s)
            if item is None:
                yield ": keepalive\n\n"
                continue
            yield format_sse(item.event, item.payload)


@router.get("/events")
async def stream_events(
    request: Request,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    bus: Annotated[MessageBus, Depends(get_message_bus)],
) -> StreamingResponse:
    """Open the viewer's event stream.

    Errors:
        E_FANOUT_UNAVAILABLE (503): Realtime fanout is disabled.
    """
    if not hasattr(bus, "subscribe"):
        raise ApiError(ApiErrorCode.E_FANOUT_UNAVAILABLE, "Realtime events are disabled")

    return StreamingResponse(
        event_stream(request, bus, viewer, get_settings().sse_keepalive_s),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )
