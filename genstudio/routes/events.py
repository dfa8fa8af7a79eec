"""
GenStudio Real-time Events (SSE)
Server-Sent Events for generation completions
"""
from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from typing import AsyncGenerator
import asyncio

from ..notifications import NotificationChannel
from ..responses import success

router = APIRouter(prefix="/api/events", tags=["events"])

KEEPALIVE_SECONDS = 30.0


def get_channel(request: Request) -> NotificationChannel:
    return request.app.state.channel


async def event_stream(request: Request, channel: NotificationChannel) -> AsyncGenerator:
    """Generator for SSE stream"""
    subscriber_id, queue = channel.subscribe()

    try:
        yield f"event: connected\ndata: {{\"subscriber_id\": \"{subscriber_id}\"}}\n\n"
        while True:
            if await request.is_disconnected():
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                yield event.to_sse()
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"

    finally:
        channel.unsubscribe(subscriber_id)


@router.get("/stream")
async def sse_stream(request: Request):
    """
    SSE endpoint for completion events.

    Example:
    ```
    const source = new EventSource('/api/events/stream');
    source.addEventListener('generation.completed', (event) => {
        const { data } = JSON.parse(event.data);
        console.log(data.id, data.type, data.prompt);
    });
    ```
    """
    return StreamingResponse(
        event_stream(request, get_channel(request)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )


@router.get("/recent")
async def recent_events(request: Request, limit: int = Query(20, ge=1, le=100)):
    """Most recent completion events, oldest first"""
    channel = get_channel(request)
    return success(
        [channel.as_dict(event) for event in channel.recent(limit)],
        meta={"subscribers": channel.subscriber_count},
    )
