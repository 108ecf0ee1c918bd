# chatprojects/orchestration/relay.py
from __future__ import annotations

import json
from contextlib import aclosing
from typing import AsyncIterator

from fastapi.responses import StreamingResponse

from chatprojects.providers.events import DoneEvent, StreamEvent

DONE_FRAME = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, private",
    "Pragma": "no-cache",
    "Connection": "keep-alive",
    "Content-Encoding": "identity",
    "X-Accel-Buffering": "no",
}


def sse_frame(event: StreamEvent) -> bytes:
    if isinstance(event, DoneEvent):
        return DONE_FRAME
    return f"data: {json.dumps(event.model_dump(), ensure_ascii=False)}\n\n".encode("utf-8")


async def relay(events: AsyncIterator[StreamEvent], padding: int = 0) -> AsyncIterator[bytes]:
    """One frame per event; each yield becomes its own flushed body chunk."""
    if padding > 0:
        yield f":{' ' * padding}\n\n".encode("utf-8")
    async with aclosing(events) as stream:
        async for event in stream:
            yield sse_frame(event)


def sse_response(events: AsyncIterator[StreamEvent], padding: int = 0) -> StreamingResponse:
    return StreamingResponse(
        relay(events, padding),
        media_type="text/event-stream; charset=utf-8",
        headers=SSE_HEADERS,
    )
