"""Server-Sent Events for assistant generations."""

from collections.abc import AsyncGenerator

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from branchchat.core.logging import get_logger
from branchchat.core.stream_broker import get_stream_broker

logger = get_logger(__name__)

router = APIRouter()


@router.get("/streams/{stream_id}/events")
async def stream_events(stream_id: str) -> StreamingResponse:
    """
    Subscribe to a generation's events.

    Emits ``start``, ``delta``, ``reasoning_summary``, ``tool_progress`` and finally
    ``complete`` or ``error``. A superseded stream closes without events.

    Raises:
        HTTPException 404: Unknown (or expired) stream id
    """
    broker = get_stream_broker()
    if broker.get_generation(stream_id) is None:
        raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")

    async def generate() -> AsyncGenerator[str, None]:
        # Disconnecting only ends this subscription; the generation keeps running
        async for event in broker.subscribe(stream_id):
            yield event.to_sse()
        logger.debug(f"Subscriber detached from stream {stream_id}")

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.delete("/streams/{stream_id}")
async def cancel_stream(stream_id: str) -> dict[str, bool]:
    """
    Stop a running generation. Buffered content is kept on the assistant message.

    Returns:
        {cancelled}: False when the generation had already finished

    Raises:
        HTTPException 404: Unknown (or expired) stream id
    """
    broker = get_stream_broker()
    if broker.get_generation(stream_id) is None:
        raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
    return {"cancelled": broker.cancel(stream_id)}
