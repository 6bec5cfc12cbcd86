"""Queue inspection API router."""

from fastapi import APIRouter, Depends, HTTPException, Query

from wabridge.api.dependencies import get_runtime
from wabridge.api.models import ChannelStats, DeadLetterResponse, QueueStatsResponse, ReplayResponse
from wabridge.infra.auth import verify_admin_key
from wabridge.infra.errors import QueueError
from wabridge.infra.queue import dead_letter_channel, queue_channel
from wabridge.models.queue import Direction
from wabridge.services.runtime import Runtime

router = APIRouter(dependencies=[Depends(verify_admin_key)])


def _direction(channel: str) -> Direction:
    try:
        return Direction(channel)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown channel {channel}")


@router.get("/queues", tags=["Queues"], response_model=QueueStatsResponse)
async def queue_stats(runtime: Runtime = Depends(get_runtime)):
    """Pending and dead-lettered message counts per channel."""
    channels = {}
    try:
        for direction in Direction:
            channels[direction.value] = ChannelStats(
                pending=await runtime.queue.length(queue_channel(direction)),
                dead_letter=await runtime.queue.length(dead_letter_channel(direction)),
            )
    except QueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return QueueStatsResponse(channels=channels)


@router.get("/queues/{channel}/dead-letter", tags=["Queues"], response_model=DeadLetterResponse)
async def list_dead_letters(
    channel: str,
    limit: int = Query(50, ge=1, le=500),
    runtime: Runtime = Depends(get_runtime),
):
    """Oldest dead-lettered messages of a channel. Messages stay in place."""
    direction = _direction(channel)
    name = dead_letter_channel(direction)
    try:
        messages = await runtime.queue.peek(name, limit)
    except QueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    items = [m.model_dump(mode="json", by_alias=True) for m in messages]
    return DeadLetterResponse(channel=name, items=items, count=len(items))


@router.post("/queues/{channel}/dead-letter/replay", tags=["Queues"], response_model=ReplayResponse)
async def replay_dead_letters(
    channel: str,
    limit: int = Query(100, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
):
    """Move dead-lettered messages back to the live channel with a fresh retry budget."""
    direction = _direction(channel)
    try:
        moved = await runtime.queue.replay_dead_letters(direction, limit)
    except QueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return ReplayResponse(channel=queue_channel(direction), replayed=moved)
