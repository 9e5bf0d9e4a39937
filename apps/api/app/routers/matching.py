"""Queue and match endpoints, including the match notification socket."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ..db.session import get_match_service
from ..models.match import MatchRecord
from ..schemas import matching as schemas
from ..services.matching import MatchService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/queue", response_model=schemas.EnqueueResponse)
async def enqueue(
    payload: schemas.EnqueueRequest,
    service: MatchService = Depends(get_match_service),
) -> schemas.EnqueueResponse:
    """Join the waiting queue and try to pair right away."""

    record = await service.enqueue(payload.participant_id, payload.recent_peers)
    return schemas.EnqueueResponse(
        participant_id=payload.participant_id,
        matched=record is not None,
        match=schemas.MatchView.from_record(record) if record else None,
    )


@router.delete("/queue/{participant_id}", response_model=schemas.DequeueResponse)
async def dequeue(
    participant_id: str,
    service: MatchService = Depends(get_match_service),
) -> schemas.DequeueResponse:
    """Leave the waiting queue."""

    return schemas.DequeueResponse(removed=await service.dequeue(participant_id))


@router.get("/matches/{participant_id}", response_model=schemas.MatchView)
async def get_match(
    participant_id: str,
    service: MatchService = Depends(get_match_service),
) -> schemas.MatchView:
    """Return the participant's current match."""

    record = await service.current_match(participant_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No match for participant")
    return schemas.MatchView.from_record(record)


@router.delete("/matches/{participant_id}", response_model=schemas.ReleaseResponse)
async def release_match(
    participant_id: str,
    recent_peers: list[str] = Query(default=[]),
    service: MatchService = Depends(get_match_service),
) -> schemas.ReleaseResponse:
    """Delete the match record once the call has ended."""

    release = await service.release_match(participant_id, recent_peers)
    return schemas.ReleaseResponse(
        released=release.released,
        peer_id=release.peer_id,
        recent_peers=list(release.recent_peers),
    )


async def _receive_until_cancel(websocket: WebSocket) -> str:
    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("type") == "cancel":
                return "cancel"
    except WebSocketDisconnect:
        return "disconnect"


@router.websocket("/matches/{participant_id}/ws")
async def match_socket(
    websocket: WebSocket,
    participant_id: str,
    service: MatchService = Depends(get_match_service),
) -> None:
    """Push the participant's match once it is published.

    Cancelling or disconnecting before a match arrives removes the participant
    from the queue so nobody is left waiting on a closed client.
    """

    await websocket.accept()
    matched = asyncio.Event()

    async def notify(record: MatchRecord) -> None:
        await websocket.send_json(
            {"type": "matched", "match": schemas.MatchView.from_record(record).model_dump()}
        )
        matched.set()

    # The listener replays the current matches first, so nothing is missed here.
    await websocket.send_json({"type": "subscribed", "participant_id": participant_id})
    unsubscribe = await service.subscribe_to_match(participant_id, notify)

    receiver = asyncio.create_task(_receive_until_cancel(websocket))
    waiter = asyncio.create_task(matched.wait())
    try:
        await asyncio.wait({receiver, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (receiver, waiter):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await unsubscribe()

    if matched.is_set():
        await websocket.close(code=1000)
        return

    await service.dequeue(participant_id)
    logger.info("Participant %s stopped waiting before a match", participant_id)
    if receiver.result() == "cancel":
        await websocket.close(code=1000)
