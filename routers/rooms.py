from fastapi import APIRouter, HTTPException, Request

from logging_config import get_logger, short_address
from room_identity import is_room_address
from schemas.rooms import RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_address}", response_model=RoomDetailsResponse)
async def get_room_details(room_address: str, request: Request):
    """
    Get live details for a room on this process.

    Returns:
    - room_address: The hash-derived room address
    - online_users_count: Sessions currently bound to the room
    - history_size: Messages currently held in the room's history buffer
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {short_address(room_address)} from {client_host}")

    if not is_room_address(room_address):
        logger.warning(f"Room details failed: malformed address from {client_host}")
        raise HTTPException(status_code=400, detail="Room address must be a 64 character lowercase hex digest")

    context = request.app.state.chat_context
    if room_address not in context.history:
        logger.warning(f"Room details failed: Room {short_address(room_address)} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    online_users_count = context.sessions.count(room_address)
    history_size = context.history.size(room_address)
    logger.info(f"Room details retrieved for {short_address(room_address)}: {online_users_count} users online, {history_size} messages")

    return RoomDetailsResponse(
        room_address=room_address,
        online_users_count=online_users_count,
        history_size=history_size,
    )
