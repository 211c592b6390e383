import logging

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from homeservices.commonUtils.exceptions import MarketplaceError
from homeservices.config.container import ServiceContainer
from homeservices.crud.userService import user_from_token
from homeservices.dependencies.serviceDependencies import actor_for
from homeservices.realtime.connectionRegistry import booking_room
from homeservices.schemas.bookingSchema import Actor

logger = logging.getLogger(__name__)
router = APIRouter()


async def _join_booking(websocket: WebSocket, services: ServiceContainer, actor: Actor, raw_id) -> None:
    try:
        booking = await services.bookings.get(PydanticObjectId(raw_id), actor)
    except (InvalidId, TypeError, MarketplaceError) as e:
        await websocket.send_json({"event": "error", "data": {"message": f"Cannot join booking {raw_id}: {e}"}})
        return
    await services.realtime.join(booking_room(booking.id), websocket)
    await websocket.send_json({"event": "joined_booking", "data": {"booking_id": str(booking.id)}})


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: str):
    """
    Live booking updates. Authenticates with the JWT passed as ``?token=``,
    joins the caller's user room, and accepts ``join_booking`` /
    ``leave_booking`` / ``ping`` messages.
    """
    user = await user_from_token(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    services: ServiceContainer = websocket.app.state.services
    registry = services.realtime
    actor = actor_for(user)

    await websocket.accept()
    await registry.connect(user.id, websocket)
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "join_booking":
                await _join_booking(websocket, services, actor, message.get("booking_id"))
            elif kind == "leave_booking":
                await registry.leave(booking_room(message.get("booking_id")), websocket)
            elif kind == "ping":
                await websocket.send_json({"event": "pong", "data": {}})
            else:
                await websocket.send_json({"event": "error", "data": {"message": "Unknown message type"}})
    except WebSocketDisconnect:
        pass
    finally:
        await registry.disconnect(user.id, websocket)
