from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from pydantic import ValidationError
from routers.rooms import rooms_router
from backend import create_broadcaster
from chat import ChatContext, ChatService
from history import RoomMessageStore
from schemas.chat import ErrorEvent, Frame, parse_join_request
from schemas.rooms import HealthResponse
from constants import BROADCAST_BACKEND, CORS_ORIGINS, HISTORY_LIMIT, LOG_FILE, LOG_LEVEL
import uuid
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Registries are owned here and handed to the service, never module globals
    context = ChatContext(
        history=RoomMessageStore(limit=HISTORY_LIMIT),
        broadcaster=create_broadcaster(BROADCAST_BACKEND),
    )
    app.state.chat_context = context
    app.state.chat_service = ChatService(context)
    logger.info(f"Chat engine ready (broadcast backend: {BROADCAST_BACKEND}, history limit: {HISTORY_LIMIT})")
    try:
        yield
    finally:
        await context.broadcaster.close()
        logger.info("Chat engine stopped")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


async def send_error(service: ChatService, connection_id: str, message: str):
    await service.broadcaster.send_to(connection_id, "error", ErrorEvent(message=message).model_dump())


async def dispatch(service: ChatService, connection_id: str, text: str):
    """Route one inbound frame to the chat service."""
    try:
        frame = Frame.model_validate_json(text)
    except ValidationError:
        logger.warning(f"Malformed frame from connection {connection_id}")
        await send_error(service, connection_id, "Frames must be JSON objects with a string 'event'")
        return

    if frame.event == "joinRoom":
        try:
            request = parse_join_request(frame.data)
        except ValueError as e:
            logger.warning(f"Rejected joinRoom from connection {connection_id}: {e}")
            await send_error(service, connection_id, "Invalid joinRoom payload")
            return
        await service.join(connection_id, request.room_address, request.desired_name)
    elif frame.event == "chatMessage":
        await service.chat_message(connection_id, frame.data)
    elif frame.event == "typing":
        await service.typing(connection_id)
    elif frame.event == "stopTyping":
        await service.stop_typing(connection_id)
    else:
        logger.debug(f"Ignoring unknown event {frame.event!r} from connection {connection_id}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Bidirectional event channel. Frames are {"event": ..., "data": ...} JSON text."""
    service: ChatService = websocket.app.state.chat_service
    connection_id = str(uuid.uuid4())

    await websocket.accept()
    service.broadcaster.register(connection_id, websocket)
    logger.info(f"WebSocket connection accepted: {connection_id}")

    message_count = 0
    try:
        while True:
            try:
                text = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1
            logger.debug(f"Received frame #{message_count} from connection {connection_id}")
            await dispatch(service, connection_id, text)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await close_connection(service, connection_id)


async def close_connection(service: ChatService, connection_id: str):
    """Cleanup on disconnect. The socket is always unregistered, even if leave fails."""
    try:
        await service.leave(connection_id)
    except Exception as e:
        logger.error(f"Error leaving room for connection {connection_id}: {e}", exc_info=True)
    finally:
        await service.broadcaster.unregister(connection_id)
        logger.debug(f"Removed connection {connection_id} from local tracking")
