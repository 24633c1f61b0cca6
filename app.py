from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import room_store
from gateway import CommandGateway
from room_manager import RoomManager
from schemas.events import ErrorCode, error_message
import uuid
import json
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

# Single coordinator per process: one store, one manager, one gateway.
# NOTE: broadcast groups live in this process only, so all sockets of a room
# must be served by the same instance.
room_manager = RoomManager(room_store)
gateway = CommandGateway(room_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down, waiting for pending room tasks")
    await app.state.gateway.drain()
    await app.state.room_manager.store.close()


app = FastAPI(lifespan=lifespan)
app.state.room_manager = room_manager
app.state.gateway = gateway

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Command channel for one client connection.

    Frames are JSON objects with a ``type`` field (see schemas/events.py).
    Commands from this socket are handled one at a time, in arrival order.
    """
    gateway: CommandGateway = websocket.app.state.gateway
    await websocket.accept()
    connection_id = uuid.uuid4().hex
    session = await gateway.connect(connection_id, websocket)

    try:
        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id}")

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Non-JSON frame from connection {connection_id}")
                await websocket.send_json(error_message("Frames must be JSON objects", ErrorCode.INVALID_PAYLOAD))
                continue

            await gateway.handle(session, message)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await gateway.disconnect(session)
