from fastapi import FastAPI, WebSocket, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

import config
config.setup_logging()

from document_host import DocumentHost
from errors import RoomCodeTaken, RoomNotFound, TooManyRooms
from models import RoomCreateRequest
from peer_broker import PeerBroker
from question_bank import default_bank
from room_hub import RoomHub
from room_store import RoomStore

logger = logging.getLogger(__name__)

room_store = RoomStore()
room_hub = RoomHub(room_store)
document_host = DocumentHost()
peer_broker = PeerBroker()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting tug-of-war quiz server on port %d", config.PORT)
    room_store.start_cleanup_loop()
    document_host.start_cleanup_loop()
    yield
    logger.info("Shutting down tug-of-war quiz server")


app = FastAPI(title="Tug-of-War Quiz Backend", lifespan=lifespan)


@app.post("/room/create")
async def create_room(request: RoomCreateRequest):
    try:
        room = await room_store.create_room(request.name, request.player_id, room_id=request.room_id)
    except TooManyRooms as e:
        raise HTTPException(status_code=429, detail=e.message)
    except RoomCodeTaken as e:
        raise HTTPException(status_code=409, detail=e.message)
    player = room.players[request.player_id]
    return {"room_id": room.room_id, "player": player}


@app.get("/room/{room_id}")
async def get_room(room_id: str):
    try:
        room = room_store.get(room_id.upper())
    except RoomNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return room.snapshot()


@app.get("/questions")
async def get_questions():
    return default_bank().to_dict()


@app.websocket("/ws/{room_id}/{client_id}")
async def relay_endpoint(websocket: WebSocket, room_id: str, client_id: str):
    await room_hub.connect(websocket, room_id.upper(), client_id)


@app.websocket("/doc/{doc_id}/{client_id}")
async def document_endpoint(websocket: WebSocket, doc_id: str, client_id: str):
    await document_host.connect(websocket, doc_id.upper(), client_id)


@app.websocket("/peer/{peer_id}")
async def peer_endpoint(websocket: WebSocket, peer_id: str):
    await peer_broker.connect(websocket, peer_id)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    room_hub.allowed_origins = origins
    document_host.allowed_origins = origins
    peer_broker.allowed_origins = origins
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Tug-of-War Quiz API is running"}


@app.get("/health")
async def health():
    return {"status": "healthy", "rooms": len(room_store.rooms)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
