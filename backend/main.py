"""SmashPass — Smash or Pass party game — Backend Server"""

from fastapi import FastAPI, WebSocket, HTTPException, Request, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from typing import Dict, Optional
from collections import defaultdict
import time
from contextlib import asynccontextmanager
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from errors import RoomLimitReached
from media_store import MediaRejected, media_store
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting SmashPass backend")
    socket_manager.start_cleanup_loop()
    yield
    socket_manager.stop_cleanup_loop()
    logger.info("Shutting down SmashPass backend")


app = FastAPI(title="SmashPass API", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


@app.get("/system/info")
async def get_system_info():
    return {"ip": get_local_ip()}


# Rate limiter
_rate_limit_store: Dict[str, list] = defaultdict(list)


def _check_rate_limit(client_ip: str) -> bool:
    now = time.time()
    window = config.RATE_LIMIT_WINDOW
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if now - t < window
    ]
    if len(_rate_limit_store[client_ip]) >= config.RATE_LIMIT_MAX_REQUESTS:
        return False
    _rate_limit_store[client_ip].append(now)
    return True


def _client_ip(req: Request) -> str:
    return req.client.host if req.client else "unknown"


# --- Request Models ---

class RoomCreateRequest(BaseModel):
    manual_advance: Optional[bool] = None


# --- Endpoints ---

@app.post("/room/create")
async def create_room(req: Request, request: Optional[RoomCreateRequest] = None):
    if not _check_rate_limit(_client_ip(req)):
        raise HTTPException(status_code=429, detail="Too many requests. Please wait.")

    options = {}
    if request is not None and request.manual_advance is not None:
        options["manual_advance"] = request.manual_advance

    try:
        room = socket_manager.directory.create(**options)
    except RoomLimitReached as exc:
        raise HTTPException(status_code=429, detail=exc.message)
    return {"room_code": room.room_id, "manual_advance": room.manual_advance}


@app.get("/room/{room_code}")
async def get_room(room_code: str):
    room = socket_manager.directory.find(room_code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.snapshot().model_dump(mode="json")


@app.post("/upload")
async def upload_image(req: Request, image: UploadFile = File(...)):
    if not _check_rate_limit(_client_ip(req)):
        raise HTTPException(status_code=429, detail="Too many requests. Please wait.")

    data = await image.read(config.MAX_UPLOAD_BYTES + 1)
    try:
        image_path = media_store.save(image.filename or "", image.content_type or "", data)
    except MediaRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return {
        "success": True,
        "image_path": image_path,
        "original_name": image.filename,
    }


@app.websocket("/ws/{room_code}/{client_id}")
async def websocket_endpoint(websocket: WebSocket, room_code: str, client_id: str):
    await socket_manager.connect(websocket, room_code, client_id)


app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=media_store.directory), name="uploads")


# --- CORS ---

if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        f"http://{local_ip}:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "SmashPass API is running"}


@app.get("/health")
async def health():
    return {"status": "ok", "game": "SmashPass", "rooms": len(socket_manager.directory)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
