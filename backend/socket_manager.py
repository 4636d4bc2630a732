"""WebSocket transport for Smash or Pass rooms."""

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Dict, Optional
import json
import time
import asyncio
import logging

import config
from errors import RoomError, RoomNotFound
from messages import JoinIntent, parse_intent
from room import Room
from room_directory import RoomDirectory

logger = logging.getLogger(__name__)


class SocketManager:
    def __init__(self, directory: Optional[RoomDirectory] = None):
        self.directory = directory or RoomDirectory(room_factory=self._build_room)
        self.connections: Dict[str, Dict[str, WebSocket]] = {}  # room_code -> client_id -> ws
        self.msg_timestamps: Dict[tuple, list] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def _build_room(self, room_id: str, **options) -> Room:
        room = Room(room_id, **options)
        room.subscribe(self.fanout)
        return room

    def start_cleanup_loop(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_rooms())

    def stop_cleanup_loop(self):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_expired_rooms(self):
        while True:
            try:
                await asyncio.sleep(config.ROOM_CLEANUP_INTERVAL)
                await self.reap_expired_rooms()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")

    async def reap_expired_rooms(self) -> int:
        expired = self.directory.expired(config.ROOM_TTL_SECONDS)
        for room in expired:
            await room.close("expired")
            logger.info("Cleaned up expired room %s", room.room_id)
        return len(expired)

    # --- Fan-out ---

    async def fanout(self, room_code: str, event):
        await self.broadcast(room_code, event.model_dump(mode="json"))

    async def broadcast(self, room_code: str, message: dict):
        conns = self.connections.get(room_code, {})
        disconnected = []
        for client_id, ws in list(conns.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        for client_id in disconnected:
            conns.pop(client_id, None)

    async def send_to(self, room_code: str, client_id: str, message: dict):
        ws = self.connections.get(room_code, {}).get(client_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception:
                self.connections.get(room_code, {}).pop(client_id, None)

    async def reject(self, room_code: str, client_id: str, error: RoomError):
        await self.send_to(room_code, client_id, {
            "type": "ERROR",
            "code": error.code,
            "message": error.message,
        })

    # --- Connection lifecycle ---

    async def connect(self, websocket: WebSocket, room_code: str, client_id: str):
        await websocket.accept()
        conns = self.connections.setdefault(room_code, {})
        if client_id in conns:
            await websocket.send_json({
                "type": "ERROR",
                "code": "duplicate_player",
                "message": "This connection id is already in the room",
            })
            await websocket.close()
            return

        conns[client_id] = websocket
        await websocket.send_json({"type": "CONNECTED", "room_code": room_code, "client_id": client_id})

        try:
            while True:
                data = await websocket.receive_text()

                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "code": "invalid_message", "message": "Message too large"})
                    continue

                now = time.time()
                timestamps = self.msg_timestamps.setdefault((room_code, client_id), [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "code": "rate_limited", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    intent = parse_intent(json.loads(data))
                except (json.JSONDecodeError, ValidationError) as exc:
                    await websocket.send_json({
                        "type": "ERROR",
                        "code": "invalid_message",
                        "message": _describe_invalid(exc),
                    })
                    continue

                await self.handle_intent(room_code, client_id, intent)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected from room %s", client_id, room_code)
        except Exception:
            logger.exception("WebSocket error for client %s in room %s", client_id, room_code)
        finally:
            await self._drop_connection(room_code, client_id, websocket)

    async def _drop_connection(self, room_code: str, client_id: str, websocket: WebSocket):
        conns = self.connections.get(room_code)
        if conns is not None and conns.get(client_id) is websocket:
            del conns[client_id]
            if not conns:
                self.connections.pop(room_code, None)
        self.msg_timestamps.pop((room_code, client_id), None)

        room = self.directory.find(room_code)
        if room is not None:
            await room.disconnect(client_id)

    async def handle_intent(self, room_code: str, client_id: str, intent):
        try:
            if isinstance(intent, JoinIntent):
                await self._join(room_code, client_id, intent)
            else:
                room = self.directory.get(room_code)
                await room.dispatch(client_id, intent)
        except RoomError as exc:
            logger.debug("Rejected %s from %s in room %s: %s",
                         type(intent).__name__, client_id, room_code, exc)
            await self.reject(room_code, client_id, exc)

    async def _join(self, room_code: str, client_id: str, intent: JoinIntent):
        # The room can retire while this join waits on its lock; retry once on a fresh one.
        for _ in range(2):
            room = self.directory.get_or_create(room_code)
            try:
                await room.dispatch(client_id, intent)
                return
            except RoomNotFound:
                continue
        raise RoomNotFound(f"Room {room_code} closed")


def _describe_invalid(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if errors:
            msg = errors[0].get("msg", "")
            return msg.removeprefix("Value error, ") or "Invalid message format"
    return "Invalid message format"


socket_manager = SocketManager()
