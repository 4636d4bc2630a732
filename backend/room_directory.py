"""Process-wide registry of live rooms."""

import logging
import random
import string
import threading
from typing import Callable, Dict, List, Optional

import config
from errors import RoomLimitReached, RoomNotFound
from room import Room

logger = logging.getLogger(__name__)


def generate_room_code(length: int = config.ROOM_CODE_LENGTH) -> str:
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))


class RoomDirectory:
    """Maps room ids to rooms.

    Rooms are created on demand (``create`` or the first join through
    ``get_or_create``) and forgotten when they retire, which happens when the
    last player leaves or the room sits idle past its TTL.
    """

    def __init__(self, room_factory: Callable[..., Room] = Room,
                 max_rooms: Optional[int] = None):
        self._room_factory = room_factory
        self._max_rooms = config.MAX_ROOMS if max_rooms is None else max_rooms
        self._rooms: Dict[str, Room] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        with self._lock:
            return room_id in self._rooms

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._rooms)

    def find(self, room_id: str) -> Optional[Room]:
        with self._lock:
            return self._rooms.get(room_id)

    def get(self, room_id: str) -> Room:
        room = self.find(room_id)
        if room is None:
            raise RoomNotFound(f"Room {room_id} not found")
        return room

    def create(self, room_id: Optional[str] = None, **options) -> Room:
        """Register a new room, generating an unused code when none is given."""
        with self._lock:
            if len(self._rooms) >= self._max_rooms:
                raise RoomLimitReached()
            if room_id is None:
                room_id = self._unused_code()
            elif room_id in self._rooms:
                return self._rooms[room_id]
            return self._register(room_id, **options)

    def get_or_create(self, room_id: str) -> Room:
        with self._lock:
            room = self._rooms.get(room_id)
            if room is not None:
                return room
            if len(self._rooms) >= self._max_rooms:
                raise RoomLimitReached()
            return self._register(room_id)

    def _unused_code(self) -> str:
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = generate_room_code()
            if code not in self._rooms:
                return code
        raise RuntimeError("Failed to generate unique room code")

    def _register(self, room_id: str, **options) -> Room:
        room = self._room_factory(room_id, **options)
        room.on_retire(self._forget)
        self._rooms[room_id] = room
        logger.info("Room created: %s", room_id)
        return room

    def _forget(self, room: Room):
        with self._lock:
            # A fresh room may already have taken over the id.
            if self._rooms.get(room.room_id) is room:
                del self._rooms[room.room_id]

    def expired(self, ttl_seconds: float) -> List[Room]:
        with self._lock:
            return [room for room in self._rooms.values() if room.is_expired(ttl_seconds)]

    def clear(self):
        with self._lock:
            self._rooms.clear()
