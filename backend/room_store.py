"""
In-memory Room Store.

Holds room membership and the shared game state. Used by the relay server
(one store for every room) and by the direct-link host (a store living in
the host player's own process).
"""
import asyncio
import copy
import inspect
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

import config
import rules
from errors import RoomCodeTaken, RoomFull, RoomNotFound, TooManyRooms

logger = logging.getLogger(__name__)

Subscriber = Callable[[Optional[dict]], Union[None, Awaitable[None]]]


class Room:
    def __init__(self, room_id: str, mode: str = rules.SINGLE_ROUND):
        self.room_id = room_id
        self.players: Dict[str, dict] = {}  # player_id -> {id, name, team, is_host}
        self.game_state = rules.new_game_state(mode)
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.subscribers: List[Subscriber] = []
        self.remove_on_disconnect: Set[str] = set()
        self.lock = asyncio.Lock()

    def touch(self):
        """Update last activity timestamp."""
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return time.time() - self.last_activity > config.ROOM_TTL_SECONDS

    def player_list(self) -> List[dict]:
        return sorted(self.players.values(), key=lambda p: p["team"])

    def snapshot(self) -> dict:
        return copy.deepcopy({
            "id": self.room_id,
            "players": self.player_list(),
            "game_state": self.game_state,
            "created_at": self.created_at,
        })


class RoomStore:
    def __init__(self, mode: Optional[str] = None, max_rooms: Optional[int] = None):
        self.rooms: Dict[str, Room] = {}
        self.mode = mode or config.GAME_MODE
        self.max_rooms = max_rooms if max_rooms is not None else config.MAX_ROOMS
        self._cleanup_task: Optional[asyncio.Task] = None

    def get(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound()
        return room

    async def create_room(self, name: str, player_id: str, room_id: Optional[str] = None) -> Room:
        if len(self.rooms) >= self.max_rooms:
            raise TooManyRooms()
        if room_id is None:
            room_id = rules.generate_room_code(self.rooms)
        elif room_id in self.rooms:
            raise RoomCodeTaken()

        room = Room(room_id, self.mode)
        room.players[player_id] = {"id": player_id, "name": name, "team": 1, "is_host": True}
        self.rooms[room_id] = room
        logger.info("Room %s created by '%s'", room_id, name)
        return room

    async def join_room(self, room_id: str, name: str, player_id: str) -> dict:
        room = self.get(room_id)
        room.touch()

        existing = room.players.get(player_id)
        if existing:
            # Same session id: rejoin the same slot
            existing["name"] = name
            logger.info("Player '%s' rejoined room %s", name, room_id)
            await self._notify(room)
            return dict(existing)

        if len(room.players) >= config.MAX_PLAYERS_PER_ROOM:
            raise RoomFull()

        taken = {p["team"] for p in room.players.values()}
        team = 1 if 1 not in taken else 2
        player = {"id": player_id, "name": name, "team": team, "is_host": team == 1}
        room.players[player_id] = player
        logger.info("Player '%s' joined room %s as team %d", name, room_id, team)
        await self._notify(room)
        return dict(player)

    async def subscribe(self, room_id: str, callback: Subscriber) -> Callable[[], None]:
        """Deliver the full room snapshot now and after every change."""
        room = self.get(room_id)
        room.subscribers.append(callback)
        await self._deliver(callback, room.snapshot())

        def unsubscribe():
            if callback in room.subscribers:
                room.subscribers.remove(callback)

        return unsubscribe

    async def mutate(self, room_id: str, changes: dict) -> dict:
        """Shallow-merge ``changes`` into the game state; last write per field wins."""
        room = self.get(room_id)
        rules.merge_game_state(room.game_state, copy.deepcopy(changes))
        room.touch()
        await self._notify(room)
        return room.snapshot()

    def remove_on_disconnect(self, room_id: str, player_id: str):
        self.get(room_id).remove_on_disconnect.add(player_id)

    async def disconnected(self, room_id: str, player_id: str) -> Optional[dict]:
        """Run the removal registered for ``player_id``, if any."""
        room = self.rooms.get(room_id)
        if room is None or player_id not in room.remove_on_disconnect:
            return None
        return await self.leave(room_id, player_id)

    async def leave(self, room_id: str, player_id: str) -> Optional[dict]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        room.remove_on_disconnect.discard(player_id)
        player = room.players.pop(player_id, None)
        if player is None:
            return None
        logger.info("Player '%s' left room %s", player["name"], room_id)
        if not room.players:
            await self.delete_room(room_id)
        else:
            await self._notify(room)
        return player

    async def delete_room(self, room_id: str):
        room = self.rooms.pop(room_id, None)
        if room is None:
            return
        logger.info("Room %s deleted", room_id)
        for callback in list(room.subscribers):
            await self._deliver(callback, None)
        room.subscribers.clear()

    async def _notify(self, room: Room):
        for callback in list(room.subscribers):
            await self._deliver(callback, room.snapshot())

    async def _deliver(self, callback: Subscriber, snapshot: Optional[dict]):
        try:
            result = callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Room subscriber failed")

    def start_cleanup_loop(self):
        """Start the background room cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_rooms())

    async def _cleanup_expired_rooms(self):
        """Periodically remove expired rooms."""
        while True:
            try:
                await asyncio.sleep(60)
                expired = [code for code, room in self.rooms.items() if room.is_expired()]
                for code in expired:
                    await self.delete_room(code)
                    logger.info("Cleaned up expired room %s", code)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")
