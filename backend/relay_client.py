"""Relay transport: one long-lived WebSocket to the relay server, which owns the room."""
import asyncio
import logging
from typing import Optional

import requests

from errors import ConnectionTimeout, GameError, RoomCodeTaken, TooManyRooms
from transport import WebSocketTransport

logger = logging.getLogger(__name__)


class RelayTransport(WebSocketTransport):
    kind = "relay"

    async def create_room(self, name: str, room_id: Optional[str] = None) -> str:
        body = {"name": name, "player_id": self.client_id}
        if room_id:
            body["room_id"] = room_id

        def post():
            return requests.post(f"{self.server_url}/room/create", json=body, timeout=self.join_timeout)

        try:
            response = await asyncio.to_thread(post)
        except requests.Timeout:
            raise ConnectionTimeout()
        except requests.RequestException as e:
            raise ConnectionTimeout(f"Could not reach server: {e}")

        if response.status_code == 429:
            raise TooManyRooms()
        if response.status_code == 409:
            raise RoomCodeTaken()
        if response.status_code != 200:
            raise GameError(f"Room creation failed ({response.status_code})")

        created = response.json()["room_id"]
        logger.info("Created room %s on relay server", created)
        await self.join(created, name)
        return created

    async def join(self, room_id: str, name: str) -> dict:
        room_id = room_id.strip().upper()
        self.room_id = room_id
        self._new_join_future()
        try:
            await self._open_socket(f"{self.ws_base}/ws/{room_id}/{self.client_id}")
        except GameError:
            self._pending_join = None
            raise
        await self._send({"type": "join_room", "name": name})
        try:
            player = await self._await_join()
        except GameError:
            await self._close_socket()
            raise
        logger.info("Joined room %s as team %d", room_id, player["team"])
        return player

    async def _on_message(self, message: dict):
        await self._dispatch(message)

    async def start_game(self):
        await self._send({"type": "start_game"})

    async def submit_answer(self, correct: bool):
        await self._send({"type": "submit_answer", "correct": correct})

    async def mutate_state(self, changes: dict):
        await self._send({"type": "mutate_state", "changes": changes})

    async def signal_media(self, target: str, kind: str, payload: dict):
        await self._send({**payload, "type": kind, "target": target})

    async def leave(self):
        if self._ws is not None:
            await self._send({"type": "leave"})
        await self.close()
        self.player = None
