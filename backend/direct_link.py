"""
Direct-link transport.

The host keeps the room in its own process: a private ``RoomStore`` and
``RoomHub`` answer the guest's packets exactly as the relay server would.
The broker at ``/peer/{peer_id}`` only carries packets between the two
peers. When the host goes away the room goes with it.
"""
import asyncio
import logging
from typing import Dict, Optional

import config
import rules
from errors import ConnectionTimeout, GameError, PeerUnavailable, RoomCodeTaken
from room_hub import RoomHub
from room_store import RoomStore
from transport import WebSocketTransport

logger = logging.getLogger(__name__)


def host_peer_id(room_id: str) -> str:
    return f"tug-{room_id}"


class LocalConnection:
    """The host's own seat at its hub; messages are queued, never delivered re-entrantly."""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    async def send_json(self, message: dict):
        await self.queue.put(message)

    async def close(self):
        pass


class PeerLink:
    """The guest's seat at the host's hub: packets go out through the broker."""

    def __init__(self, transport: "DirectLinkTransport", peer_id: str):
        self.transport = transport
        self.peer_id = peer_id

    async def send_json(self, message: dict):
        await self.transport._send({"type": "data", "target": self.peer_id, "payload": message})

    async def close(self):
        pass


class DirectLinkTransport(WebSocketTransport):
    kind = "direct"

    def __init__(self, *args, mode: Optional[str] = None, rounds_to_win: Optional[int] = None,
                 auto_start: Optional[bool] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.mode = mode or config.GAME_MODE
        self.rounds_to_win = rounds_to_win
        self.auto_start = auto_start
        self.hub: Optional[RoomHub] = None
        self.host_peer: Optional[str] = None
        self._links: Dict[str, PeerLink] = {}
        self._local: Optional[LocalConnection] = None
        self._pump: Optional[asyncio.Task] = None
        self._registered: Optional[asyncio.Future] = None
        self._pending_open: Optional[asyncio.Future] = None

    async def _register(self, peer_id: str):
        loop = asyncio.get_running_loop()
        self._registered = loop.create_future()
        await self._open_socket(f"{self.ws_base}/peer/{peer_id}")
        try:
            await asyncio.wait_for(self._registered, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            await self._close_socket()
            raise ConnectionTimeout()
        except GameError:
            await self._close_socket()
            raise

    async def create_room(self, name: str, room_id: Optional[str] = None) -> str:
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = room_id or rules.generate_room_code()
            try:
                await self._register(host_peer_id(code))
                break
            except RoomCodeTaken:
                if room_id:
                    raise
        else:
            raise RuntimeError("Failed to generate unique room code")

        store = RoomStore(mode=self.mode, max_rooms=1)
        self.hub = RoomHub(store, rounds_to_win=self.rounds_to_win, auto_start=self.auto_start)
        await store.create_room(name, self.client_id, room_id=code)
        self.room_id = code
        self.host_peer = host_peer_id(code)

        inbox: asyncio.Queue = asyncio.Queue()
        self._local = LocalConnection(inbox)
        self._pump = asyncio.create_task(self._pump_loop(inbox))

        self._new_join_future()
        await self.hub.handle_message(code, self.client_id, {"type": "join_room", "name": name}, self._local)
        await self._await_join()
        logger.info("Hosting room %s as peer %s", code, self.host_peer)
        return code

    async def join(self, room_id: str, name: str) -> dict:
        room_id = room_id.strip().upper()
        try:
            await self._register(self.client_id)
        except RoomCodeTaken:
            raise ConnectionTimeout("This session is already connected elsewhere")
        self.room_id = room_id
        self.host_peer = host_peer_id(room_id)

        self._pending_open = asyncio.get_running_loop().create_future()
        await self._send({"type": "connect", "target": self.host_peer})
        try:
            await asyncio.wait_for(self._pending_open, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            await self._close_socket()
            raise ConnectionTimeout()
        except PeerUnavailable:
            await self._close_socket()
            raise

        self._new_join_future()
        await self._to_room({"type": "join_room", "name": name})
        try:
            player = await self._await_join()
        except GameError:
            await self.close()
            raise
        logger.info("Joined room %s hosted by %s as team %d", room_id, self.host_peer, player["team"])
        return player

    async def _pump_loop(self, inbox: asyncio.Queue):
        while self._pump is asyncio.current_task():
            message = await inbox.get()
            await self._dispatch(message)

    async def _on_message(self, message: dict):
        msg_type = message.get("type")

        if msg_type == "registered":
            if self._registered is not None and not self._registered.done():
                self._registered.set_result(message.get("peer"))

        elif msg_type == "error":
            if message.get("code") == "peer_id_taken":
                if self._registered is not None and not self._registered.done():
                    self._registered.set_exception(RoomCodeTaken(message.get("message")))
                return
            await self._dispatch(message)

        elif msg_type == "open":
            peer = message.get("peer")
            if self.hub is not None:
                self._links[peer] = PeerLink(self, peer)
                logger.info("Peer %s connected to room %s", peer, self.room_id)
            elif self._pending_open is not None and not self._pending_open.done():
                self._pending_open.set_result(peer)

        elif msg_type == "data":
            sender = message.get("from")
            payload = message.get("payload")
            if not isinstance(payload, dict):
                return
            if self.hub is not None:
                link = self._links.setdefault(sender, PeerLink(self, sender))
                await self.hub.handle_message(self.room_id, sender, payload, link)
            elif sender == self.host_peer:
                await self._dispatch(payload)

        elif msg_type == "peer_unavailable":
            if self._pending_open is not None and not self._pending_open.done():
                self._pending_open.set_exception(PeerUnavailable())
            elif self.hub is None:
                await self._emit("room_closed", {"code": PeerUnavailable.code})
            else:
                logger.warning("Peer %s unreachable from room %s", message.get("peer"), self.room_id)

        elif msg_type == "peer_closed":
            peer = message.get("peer")
            if self.hub is not None:
                link = self._links.pop(peer, None)
                await self.hub.disconnect(self.room_id, peer, link)
            elif peer == self.host_peer:
                logger.warning("Host %s left; room %s is gone", peer, self.room_id)
                await self._emit("room_closed", {})

    async def _to_room(self, message: dict):
        if self.hub is not None:
            await self.hub.handle_message(self.room_id, self.client_id, message, self._local)
        else:
            await self._send({"type": "data", "target": self.host_peer, "payload": message})

    async def start_game(self):
        await self._to_room({"type": "start_game"})

    async def submit_answer(self, correct: bool):
        await self._to_room({"type": "submit_answer", "correct": correct})

    async def mutate_state(self, changes: dict):
        await self._to_room({"type": "mutate_state", "changes": changes})

    async def signal_media(self, target: str, kind: str, payload: dict):
        await self._to_room({**payload, "type": kind, "target": target})

    async def leave(self):
        if self.player is not None and self._ws is not None:
            await self._to_room({"type": "leave"})
        await self.close()
        self.player = None

    async def close(self):
        await self._close_socket()
        pump, self._pump = self._pump, None
        # Inside the pump (a reset triggered by a hub event) the loop exits on its own
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        self.hub = None
        self.host_peer = None
        self._links = {}
        self._local = None
        self._registered = None
        self._pending_open = None
        self.player = None
