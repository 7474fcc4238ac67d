"""
Transport interface shared by the relay, direct-link and shared-document variants.

Whatever carries the bytes, a transport hands its subscribers the same
normalised events::

    player_joined   {players}
    ready_to_start  {}
    game_started    {mode, round}
    state_update    {rope_position, teams, round}
    round_won       {team, winner_name, scores, round, rope_position}
    game_over       {winner_name, scores}
    player_left     {players}
    opponent_left   {}
    room_closed     {}
    media_signal    {kind, sender, ...}
    error           {code, message}

Handlers are coroutines ``handler(event, payload)`` awaited in delivery order.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

import config
from errors import ConnectionTimeout, GameError, error_from_message
from identity import load_session_id

logger = logging.getLogger(__name__)

MEDIA_SIGNALS = ("offer", "answer", "ice-candidate")

Handler = Callable[[str, dict], Awaitable[None]]


class Transport(ABC):
    kind = ""

    def __init__(self, server_url: Optional[str] = None, client_id: Optional[str] = None,
                 join_timeout: Optional[float] = None):
        self.server_url = (server_url or config.SERVER_URL).rstrip("/")
        self.client_id = client_id or load_session_id()
        self.join_timeout = join_timeout if join_timeout is not None else config.JOIN_TIMEOUT
        self.room_id: Optional[str] = None
        self.player: Optional[dict] = None
        self.players: List[dict] = []
        self.room: Optional[dict] = None  # latest full snapshot seen
        self._handlers: List[Handler] = []
        self._pending_join: Optional[asyncio.Future] = None
        self._closing = False

    @property
    def ws_base(self) -> str:
        if self.server_url.startswith("https://"):
            return "wss://" + self.server_url[len("https://"):]
        if self.server_url.startswith("http://"):
            return "ws://" + self.server_url[len("http://"):]
        return self.server_url

    @property
    def is_host(self) -> bool:
        return bool(self.player and self.player.get("is_host"))

    # --- capability set ---

    @abstractmethod
    async def create_room(self, name: str, room_id: Optional[str] = None) -> str:
        """Create a room, join it as team 1 host and return its code."""

    @abstractmethod
    async def join(self, room_id: str, name: str) -> dict:
        """Join ``room_id``; returns this client's player entry."""

    @abstractmethod
    async def start_game(self):
        ...

    @abstractmethod
    async def submit_answer(self, correct: bool):
        """Send an answer event; the room's single writer moves the rope."""

    @abstractmethod
    async def mutate_state(self, changes: dict):
        ...

    @abstractmethod
    async def signal_media(self, target: str, kind: str, payload: dict):
        ...

    @abstractmethod
    async def leave(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    def subscribe_state(self, handler: Handler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # --- helpers for the variants ---

    async def _emit(self, event: str, payload: Optional[dict] = None):
        for handler in list(self._handlers):
            try:
                await handler(event, payload or {})
            except Exception:
                logger.exception("Handler failed for event %s", event)

    def _new_join_future(self) -> asyncio.Future:
        self._pending_join = asyncio.get_running_loop().create_future()
        return self._pending_join

    async def _await_join(self) -> dict:
        try:
            return await asyncio.wait_for(self._pending_join, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            raise ConnectionTimeout()
        finally:
            self._pending_join = None

    def _fail_join(self, error: GameError) -> bool:
        if self._pending_join is not None and not self._pending_join.done():
            self._pending_join.set_exception(error)
            return True
        return False

    async def _dispatch(self, message: dict):
        """Handle one server-side room message (relay hub or direct-link host)."""
        msg_type = message.get("type")
        payload = {k: v for k, v in message.items() if k != "type"}

        if msg_type == "joined_success":
            self.player = message["player"]
            self.room = message.get("room")
            if self.room:
                self.room_id = self.room["id"]
                self.players = self.room["players"]
            if self._pending_join is not None and not self._pending_join.done():
                self._pending_join.set_result(dict(self.player))
        elif msg_type == "error":
            error = error_from_message(message)
            if not self._fail_join(error):
                await self._emit("error", {"code": error.code, "message": error.message})
        elif msg_type == "room_state":
            self.room = message["room"]
            self.players = self.room["players"]
        elif msg_type == "kicked":
            await self._emit("room_closed", payload)
        elif msg_type in MEDIA_SIGNALS:
            sender = payload.pop("caller", None)
            payload.pop("target", None)
            await self._emit("media_signal", {"kind": msg_type, "sender": sender, **payload})
        else:
            if msg_type in ("player_joined", "player_left"):
                self.players = message.get("players", [])
            await self._emit(msg_type, payload)

    async def _connection_lost(self):
        """The link to the room went away without us closing it."""
        if self._fail_join(ConnectionTimeout("Connection closed before joining")):
            return
        if self.player is not None:
            logger.warning("Lost connection to room %s", self.room_id)
            await self._emit("room_closed", {})


def create_transport(kind: Optional[str] = None, **kwargs) -> Transport:
    """Build the transport variant selected by ``kind`` (default ``config.TRANSPORT``)."""
    kind = (kind or config.TRANSPORT).lower()
    if kind == "relay":
        from relay_client import RelayTransport
        return RelayTransport(**kwargs)
    if kind == "direct":
        from direct_link import DirectLinkTransport
        return DirectLinkTransport(**kwargs)
    if kind == "shared":
        from shared_document import SharedDocumentTransport
        return SharedDocumentTransport(**kwargs)
    raise ValueError(f"Unknown transport {kind!r}; expected one of {', '.join(config.VALID_TRANSPORTS)}")


class WebSocketTransport(Transport):
    """A transport that talks JSON frames over one ``websockets`` client connection."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    async def _open_socket(self, url: str):
        await self._close_socket()
        self._closing = False
        try:
            self._ws = await asyncio.wait_for(websockets.connect(url), timeout=self.join_timeout)
        except asyncio.TimeoutError:
            raise ConnectionTimeout()
        except (OSError, InvalidHandshake) as e:
            raise ConnectionTimeout(f"Could not reach {url}: {e}")
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from server: %s", str(raw)[:100])
                    continue
                if isinstance(message, dict):
                    await self._on_message(message)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error reading from %s", self.kind)
        if not self._closing and ws is self._ws:
            await self._connection_lost()

    @abstractmethod
    async def _on_message(self, message: dict):
        ...

    async def _send(self, message: dict):
        if self._ws is None:
            raise ConnectionTimeout("Not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed:
            logger.warning("Dropped %s message: connection closed", message.get("type") or message.get("op"))

    async def _close_socket(self):
        self._closing = True
        ws, reader = self._ws, self._reader
        self._ws, self._reader = None, None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def close(self):
        await self._close_socket()
