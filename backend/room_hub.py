from fastapi import WebSocket, WebSocketDisconnect
from typing import Callable, Dict, List, Optional
import copy
import json
import time
import logging

import config
import rules
from errors import GameError, InvalidMessage, RoomNotFound
from models import clean_name
from room_store import RoomStore

logger = logging.getLogger(__name__)

MEDIA_SIGNALS = ("offer", "answer", "ice-candidate")


class RoomHub:
    """Room authority: applies client messages to the store and broadcasts events.

    Connections are anything with ``async send_json(dict)``: FastAPI
    WebSockets on the relay server, in-process or peer links on a
    direct-link host. Answers are applied one at a time per room, so the
    hub is the single writer of the rope and the winner.
    """

    def __init__(self, store: RoomStore, rounds_to_win: Optional[int] = None,
                 auto_start: Optional[bool] = None):
        self.store = store
        self.rounds_to_win = rounds_to_win if rounds_to_win is not None else config.ROUNDS_TO_WIN
        self.auto_start = config.AUTO_START if auto_start is None else auto_start
        self.connections: Dict[str, Dict[str, object]] = {}  # room_id -> client_id -> connection
        self.allowed_origins: List[str] = []
        self._unsubscribe: Dict[str, Callable[[], None]] = {}
        # WS rate limiting: client_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}

    async def connect(self, websocket: WebSocket, room_id: str, client_id: str):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        if room_id not in self.store.rooms:
            await websocket.send_json(RoomNotFound().to_message())
            await websocket.close()
            return

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json(InvalidMessage("Message too large").to_message())
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json(InvalidMessage("Too many messages").to_message())
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json(InvalidMessage().to_message())
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json(InvalidMessage().to_message())
                    continue

                await self.handle_message(room_id, client_id, message, websocket)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected from room %s", client_id, room_id)
        except Exception:
            logger.exception("WebSocket error for client %s in room %s", client_id, room_id)
        finally:
            self.msg_timestamps.pop(client_id, None)
            await self.disconnect(room_id, client_id, websocket)

    async def handle_message(self, room_id: str, client_id: str, message: dict, connection):
        msg_type = message.get("type")
        room = self.store.rooms.get(room_id)
        if room is None:
            await connection.send_json(RoomNotFound().to_message())
            return
        room.touch()

        if msg_type == "join_room":
            await self._join(room_id, client_id, message, connection)
            return

        if client_id not in room.players or self.connections.get(room_id, {}).get(client_id) is not connection:
            await connection.send_json(InvalidMessage("Join the room first").to_message())
            return

        if msg_type == "start_game":
            await self._start_game(room_id, client_id)
        elif msg_type == "submit_answer":
            await self._submit_answer(room_id, client_id, message)
        elif msg_type == "mutate_state":
            await self._mutate_state(room_id, client_id, message)
        elif msg_type == "leave":
            player = await self.store.leave(room_id, client_id)
            self._detach(room_id, client_id)
            if player:
                await self._player_removed(room_id, player)
        elif msg_type in MEDIA_SIGNALS:
            await self._relay_signal(room_id, client_id, message)
        else:
            logger.debug("Ignoring unknown message type %r from %s", msg_type, client_id)

    async def attach(self, room_id: str, client_id: str, connection):
        room_connections = self.connections.setdefault(room_id, {})
        old = room_connections.get(client_id)
        if old is not None and old is not connection:
            # Kick the old connection and let the new one take over
            room_connections.pop(client_id, None)
            try:
                await old.send_json({"type": "kicked", "message": "You joined from another device"})
                await old.close()
            except Exception:
                pass
        room_connections[client_id] = connection

        if room_id not in self._unsubscribe:
            self._unsubscribe[room_id] = await self.store.subscribe(
                room_id, lambda snapshot: self._on_snapshot(room_id, snapshot))

    def _detach(self, room_id: str, client_id: str):
        self.connections.get(room_id, {}).pop(client_id, None)

    async def disconnect(self, room_id: str, client_id: str, connection=None):
        """Connection dropped without an explicit leave."""
        current = self.connections.get(room_id, {}).get(client_id)
        if connection is not None and current is not None and current is not connection:
            return  # replaced by a newer connection
        self._detach(room_id, client_id)
        player = await self.store.disconnected(room_id, client_id)
        if player:
            await self._player_removed(room_id, player)

    async def _player_removed(self, room_id: str, player: dict):
        room = self.store.rooms.get(room_id)
        if room is None:
            return
        # If one player leaves, end the game
        if room.game_state["game_started"]:
            await self.store.mutate(room_id, {"game_started": False})
        await self.broadcast(room_id, {"type": "player_left", "players": room.player_list()})
        await self.broadcast(room_id, {"type": "opponent_left", "name": player["name"]})

    async def _on_snapshot(self, room_id: str, snapshot: Optional[dict]):
        if snapshot is None:
            await self.broadcast(room_id, {"type": "room_closed"})
            self.connections.pop(room_id, None)
            self._unsubscribe.pop(room_id, None)
            return
        await self.broadcast(room_id, {"type": "room_state", "room": snapshot})

    async def broadcast(self, room_id: str, message: dict):
        disconnected = []
        for client_id, connection in list(self.connections.get(room_id, {}).items()):
            try:
                await connection.send_json(message)
            except Exception:
                disconnected.append(client_id)
        for client_id in disconnected:
            self._detach(room_id, client_id)

    async def send(self, room_id: str, client_id: str, message: dict):
        connection = self.connections.get(room_id, {}).get(client_id)
        if connection is not None:
            await connection.send_json(message)

    async def _join(self, room_id: str, client_id: str, message: dict, connection):
        try:
            name = clean_name(message.get("name", ""))
        except ValueError as e:
            await connection.send_json(InvalidMessage(str(e)).to_message())
            return

        try:
            player = await self.store.join_room(room_id, name, client_id)
        except GameError as e:
            logger.info("Join rejected for %s in room %s: %s", client_id, room_id, e.code)
            await connection.send_json(e.to_message())
            return

        await self.attach(room_id, client_id, connection)
        self.store.remove_on_disconnect(room_id, client_id)
        room = self.store.get(room_id)

        await connection.send_json({"type": "joined_success", "player": player, "room": room.snapshot()})
        await self.broadcast(room_id, {"type": "player_joined", "players": room.player_list()})

        # If we have 2 players, let them know they are ready to start
        if len(room.players) == config.MAX_PLAYERS_PER_ROOM:
            await self.broadcast(room_id, {"type": "ready_to_start"})
            if self.auto_start and not room.game_state["game_started"] and room.game_state["winner_name"] is None:
                await self._start_game(room_id, None)

    async def _start_game(self, room_id: str, client_id: Optional[str]):
        room = self.store.get(room_id)
        if client_id is not None and not room.players[client_id]["is_host"]:
            logger.warning("Non-host %s tried to start room %s", client_id, room_id)
            return
        async with room.lock:
            if len(room.players) < config.MAX_PLAYERS_PER_ROOM or room.game_state["game_started"]:
                return
            await self.store.mutate(room_id, rules.start_game_changes(room.game_state))
        logger.info("Game started in room %s (%s)", room_id, room.game_state["mode"])
        await self.broadcast(room_id, {
            "type": "game_started",
            "mode": room.game_state["mode"],
            "round": room.game_state["round"],
        })

    async def _submit_answer(self, room_id: str, client_id: str, message: dict):
        correct = message.get("correct")
        if not isinstance(correct, bool):
            await self.send(room_id, client_id, InvalidMessage("'correct' must be true or false").to_message())
            return

        room = self.store.get(room_id)
        async with room.lock:
            if not room.game_state["game_started"]:
                return
            team = room.players[client_id]["team"]
            outcome = rules.apply_answer(room.game_state, room.players.values(), team, correct,
                                         self.rounds_to_win)
            await self.store.mutate(room_id, outcome.changes)
            game_state = copy.deepcopy(room.game_state)

        logger.debug("Room %s: team %d answered %s, rope -> %d",
                     room_id, team, "correctly" if correct else "wrong", outcome.rope_position)
        await self.broadcast(room_id, {
            "type": "state_update",
            "rope_position": outcome.rope_position,
            "teams": game_state["teams"],
            "round": game_state["round"],
        })

        if outcome.round_winner is not None and game_state["mode"] == rules.ROUNDS:
            await self.broadcast(room_id, {
                "type": "round_won",
                "team": outcome.round_winner,
                "winner_name": outcome.winner_name,
                "scores": rules.scores(game_state),
                "round": game_state["round"],
                "rope_position": game_state["rope_position"],
            })

        if outcome.game_over:
            logger.info("Room %s won by '%s'", room_id, outcome.winner_name)
            await self.broadcast(room_id, {
                "type": "game_over",
                "winner_name": outcome.winner_name,
                "scores": rules.scores(game_state),
            })

    async def _mutate_state(self, room_id: str, client_id: str, message: dict):
        """Clients may only publish their own team's question state."""
        changes = message.get("changes")
        if not isinstance(changes, dict):
            await self.send(room_id, client_id, InvalidMessage("'changes' must be an object").to_message())
            return
        team_key = str(self.store.get(room_id).players[client_id]["team"])
        entry = changes.get("teams", {}).get(team_key) if isinstance(changes.get("teams"), dict) else None
        dropped = [k for k in changes if k != "teams"]
        if dropped:
            logger.warning("Room %s: dropping authority-owned fields %s from %s", room_id, dropped, client_id)
        if not isinstance(entry, dict):
            return
        allowed = {k: v for k, v in entry.items() if k in ("question_index", "shuffled_options")}
        if allowed:
            await self.store.mutate(room_id, {"teams": {team_key: allowed}})

    async def _relay_signal(self, room_id: str, client_id: str, message: dict):
        target = message.get("target")
        if target not in self.connections.get(room_id, {}):
            logger.warning("Media signal from %s to unknown peer %s in room %s", client_id, target, room_id)
            return
        await self.send(room_id, target, {**message, "caller": client_id})
