"""
Shared-document transport.

Both players subscribe to the same hosted document and receive the whole
document after every write. The document *is* the room::

    {
      "id": "AB12C",
      "created_at": 1700000000.0,
      "players": {"<client_id>": {"id", "name", "team", "is_host"}},
      "game_state": {... see rules.new_game_state() ...},
      "answers": {"<client_id>-000001": {"team": 2, "correct": true}}
    }

Membership is written by each client itself, so two guests joining in the
same instant can both get in. The host (team 1) is the only writer of the
rope and the winner: the guest appends answer events under ``answers`` and
the host applies them one at a time and deletes them.
"""
import asyncio
import copy
import logging
import time
from typing import Iterable, List, Optional, Set, Tuple

import config
import rules
from errors import ConnectionTimeout, RoomCodeTaken, RoomFull, RoomNotFound
from transport import WebSocketTransport

logger = logging.getLogger(__name__)


def _players(doc: Optional[dict]) -> dict:
    return (doc or {}).get("players") or {}


def _game_state(doc: Optional[dict]) -> dict:
    return (doc or {}).get("game_state") or {}


def roster(players: Iterable[dict]) -> List[dict]:
    return sorted(players, key=lambda p: p.get("team", 0))


def diff_snapshots(previous: Optional[dict], current: Optional[dict],
                   my_id: str) -> List[Tuple[str, dict]]:
    """Turn two consecutive document snapshots into transport events."""
    events: List[Tuple[str, dict]] = []
    if current is None:
        if previous is not None:
            events.append(("room_closed", {}))
        return events

    before, after = _players(previous), _players(current)
    players = roster(after.values())
    joined = set(after) - set(before)
    left = set(before) - set(after)
    if joined:
        events.append(("player_joined", {"players": players}))
        if len(after) == config.MAX_PLAYERS_PER_ROOM and len(before) < config.MAX_PLAYERS_PER_ROOM:
            events.append(("ready_to_start", {}))
    if left:
        events.append(("player_left", {"players": players}))
        if any(pid != my_id for pid in left):
            events.append(("opponent_left", {}))

    old, new = _game_state(previous), _game_state(current)
    if new.get("game_started") and not old.get("game_started"):
        events.append(("game_started", {"mode": new.get("mode"), "round": new.get("round", 0)}))

    if new.get("round", 0) > old.get("round", 0) and new.get("round_winner"):
        team = new["round_winner"]
        events.append(("round_won", {
            "team": team,
            "winner_name": rules.team_player_name(players, team),
            "scores": rules.scores(new),
            "round": new["round"],
            "rope_position": new.get("rope_position"),
        }))

    if any(new.get(k) != old.get(k) for k in ("rope_position", "teams", "round")):
        events.append(("state_update", {
            "rope_position": new.get("rope_position"),
            "teams": new.get("teams", {}),
            "round": new.get("round", 0),
        }))

    if new.get("winner_name") and new.get("winner_name") != old.get("winner_name"):
        events.append(("game_over", {"winner_name": new["winner_name"], "scores": rules.scores(new)}))
    return events


class SharedDocumentTransport(WebSocketTransport):
    kind = "shared"

    def __init__(self, *args, mode: Optional[str] = None, rounds_to_win: Optional[int] = None,
                 auto_start: Optional[bool] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.mode = mode or config.GAME_MODE
        self.rounds_to_win = rounds_to_win if rounds_to_win is not None else config.ROUNDS_TO_WIN
        self.auto_start = config.AUTO_START if auto_start is None else auto_start
        self.doc: Optional[dict] = None
        self._first_snapshot: Optional[asyncio.Future] = None
        # Host only: the authoritative copy of the game state
        self._authority: Optional[dict] = None
        self._seen_answers: Set[str] = set()
        self._answer_seq = 0

    async def _subscribe(self, room_id: str) -> Optional[dict]:
        """Open the document and return its current contents (None if empty)."""
        self.doc = None
        self._first_snapshot = asyncio.get_running_loop().create_future()
        await self._open_socket(f"{self.ws_base}/doc/{room_id}/{self.client_id}")
        try:
            return await asyncio.wait_for(self._first_snapshot, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            await self._close_socket()
            raise ConnectionTimeout()

    async def _op(self, op: str, path: str, value=None):
        await self._send({"op": op, "path": path, "value": value})

    async def create_room(self, name: str, room_id: Optional[str] = None) -> str:
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = room_id or rules.generate_room_code()
            if await self._subscribe(code) is None:
                break
            await self._close_socket()
            if room_id:
                raise RoomCodeTaken()
        else:
            raise RuntimeError("Failed to generate unique room code")

        self.room_id = code
        self.player = {"id": self.client_id, "name": name, "team": 1, "is_host": True}
        self._authority = rules.new_game_state(self.mode)
        await self._op("set", "", {
            "id": code,
            "created_at": time.time(),
            "players": {self.client_id: self.player},
            "game_state": self._authority,
        })
        await self._op("on_disconnect_remove", f"players/{self.client_id}")
        logger.info("Created shared room %s", code)
        return code

    async def join(self, room_id: str, name: str) -> dict:
        room_id = room_id.strip().upper()
        doc = await self._subscribe(room_id)
        if doc is None:
            await self._close_socket()
            raise RoomNotFound()

        players = _players(doc)
        rejoin = self.client_id in players
        if rejoin:
            player = dict(players[self.client_id], name=name)
        elif len(players) >= config.MAX_PLAYERS_PER_ROOM:
            await self._close_socket()
            raise RoomFull()
        else:
            taken = {p.get("team") for p in players.values()}
            team = 1 if 1 not in taken else 2
            player = {"id": self.client_id, "name": name, "team": team, "is_host": team == 1}

        self.room_id = room_id
        self.player = player
        if player["is_host"]:
            self._authority = copy.deepcopy(_game_state(doc)) or rules.new_game_state(self.mode)
        await self._op("set", f"players/{self.client_id}", player)
        await self._op("on_disconnect_remove", f"players/{self.client_id}")
        if rejoin:
            await self._emit("player_joined", {"players": roster(_players(doc).values())})
        logger.info("Joined shared room %s as team %d", room_id, player["team"])
        return dict(player)

    async def _on_message(self, message: dict):
        msg_type = message.get("type")
        if msg_type == "snapshot":
            await self._on_snapshot(message.get("doc"))
        elif msg_type == "signal":
            payload = dict(message.get("payload") or {})
            kind = payload.pop("kind", None)
            await self._emit("media_signal", {"kind": kind, "sender": message.get("from"), **payload})
        elif msg_type == "error":
            await self._dispatch(message)

    async def _on_snapshot(self, doc: Optional[dict]):
        previous, self.doc = self.doc, doc
        if self._first_snapshot is not None and not self._first_snapshot.done():
            self._first_snapshot.set_result(doc)
            return

        self.room = doc
        self.players = roster(_players(doc).values())
        for event, payload in diff_snapshots(previous, doc, self.client_id):
            await self._emit(event, payload)

        if doc is None or not self.is_host:
            return
        await self._apply_pending_answers(doc)
        state = self._authority
        if (self.auto_start and len(self.players) == config.MAX_PLAYERS_PER_ROOM
                and not state["game_started"] and state["winner_name"] is None):
            await self.start_game()

    async def _apply_pending_answers(self, doc: dict):
        answers = doc.get("answers") or {}
        for key in sorted(answers):
            if key in self._seen_answers:
                continue
            self._seen_answers.add(key)
            entry = answers[key] or {}
            await self._apply_answer(entry.get("team"), entry.get("correct"))
            await self._op("remove", f"answers/{key}")

    async def _apply_answer(self, team, correct):
        state = self._authority
        if not state["game_started"] or team not in (1, 2) or not isinstance(correct, bool):
            return
        outcome = rules.apply_answer(state, _players(self.doc).values(), team, correct,
                                     self.rounds_to_win)
        rules.merge_game_state(state, copy.deepcopy(outcome.changes))
        await self._op("update", "game_state", outcome.changes)
        if outcome.game_over:
            logger.info("Shared room %s won by '%s'", self.room_id, outcome.winner_name)

    async def start_game(self):
        if not self.is_host:
            logger.warning("Only the host starts the game in shared room %s", self.room_id)
            return
        state = self._authority
        if len(_players(self.doc)) < config.MAX_PLAYERS_PER_ROOM or state["game_started"]:
            return
        changes = rules.start_game_changes(state)
        self._seen_answers.clear()
        rules.merge_game_state(state, copy.deepcopy(changes))
        await self._op("update", "game_state", changes)

    async def submit_answer(self, correct: bool):
        team = self.player["team"]
        if self.is_host:
            await self._apply_answer(team, correct)
            return
        self._answer_seq += 1
        key = f"{self.client_id}-{self._answer_seq:06d}"
        await self._op("set", f"answers/{key}", {"team": team, "correct": correct})

    async def mutate_state(self, changes: dict):
        for key, value in changes.items():
            if key == "teams" and isinstance(value, dict):
                for team_key, entry in value.items():
                    await self._op("update", f"game_state/teams/{team_key}", entry)
            else:
                await self._op("update", "game_state", {key: value})
        if self._authority is not None:
            rules.merge_game_state(self._authority, copy.deepcopy(changes))

    async def signal_media(self, target: str, kind: str, payload: dict):
        await self._send({"op": "signal", "target": target, "payload": {**payload, "kind": kind}})

    async def leave(self):
        if self.player is not None and self._ws is not None:
            await self._op("remove", f"players/{self.client_id}")
        await self.close()
        self.player = None

    async def close(self):
        await self._close_socket()
        self._seen_answers.clear()
        self._authority = None
        self.player = None
