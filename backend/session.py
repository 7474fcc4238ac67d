"""
Game session controller: the client-side state machine.

    lobby -> countdown -> game -> win

The controller drives one transport. It never decides where the rope is:
it reports answers and renders whatever the room's writer broadcasts.
"""
import asyncio
import logging
import random
from typing import List, Optional

import config
import rules
from errors import GameError, OpponentLeft, PermissionDenied, RoomClosed, error_from_message
from media import MediaChannel, VoiceChat
from models import Question, clean_name
from question_bank import QuestionBank, default_bank

logger = logging.getLogger(__name__)

LOBBY = "lobby"
COUNTDOWN = "countdown"
GAME = "game"
WIN = "win"


class GameSessionController:
    def __init__(self, transport, question_bank: Optional[QuestionBank] = None,
                 media: Optional[MediaChannel] = None,
                 countdown_seconds: Optional[int] = None, tick: Optional[float] = None,
                 feedback_delay: Optional[float] = None, rng: Optional[random.Random] = None):
        self.transport = transport
        self.question_bank = question_bank or default_bank()
        self.voice = VoiceChat(media, transport) if media is not None else None
        self.countdown_seconds = countdown_seconds if countdown_seconds is not None else config.COUNTDOWN_SECONDS
        self.tick = tick if tick is not None else config.COUNTDOWN_TICK
        self.feedback_delay = feedback_delay if feedback_delay is not None else config.ANSWER_FEEDBACK_DELAY
        self.rng = rng or random.Random()

        self.notices: List[dict] = []
        self.reset_count = 0
        self._latch = rules.ThresholdLatch()
        self._countdown_task: Optional[asyncio.Task] = None
        self._next_question_task: Optional[asyncio.Task] = None
        self._clear()
        self._unsubscribe = transport.subscribe_state(self.on_event)

    def _clear(self):
        self.view = LOBBY
        self.room_id: Optional[str] = None
        self.players: List[dict] = []
        self.my_team: Optional[int] = None
        self.rope_position = config.ROPE_START
        self.winner_name: Optional[str] = None
        self.countdown = 0
        self.mode = config.GAME_MODE
        self.round = 0
        self.scores = {"1": 0, "2": 0}
        self.last_round_winner: Optional[str] = None
        self.current_question: Optional[Question] = None
        self.question_index = -1
        self.shuffled_options: List[str] = []
        self.is_answered = False
        self.selected_option: Optional[str] = None
        self.is_correct: Optional[bool] = None

    @property
    def is_host(self) -> bool:
        return self.transport.is_host

    def _notify(self, error: GameError):
        self.notices.append({"code": error.code, "message": error.message, "fatal": error.fatal})
        logger.info("Notice: %s", error.message)

    # --- lobby actions ---

    async def create_room(self, name: str, room_id: Optional[str] = None) -> Optional[str]:
        try:
            name = clean_name(name)
            code = await self.transport.create_room(name, room_id)
        except ValueError as e:
            self._notify(GameError(str(e)))
            return None
        except GameError as e:
            self._notify(e)
            return None
        await self._entered_room()
        return code

    async def join_room(self, room_id: str, name: str) -> Optional[dict]:
        """Join by room code or by a shared invite link (``...?room=<id>``)."""
        try:
            if "?" in room_id:
                room_id = rules.room_code_from_url(room_id)
                if room_id is None:
                    raise ValueError("Invite link has no room code")
            name = clean_name(name)
            player = await self.transport.join(room_id, name)
        except ValueError as e:
            self._notify(GameError(str(e)))
            return None
        except GameError as e:
            self._notify(e)
            if e.fatal:
                await self.hard_reset()
            return None
        await self._entered_room()
        return player

    async def _entered_room(self):
        self.room_id = self.transport.room_id
        self.my_team = self.transport.player["team"]
        self.players = list(self.transport.players)
        if self.voice is not None:
            try:
                await self.voice.start()
            except PermissionDenied as e:
                self._notify(e)
            else:
                await self.voice.on_players(self.players)

    async def start_game(self):
        if self.view != LOBBY:
            return
        await self.transport.start_game()

    # --- gameplay ---

    def invite_link(self, base_url: Optional[str] = None) -> Optional[str]:
        if self.room_id is None:
            return None
        return rules.invite_url(base_url or config.SERVER_URL, self.room_id)

    async def load_next_question(self):
        """Pick a random question, shuffle its options and publish them for our team."""
        self.question_index, self.current_question = self.question_bank.random_question(self.rng)
        self.shuffled_options = rules.shuffle_options(self.current_question.options, self.rng)
        self.is_answered = False
        self.selected_option = None
        self.is_correct = None
        await self.transport.mutate_state({"teams": {str(self.my_team): {
            "question_index": self.question_index,
            "shuffled_options": self.shuffled_options,
        }}})

    async def answer(self, option: str) -> Optional[bool]:
        if self.view != GAME or self.is_answered or self.current_question is None:
            return None
        self.selected_option = option
        self.is_correct = option == self.current_question.correct_answer
        self.is_answered = True
        try:
            await self.transport.submit_answer(self.is_correct)
        except GameError as e:
            self._notify(e)
            if e.fatal:
                await self.hard_reset()
            return None
        self._cancel(self._next_question_task)
        self._next_question_task = asyncio.create_task(self._next_question_after_delay())
        return self.is_correct

    async def _next_question_after_delay(self):
        await asyncio.sleep(self.feedback_delay)
        if self.view == GAME:
            await self.load_next_question()

    async def _run_countdown(self):
        for remaining in range(self.countdown_seconds, 0, -1):
            self.countdown = remaining
            await asyncio.sleep(self.tick)
        self.countdown = 0
        if self.view == COUNTDOWN:
            self.view = GAME
            await self.load_next_question()

    def _enter_win(self, winner_name: str):
        self.winner_name = winner_name
        self.view = WIN
        self._cancel(self._next_question_task)
        logger.info("Game over in room %s: %s wins", self.room_id, winner_name)

    # --- transport events ---

    async def on_event(self, event: str, payload: dict):
        if event in ("player_joined", "player_left"):
            self.players = payload.get("players", [])
            if event == "player_joined" and self.voice is not None:
                await self.voice.on_players(self.players)

        elif event == "game_started":
            if self.view != LOBBY:
                return
            self.mode = payload.get("mode") or self.mode
            self.round = payload.get("round", 0)
            self.rope_position = config.ROPE_START
            self.winner_name = None
            self.scores = {"1": 0, "2": 0}
            self._latch.reset()
            self.view = COUNTDOWN
            self._cancel(self._countdown_task)
            self._countdown_task = asyncio.create_task(self._run_countdown())

        elif event == "state_update":
            self.rope_position = payload.get("rope_position", self.rope_position)
            self.round = payload.get("round", self.round)
            teams = payload.get("teams")
            if teams:
                self.scores = {team: entry.get("score", 0) for team, entry in teams.items()}
            if self.view == GAME and self.mode == rules.SINGLE_ROUND:
                team = self._latch.check(self.rope_position, self.round)
                if team is not None:
                    self._enter_win(rules.team_player_name(self.players, team))

        elif event == "round_won":
            self.scores = payload.get("scores", self.scores)
            self.round = payload.get("round", self.round)
            self.last_round_winner = payload.get("winner_name")
            self.rope_position = config.ROPE_START
            if self.view == GAME:
                self._cancel(self._next_question_task)
                await self.load_next_question()

        elif event == "game_over":
            self.scores = payload.get("scores", self.scores)
            if self.view != WIN:
                self._enter_win(payload.get("winner_name") or "")

        elif event == "opponent_left":
            self._notify(OpponentLeft())
            await self.hard_reset()

        elif event == "room_closed":
            if self.room_id is None:
                return
            self._notify(RoomClosed())
            await self.hard_reset()

        elif event == "error":
            error = error_from_message(payload)
            self._notify(error)
            if error.fatal:
                await self.hard_reset()

        elif event == "media_signal":
            if self.voice is not None:
                await self.voice.handle_signal(payload)

    # --- teardown ---

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]):
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def hard_reset(self):
        """Drop the room and return to a fresh lobby, as a page reload would."""
        self._cancel(self._countdown_task)
        self._cancel(self._next_question_task)
        self._countdown_task = self._next_question_task = None
        self._latch.reset()
        if self.voice is not None:
            await self.voice.stop()
        await self.transport.close()
        self._clear()
        self.reset_count += 1
        logger.info("Session reset")

    async def close(self):
        """Leave the room on purpose."""
        self._cancel(self._countdown_task)
        self._cancel(self._next_question_task)
        self._unsubscribe()
        if self.voice is not None:
            await self.voice.stop()
        await self.transport.leave()
