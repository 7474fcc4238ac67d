"""
Game rules for the rope: scoring, clamping, win detection, round resolution.

Sign convention, used everywhere in the project:

* a correct answer from team 1 (Blue, right side) pulls the rope up (+5),
  a wrong one lets it slip down (-5);
* team 2 (Red, left side) is the mirror image: correct -5, wrong +5;
* ``rope_position >= 90`` wins for team 1, ``<= 10`` wins for team 2.

Everything here is pure so the relay hub, the direct-link host and the
shared-document host all resolve answers identically.
"""
import copy
import random
import string
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import config

SINGLE_ROUND = "single_round"
ROUNDS = "rounds"


def new_team_state(score: int = 0) -> dict:
    return {"question_index": -1, "shuffled_options": [], "score": score}


def new_game_state(mode: str = SINGLE_ROUND) -> dict:
    if mode not in config.VALID_GAME_MODES:
        raise ValueError(f"Unknown game mode: {mode}")
    return {
        "rope_position": config.ROPE_START,
        "winner_name": None,
        "game_started": False,
        "mode": mode,
        "round": 0,
        "round_winner": None,
        "teams": {"1": new_team_state(), "2": new_team_state()},
    }


def start_game_changes(game_state: dict) -> dict:
    """Changes that (re)start a game: rope centred, scores and questions cleared."""
    return {
        "game_started": True,
        "rope_position": config.ROPE_START,
        "winner_name": None,
        "round": 0,
        "round_winner": None,
        "teams": {"1": new_team_state(), "2": new_team_state()},
    }


def clamp_rope(position: int) -> int:
    return max(config.ROPE_MIN, min(config.ROPE_MAX, position))


def answer_delta(team: int, correct: bool) -> int:
    if team == 1:
        return config.ANSWER_STEP if correct else -config.ANSWER_STEP
    if team == 2:
        return -config.ANSWER_STEP if correct else config.ANSWER_STEP
    raise ValueError(f"Invalid team: {team}")


def threshold_winner(position: int) -> Optional[int]:
    """Team whose threshold ``position`` has reached, or None."""
    if position >= config.TEAM1_WIN_AT:
        return 1
    if position <= config.TEAM2_WIN_AT:
        return 2
    return None


def team_player_name(players: Iterable[dict], team: int) -> str:
    for player in players:
        if player.get("team") == team and player.get("name"):
            return player["name"]
    return f"Team {team}"


def merge_game_state(game_state: dict, changes: dict) -> dict:
    """Shallow merge ``changes`` into ``game_state`` in place.

    Top-level fields are replaced (last write wins per field); ``teams``
    merges per team entry so one team's update never clobbers the other's.
    """
    for key, value in changes.items():
        if key == "teams" and isinstance(value, dict):
            teams = game_state.setdefault("teams", {})
            for team_key, entry in value.items():
                teams.setdefault(str(team_key), new_team_state()).update(entry)
        else:
            game_state[key] = value
    return game_state


def scores(game_state: dict) -> Dict[str, int]:
    return {team: entry.get("score", 0) for team, entry in game_state.get("teams", {}).items()}


@dataclass
class AnswerOutcome:
    delta: int
    rope_position: int  # position right after the answer, before any round reset
    changes: dict = field(default_factory=dict)
    round_winner: Optional[int] = None
    winner_name: Optional[str] = None
    game_over: bool = False


def apply_answer(game_state: dict, players: Iterable[dict], team: int, correct: bool,
                 rounds_to_win: int = config.ROUNDS_TO_WIN) -> AnswerOutcome:
    """Resolve one answer against ``game_state`` without mutating it.

    Returns the changes the single writer must merge. In single-round mode a
    threshold ends the game; in rounds mode it scores a round, recentres the
    rope and resets both teams' questions.
    """
    delta = answer_delta(team, correct)
    position = clamp_rope(game_state["rope_position"] + delta)
    outcome = AnswerOutcome(delta=delta, rope_position=position,
                            changes={"rope_position": position})

    winning_team = threshold_winner(position)
    if winning_team is None:
        return outcome

    name = team_player_name(players, winning_team)
    outcome.round_winner = winning_team

    if game_state.get("mode", SINGLE_ROUND) == SINGLE_ROUND:
        outcome.changes.update(winner_name=name, game_started=False)
        outcome.winner_name = name
        outcome.game_over = True
        return outcome

    teams = copy.deepcopy(game_state.get("teams", {}))
    for team_key in ("1", "2"):
        previous = teams.get(team_key, {}).get("score", 0)
        teams[team_key] = new_team_state(previous)
    teams[str(winning_team)]["score"] += 1

    outcome.changes.update(
        rope_position=config.ROPE_START,
        round=game_state.get("round", 0) + 1,
        round_winner=winning_team,
        teams=teams,
    )
    outcome.winner_name = name
    if teams[str(winning_team)]["score"] >= rounds_to_win:
        outcome.changes.update(winner_name=name, game_started=False)
        outcome.game_over = True
    return outcome


class ThresholdLatch:
    """Reports a threshold crossing once per round.

    Reading the same rope value repeatedly (a snapshot re-delivered, a
    ``state_update`` followed by ``game_over``) never resolves twice.
    """

    def __init__(self):
        self._resolved_round: Optional[int] = None

    def check(self, position: int, round_number: int = 0) -> Optional[int]:
        team = threshold_winner(position)
        if team is None or self._resolved_round == round_number:
            return None
        self._resolved_round = round_number
        return team

    def reset(self):
        self._resolved_round = None


def shuffle_options(options: List[str], rng: Optional[random.Random] = None) -> List[str]:
    """Fisher-Yates shuffle into a new list."""
    rng = rng or random
    opts = list(options)
    for i in range(len(opts) - 1, 0, -1):
        j = rng.randint(0, i)
        opts[i], opts[j] = opts[j], opts[i]
    return opts


def generate_room_code(taken=(), length: int = config.ROOM_CODE_LENGTH,
                       rng: Optional[random.Random] = None) -> str:
    """Generate a room code not in ``taken``, checking for collisions."""
    rng = rng or random
    for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
        code = ''.join(rng.choices(string.ascii_uppercase + string.digits, k=length))
        if code not in taken:
            return code
    raise RuntimeError("Failed to generate unique room code")


def invite_url(base_url: str, room_id: str) -> str:
    return f"{base_url.rstrip('/')}/?{urlencode({'room': room_id})}"


def room_code_from_url(url: str) -> Optional[str]:
    values = parse_qs(urlparse(url).query).get("room")
    if not values or not values[0].strip():
        return None
    return values[0].strip().upper()
