# Core game logic for the daily two-player puzzle.
# Implements canonical Wordle marking rules:
# - Two-pass algorithm: first mark exact hits and remove them from the pool,
#   then mark presents by consuming the first remaining matching pool slot.
# - A letter is never marked present/exact more times than it occurs in the target.
#
# Puzzle transitions are pure: each operation takes a PuzzleState and returns a
# Transition carrying the new state plus the field changes the caller must persist.
# Precondition violations are rejected as no-ops instead of raising.

from __future__ import annotations

import string
from dataclasses import dataclass, field, replace
from typing import Dict, List, Literal, NamedTuple, Optional

from .config import MAX_GUESSES, WORD_LENGTH

Verdict = Literal["exact", "present", "absent"]
KeyStatus = Literal["exact", "present", "absent", "unseen"]
PlayStatus = Literal["playing", "won", "lost"]
UnlockStatus = Literal["locked", "requested", "revealed", "viewed"]
Role = Literal["setter", "solver"]


class GuessFeedbackRow(NamedTuple):
    guess: str
    marks: List[Verdict]


# Higher rank dominates when aggregating keyboard hints.
_KEY_RANK: Dict[str, int] = {"unseen": 0, "absent": 1, "present": 2, "exact": 3}


def normalize_word(word: str) -> Optional[str]:
    """Return the upper-cased word if it is exactly WORD_LENGTH ASCII letters, else None."""
    if not isinstance(word, str):
        return None
    w = word.strip().upper()
    if len(w) != WORD_LENGTH or not all(ch in string.ascii_uppercase for ch in w):
        return None
    return w


def score_guess(guess: str, target: str) -> List[Verdict]:
    g = normalize_word(guess)
    t = normalize_word(target)
    if g is None or t is None:
        raise ValueError(f"guess and target must both be {WORD_LENGTH}-letter words")

    marks: List[Verdict] = ["absent"] * WORD_LENGTH
    pool: List[Optional[str]] = list(t)

    # First pass: exact hits consume their own slot
    for i in range(WORD_LENGTH):
        if g[i] == t[i]:
            marks[i] = "exact"
            pool[i] = None

    # Second pass: presents consume the first remaining matching slot
    for i in range(WORD_LENGTH):
        if marks[i] == "exact":
            continue
        ch = g[i]
        if ch in pool:
            marks[i] = "present"
            pool[pool.index(ch)] = None

    return marks


def letter_status(letter: str, guesses: List[str], target: str) -> KeyStatus:
    """Best hint for one keyboard letter across every submitted guess.

    exact dominates present dominates absent; a letter that was never typed is unseen.
    """
    letter = letter.upper()
    best: KeyStatus = "unseen"
    for guess in guesses:
        if letter not in guess.upper():
            continue
        for ch, mark in zip(guess.upper(), score_guess(guess, target)):
            if ch == letter and _KEY_RANK[mark] > _KEY_RANK[best]:
                best = mark
        if best == "exact":
            break
    return best


def keyboard_status(guesses: List[str], target: str) -> Dict[str, KeyStatus]:
    status: Dict[str, KeyStatus] = {ch: "unseen" for ch in string.ascii_uppercase}
    for guess in guesses:
        for ch, mark in zip(guess.upper(), score_guess(guess, target)):
            if _KEY_RANK[mark] > _KEY_RANK[status[ch]]:
                status[ch] = mark
    return status


@dataclass(frozen=True)
class PuzzleState:
    id: str
    date: str
    setter_id: str
    solver_id: str
    target_word: str
    secret_message: str = ""
    hint: Optional[str] = None
    guesses: List[str] = field(default_factory=list)
    is_solved: bool = False
    message_requested: bool = False
    message_revealed: bool = False
    message_viewed: bool = False

    def role_of(self, user_id: str) -> Optional[Role]:
        if user_id == self.setter_id:
            return "setter"
        if user_id == self.solver_id:
            return "solver"
        return None


@dataclass(frozen=True)
class Transition:
    state: PuzzleState
    changes: Dict[str, object] = field(default_factory=dict)
    accepted: bool = False

    @property
    def status(self) -> PlayStatus:
        return play_status(self.state)


# Fields a puzzle update may touch. Everything else is fixed at creation.
MUTABLE_FIELDS = ("guesses", "is_solved", "message_requested", "message_revealed", "message_viewed")


def play_status(puzzle: PuzzleState) -> PlayStatus:
    if puzzle.is_solved:
        return "won"
    if len(puzzle.guesses) >= MAX_GUESSES:
        return "lost"
    return "playing"


def unlock_status(puzzle: PuzzleState) -> UnlockStatus:
    if puzzle.message_viewed:
        return "viewed"
    if puzzle.message_revealed:
        return "revealed"
    if puzzle.message_requested:
        return "requested"
    return "locked"


def _apply(puzzle: PuzzleState, changes: Dict[str, object]) -> Transition:
    return Transition(state=replace(puzzle, **changes), changes=changes, accepted=True)


def _rejected(puzzle: PuzzleState) -> Transition:
    return Transition(state=puzzle)


def submit_guess(puzzle: PuzzleState, letters: str) -> Transition:
    """Append a guess and advance the play status.

    The win check runs before the loss check, so a correct sixth guess wins.
    """
    if play_status(puzzle) != "playing":
        return _rejected(puzzle)
    word = normalize_word(letters)
    if word is None or len(puzzle.guesses) >= MAX_GUESSES:
        return _rejected(puzzle)

    guesses = list(puzzle.guesses) + [word]
    return _apply(puzzle, {"guesses": guesses, "is_solved": word == puzzle.target_word})


def request_unlock(puzzle: PuzzleState) -> Transition:
    if play_status(puzzle) != "lost" or puzzle.message_requested:
        return _rejected(puzzle)
    return _apply(puzzle, {"message_requested": True})


def grant_unlock(puzzle: PuzzleState) -> Transition:
    # The setter may reveal proactively, before any request.
    if puzzle.message_revealed:
        return _rejected(puzzle)
    return _apply(puzzle, {"message_revealed": True})


def mark_viewed(puzzle: PuzzleState) -> Transition:
    if play_status(puzzle) != "lost" or not puzzle.message_revealed or puzzle.message_viewed:
        return _rejected(puzzle)
    return _apply(puzzle, {"message_viewed": True})


def visible_message(puzzle: PuzzleState, role: Optional[Role]) -> Optional[str]:
    if role == "setter":
        return puzzle.secret_message
    if role != "solver":
        return None
    status = play_status(puzzle)
    if status == "won" or (status == "lost" and puzzle.message_revealed):
        return puzzle.secret_message
    return None


def puzzle_public_state(puzzle: PuzzleState, viewer_id: str) -> dict:
    """Serializable view of a puzzle for one of its two parties.

    The target word is withheld from the solver until the puzzle is over.
    """
    role = puzzle.role_of(viewer_id)
    status = play_status(puzzle)
    reveal_target = role == "setter" or status != "playing"
    return {
        "id": puzzle.id,
        "date": puzzle.date,
        "setter_id": puzzle.setter_id,
        "solver_id": puzzle.solver_id,
        "role": role,
        "hint": puzzle.hint,
        "guesses": [
            {"guess": g, "marks": score_guess(g, puzzle.target_word)} for g in puzzle.guesses
        ],
        "status": status,
        "unlock_status": unlock_status(puzzle),
        "is_solved": puzzle.is_solved,
        "message_requested": puzzle.message_requested,
        "message_revealed": puzzle.message_revealed,
        "message_viewed": puzzle.message_viewed,
        "target_word": puzzle.target_word if reveal_target else None,
        "secret_message": visible_message(puzzle, role),
        "keyboard": keyboard_status(puzzle.guesses, puzzle.target_word),
    }
