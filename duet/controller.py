# Per-screen application state for playing or watching one puzzle.
# The controller owns the typed-but-unsubmitted guess and the last error; the
# puzzle itself lives in the injected SyncReconciler.

from __future__ import annotations

import asyncio
import logging
import string
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import game
from .config import WORD_LENGTH
from .game import GuessFeedbackRow, KeyStatus, PlayStatus, PuzzleState, Role, Transition, UnlockStatus
from .sync import SyncError, SyncReconciler

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Couldn't save. Check your connection and try again."

ENTER = "ENTER"
BACKSPACE = "BACKSPACE"


@dataclass(frozen=True)
class GameScreen:
    puzzle_id: str
    date: str
    role: Optional[Role]
    status: PlayStatus
    unlock: UnlockStatus
    hint: Optional[str]
    rows: List[GuessFeedbackRow]
    current_guess: str
    keyboard: Dict[str, KeyStatus]
    target_word: Optional[str]
    message: Optional[str]
    error: Optional[str] = None
    busy: bool = False
    can_request_unlock: bool = False
    can_grant_unlock: bool = False


@dataclass
class _ScreenState:
    current_guess: str = ""
    error: Optional[str] = None
    busy: bool = False
    viewed_fired: bool = False
    background: List[asyncio.Task] = field(default_factory=list)


class GameController:
    def __init__(self, user_id: str, reconciler: SyncReconciler) -> None:
        self.user_id = user_id
        self.reconciler = reconciler
        self._screen = _ScreenState()

    async def __aenter__(self) -> "GameController":
        await self.reconciler.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        for task in self._screen.background:
            if not task.done():
                await asyncio.wait([task], timeout=self.reconciler.timeout)
        await self.reconciler.close()

    @property
    def puzzle(self) -> PuzzleState:
        return self.reconciler.state

    @property
    def role(self) -> Optional[Role]:
        return self.puzzle.role_of(self.user_id)

    async def press(self, key: str) -> None:
        key = key.upper()
        if self.role != "solver" or game.play_status(self.puzzle) != "playing":
            return
        if key == BACKSPACE:
            self._screen.current_guess = self._screen.current_guess[:-1]
        elif key == ENTER:
            await self.submit()
        elif len(key) == 1 and key in string.ascii_uppercase and len(self._screen.current_guess) < WORD_LENGTH:
            self._screen.current_guess += key

    async def submit(self) -> bool:
        """Submit the typed guess. Only one submission may be in flight at a time."""
        if self.role != "solver" or self._screen.busy:
            return False
        letters = self._screen.current_guess
        transition = game.submit_guess(self.puzzle, letters)
        if not transition.accepted:
            return False

        self._screen.current_guess = ""
        if not await self._persist(transition):
            self._screen.current_guess = letters
            return False
        return True

    async def request_unlock(self) -> bool:
        if self.role != "solver":
            return False
        return await self._persist(game.request_unlock(self.puzzle))

    async def grant_unlock(self) -> bool:
        if self.role != "setter":
            return False
        return await self._persist(game.grant_unlock(self.puzzle))

    def render(self) -> GameScreen:
        """Snapshot the screen.

        Safe to call with or without a running event loop. Inside a loop, the
        first render that shows a lost solver the revealed message also
        schedules the background write marking it viewed.
        """
        puzzle = self.puzzle
        role = self.role
        status = game.play_status(puzzle)
        message = game.visible_message(puzzle, role)

        if role == "solver" and status == "lost" and message is not None:
            self._fire_mark_viewed()

        return GameScreen(
            puzzle_id=puzzle.id,
            date=puzzle.date,
            role=role,
            status=status,
            unlock=game.unlock_status(puzzle),
            hint=puzzle.hint,
            rows=[GuessFeedbackRow(g, game.score_guess(g, puzzle.target_word)) for g in puzzle.guesses],
            current_guess=self._screen.current_guess,
            keyboard=game.keyboard_status(puzzle.guesses, puzzle.target_word),
            target_word=puzzle.target_word if role == "setter" or status != "playing" else None,
            message=message,
            error=self._screen.error,
            busy=self._screen.busy,
            can_request_unlock=role == "solver" and game.request_unlock(puzzle).accepted,
            can_grant_unlock=role == "setter" and game.grant_unlock(puzzle).accepted,
        )

    async def _persist(self, transition: Transition) -> bool:
        if not transition.accepted:
            return False
        self._screen.busy = True
        self._screen.error = None
        try:
            await self.reconciler.apply(transition.changes)
        except SyncError as ex:
            logger.warning("Saving puzzle failed: %s", ex, extra={"puzzle_id": self.puzzle.id, "user_id": self.user_id})
            self._screen.error = RETRY_MESSAGE
            return False
        finally:
            self._screen.busy = False
        return True

    def _fire_mark_viewed(self) -> None:
        # First display of a revealed message marks it viewed; later renders must not re-fire
        if self._screen.viewed_fired or self.puzzle.message_viewed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run the write on; the next render inside one fires it
            logger.debug("Render outside the event loop, deferring mark viewed", extra={"puzzle_id": self.puzzle.id})
            return
        self._screen.viewed_fired = True
        self._screen.background.append(loop.create_task(self._mark_viewed()))

    async def _mark_viewed(self) -> None:
        transition = game.mark_viewed(self.puzzle)
        if not transition.accepted:
            return
        try:
            await self.reconciler.apply(transition.changes, rollback_on_error=False)
        except SyncError as ex:
            logger.warning("Marking message viewed failed: %s", ex, extra={"puzzle_id": self.puzzle.id})
