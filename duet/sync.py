# Client-side reconciliation of a puzzle shared between setter and solver.
#
# Local mutations are applied optimistically, then written durably with a
# bounded timeout. Change-feed events for the watched puzzle are merged into
# the local state through a field-level rule table. Immutable fields take the
# authoritative value; guesses and flags only ever move forward, so a lagging
# or redelivered snapshot can never roll them back.

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import db
from .changefeed import FEED, ChangeFeed, RecordChanged, Subscription
from .config import WRITE_TIMEOUT_SECS
from .game import PuzzleState

logger = logging.getLogger(__name__)

Loader = Callable[[str], Awaitable[Optional[PuzzleState]]]
Writer = Callable[[str, Dict[str, Any]], Awaitable[Optional[PuzzleState]]]
Listener = Callable[[PuzzleState], None]


class SyncError(Exception):
    """A durable write failed; the caller may retry."""


class WriteTimeoutError(SyncError):
    pass


class PuzzleNotFoundError(SyncError):
    pass


async def load_puzzle(puzzle_id: str) -> Optional[PuzzleState]:
    return await asyncio.to_thread(db.get_puzzle, puzzle_id)


async def write_puzzle(puzzle_id: str, changes: Dict[str, Any]) -> Optional[PuzzleState]:
    return await asyncio.to_thread(db.update_puzzle, puzzle_id, changes)


def _authoritative(local: Any, remote: Any, pending: Any) -> Any:
    return remote


def _append_only(local: List[str], remote: List[str], pending: Optional[List[str]]) -> List[str]:
    # Guesses only grow: a list that is a strict prefix of the other is stale
    local, remote = list(local), list(remote)
    if len(local) > len(remote) and local[: len(remote)] == remote:
        return local
    return remote


def _monotonic(local: bool, remote: bool, pending: Optional[bool]) -> bool:
    # The store never clears a flag
    return bool(local or remote or pending)


# field -> resolver(local, remote, pending)
MERGE_RULES: Dict[str, Callable[[Any, Any, Any], Any]] = {
    "id": _authoritative,
    "date": _authoritative,
    "setter_id": _authoritative,
    "solver_id": _authoritative,
    "target_word": _authoritative,
    "hint": _authoritative,
    "secret_message": _authoritative,
    "guesses": _append_only,
    "is_solved": _monotonic,
    "message_requested": _monotonic,
    "message_revealed": _monotonic,
    "message_viewed": _monotonic,
}


def merge(local: PuzzleState, remote: PuzzleState, pending: Dict[str, Any]) -> PuzzleState:
    local_fields = asdict(local)
    remote_fields = asdict(remote)
    merged = {
        name: rule(local_fields[name], remote_fields[name], pending.get(name))
        for name, rule in MERGE_RULES.items()
    }
    return PuzzleState(**merged)


class SyncReconciler:
    """Keeps one client's view of a puzzle consistent with the store.

    Use as an async context manager scoped to the screen showing the puzzle;
    leaving the context unsubscribes from the change feed.
    """

    def __init__(
        self,
        puzzle_id: str,
        *,
        feed: ChangeFeed = FEED,
        loader: Loader = load_puzzle,
        writer: Writer = write_puzzle,
        timeout: float = WRITE_TIMEOUT_SECS,
    ) -> None:
        self.puzzle_id = puzzle_id
        self.feed = feed
        self.loader = loader
        self.writer = writer
        self.timeout = timeout
        self._state: Optional[PuzzleState] = None
        self._pending: Dict[str, Any] = {}
        self._listeners: List[Listener] = []
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def state(self) -> PuzzleState:
        if self._state is None:
            raise PuzzleNotFoundError(f"Puzzle {self.puzzle_id} is not loaded")
        return self._state

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def start(self) -> PuzzleState:
        # Subscribe before the initial fetch so no change slips between the two
        self._subscription = self.feed.subscribe(db.PUZZLES, id=self.puzzle_id)
        state = await self._with_timeout(self.loader(self.puzzle_id))
        if state is None:
            self._close_subscription()
            raise PuzzleNotFoundError(f"Puzzle {self.puzzle_id} not found")
        self._set_state(state)
        self._consumer = asyncio.create_task(self._consume())
        return state

    async def close(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        self._close_subscription()

    async def __aenter__(self) -> "SyncReconciler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def apply(self, changes: Dict[str, Any], *, rollback_on_error: bool = True) -> PuzzleState:
        """Apply changes locally, then write them durably.

        Raises SyncError (WriteTimeoutError on timeout) when the write fails.
        Foreground actions roll back to the pre-attempt state so they can be
        retried; background side effects keep the optimistic value.
        """
        before = self.state
        self._pending.update(changes)
        self._set_state(replace(before, **changes))

        try:
            confirmed = await self._with_timeout(self.writer(self.puzzle_id, changes))
        except Exception as ex:
            for key in changes:
                self._pending.pop(key, None)
            if rollback_on_error:
                self._set_state(before)
            if isinstance(ex, SyncError):
                raise
            raise SyncError(str(ex)) from ex

        for key, value in changes.items():
            if self._pending.get(key) == value:
                self._pending.pop(key)
        if confirmed is None:
            raise PuzzleNotFoundError(f"Puzzle {self.puzzle_id} not found")
        self._merge(confirmed)
        return self.state

    async def handle(self, event: RecordChanged) -> None:
        if event.table != db.PUZZLES or event.record_id != self.puzzle_id:
            return
        if event.record is not None:
            remote = db.state_from_record(event.record)
        else:
            try:
                remote = await self._with_timeout(self.loader(self.puzzle_id))
            except SyncError as ex:
                logger.warning("Refetch after change event failed: %s", ex, extra={"puzzle_id": self.puzzle_id})
                return
            if remote is None:
                return
        self._merge(remote)

    async def _consume(self) -> None:
        assert self._subscription is not None
        while True:
            event = await self._subscription.get()
            try:
                await self.handle(event)
            except Exception as ex:
                logger.error("Error reconciling change event: %s", ex, exc_info=ex, extra={"puzzle_id": self.puzzle_id})

    def _merge(self, remote: PuzzleState) -> None:
        if self._state is None:
            self._set_state(remote)
            return
        merged = merge(self._state, remote, self._pending)
        if merged != self._state:
            self._set_state(merged)

    def _set_state(self, state: PuzzleState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def _with_timeout(self, aw: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except asyncio.TimeoutError as ex:
            raise WriteTimeoutError(f"Request timed out after {self.timeout}s") from ex
