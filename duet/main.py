# FastAPI server for the two-player daily puzzle.
# Provides:
# - POST /api/puzzles: set today's puzzle for your partner
# - GET  /api/puzzles/today?role=received|sent: today's puzzle
# - GET  /api/puzzles/{puzzle_id}: puzzle state for the caller
# - POST /api/puzzles/{puzzle_id}/guess: submit a guess (solver)
# - POST /api/puzzles/{puzzle_id}/request-unlock: ask for the secret message (solver)
# - POST /api/puzzles/{puzzle_id}/grant-unlock: reveal the secret message (setter)
# - POST /api/puzzles/{puzzle_id}/viewed: mark a revealed message as read (solver)
# - POST /api/devices: register a push device
# - POST /api/notify: fan a notification out to a user's devices
# - POST /api/reminders/run: run one reminder sweep now (REMINDER_ADMINS only)
# - GET/POST/DELETE /api/favorites: bookmarked puzzles
#
# Every /api route expects an X-Duet-Token header issued by duet.security.
#
# Run: uvicorn duet.main:app --host 0.0.0.0 --port 8000

from __future__ import annotations

import logging
from datetime import date as date_cls
from functools import lru_cache
from typing import Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from . import db, game
from .config import CORS_ORIGINS, REMINDER_ADMINS, SCHEDULER_ENABLED
from .game import PuzzleState, Role, Transition
from .logging import setup_logging
from .models import (
    Acknowledged,
    CreatePuzzleRequest,
    DeviceRegistration,
    FavoritesResponse,
    GuessFeedback,
    GuessRequest,
    NotifyRequest,
    PuzzleStateResponse,
    SweepResponse,
    TransitionResponse,
)
from .notifications import NEW_PUZZLE, UNLOCK_GRANTED, UNLOCK_REQUESTED, NotificationFanout, WebPushTransport
from .reminders import ReminderScheduler, run_reminder_sweep
from .security import verify_token
from .utils import local_today

logger = logging.getLogger(__name__)

app = FastAPI(title="Duet", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@lru_cache(maxsize=1)
def get_fanout() -> NotificationFanout:
    return NotificationFanout(WebPushTransport())


def current_user(x_duet_token: Optional[str] = Header(None)) -> str:
    user_id = verify_token(x_duet_token) if x_duet_token else None
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


_scheduler: Optional[ReminderScheduler] = None


@app.on_event("startup")
def startup():
    global _scheduler
    setup_logging()
    db.init_db()
    if SCHEDULER_ENABLED:
        _scheduler = ReminderScheduler(get_fanout)
        _scheduler.start()
        logger.info("Reminder scheduler started")


@app.on_event("shutdown")
def shutdown():
    if _scheduler is not None:
        _scheduler.shutdown()


@app.get("/health")
def health_check():
    return {"status": "ok"}


def _respond(puzzle: PuzzleState, user_id: str) -> PuzzleStateResponse:
    return PuzzleStateResponse(**game.puzzle_public_state(puzzle, user_id))


def _load_for(puzzle_id: str, user_id: str) -> PuzzleState:
    # Missing and foreign puzzles look the same to the caller
    puzzle = db.get_puzzle(puzzle_id)
    if puzzle is None or puzzle.role_of(user_id) is None:
        raise HTTPException(status_code=404, detail="Puzzle not found")
    return puzzle


def _persist(puzzle: PuzzleState, transition: Transition) -> PuzzleState:
    if not transition.accepted:
        return puzzle
    try:
        updated = db.update_puzzle(puzzle.id, transition.changes)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if updated is None:
        raise HTTPException(status_code=404, detail="Puzzle not found")
    return updated


def _transition(puzzle_id: str, user_id: str, role: Role, op) -> tuple[PuzzleState, Transition]:
    puzzle = _load_for(puzzle_id, user_id)
    if puzzle.role_of(user_id) != role:
        return puzzle, Transition(state=puzzle)
    transition = op(puzzle)
    return _persist(puzzle, transition), transition


async def _notify(fanout: NotificationFanout, user_id: str, title: str, body: str) -> None:
    try:
        await fanout.notify(user_id, title, body)
    except Exception as ex:
        logger.error("Notification fan-out failed: %s", ex, exc_info=ex, extra={"user_id": user_id})


def optional_fanout() -> Optional[NotificationFanout]:
    try:
        return get_fanout()
    except ValueError as ex:
        logger.warning("Push notifications disabled: %s", ex)
        return None


@app.post("/api/puzzles", response_model=PuzzleStateResponse, status_code=201)
def api_create_puzzle(
    req: CreatePuzzleRequest,
    background: BackgroundTasks,
    user_id: str = Depends(current_user),
    fanout: Optional[NotificationFanout] = Depends(optional_fanout),
):
    profile = db.get_profile(user_id)
    if profile is None or not profile["partner_id"]:
        raise HTTPException(status_code=400, detail="Link a partner before setting a puzzle")

    day = req.date or local_today(profile["timezone"])
    try:
        date_cls.fromisoformat(day)
    except ValueError:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")

    try:
        puzzle = db.create_puzzle(
            setter_id=user_id,
            solver_id=profile["partner_id"],
            date=day,
            target_word=req.target_word,
            secret_message=req.secret_message,
            hint=req.hint,
        )
    except db.DuplicatePuzzleError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if fanout is not None:
        background.add_task(_notify, fanout, puzzle.solver_id, *NEW_PUZZLE)
    return _respond(puzzle, user_id)


@app.get("/api/puzzles/today", response_model=PuzzleStateResponse)
def api_today(role: Literal["received", "sent"] = "received", user_id: str = Depends(current_user)):
    profile = db.get_profile(user_id) or {}
    day = local_today(profile.get("timezone"))
    if role == "sent":
        puzzle = db.find_puzzle(day, setter_id=user_id)
    else:
        puzzle = db.find_puzzle(day, solver_id=user_id)
    if puzzle is None:
        raise HTTPException(status_code=404, detail="No puzzle yet")
    return _respond(puzzle, user_id)


@app.get("/api/puzzles/{puzzle_id}", response_model=PuzzleStateResponse)
def api_puzzle(puzzle_id: str, user_id: str = Depends(current_user)):
    return _respond(_load_for(puzzle_id, user_id), user_id)


@app.post("/api/puzzles/{puzzle_id}/guess", response_model=TransitionResponse)
def api_guess(puzzle_id: str, req: GuessRequest, user_id: str = Depends(current_user)):
    puzzle, transition = _transition(puzzle_id, user_id, "solver", lambda p: game.submit_guess(p, req.guess))
    feedback = None
    if transition.accepted:
        feedback = GuessFeedback(guess=req.guess, marks=game.score_guess(req.guess, puzzle.target_word))
    return TransitionResponse(accepted=transition.accepted, puzzle=_respond(puzzle, user_id), feedback=feedback)


@app.post("/api/puzzles/{puzzle_id}/request-unlock", response_model=TransitionResponse)
def api_request_unlock(
    puzzle_id: str,
    background: BackgroundTasks,
    user_id: str = Depends(current_user),
    fanout: Optional[NotificationFanout] = Depends(optional_fanout),
):
    puzzle, transition = _transition(puzzle_id, user_id, "solver", game.request_unlock)
    if transition.accepted and fanout is not None:
        background.add_task(_notify, fanout, puzzle.setter_id, *UNLOCK_REQUESTED)
    return TransitionResponse(accepted=transition.accepted, puzzle=_respond(puzzle, user_id))


@app.post("/api/puzzles/{puzzle_id}/grant-unlock", response_model=TransitionResponse)
def api_grant_unlock(
    puzzle_id: str,
    background: BackgroundTasks,
    user_id: str = Depends(current_user),
    fanout: Optional[NotificationFanout] = Depends(optional_fanout),
):
    puzzle, transition = _transition(puzzle_id, user_id, "setter", game.grant_unlock)
    if transition.accepted and fanout is not None:
        background.add_task(_notify, fanout, puzzle.solver_id, *UNLOCK_GRANTED)
    return TransitionResponse(accepted=transition.accepted, puzzle=_respond(puzzle, user_id))


@app.post("/api/puzzles/{puzzle_id}/viewed", response_model=TransitionResponse)
def api_viewed(puzzle_id: str, user_id: str = Depends(current_user)):
    puzzle, transition = _transition(puzzle_id, user_id, "solver", game.mark_viewed)
    return TransitionResponse(accepted=transition.accepted, puzzle=_respond(puzzle, user_id))


@app.post("/api/devices", response_model=Acknowledged)
def api_register_device(req: DeviceRegistration, user_id: str = Depends(current_user)):
    created = db.add_subscription(user_id, req.endpoint, req.p256dh, req.auth)
    if req.timezone:
        db.upsert_profile(user_id, timezone=req.timezone)
    return Acknowledged(message="Subscribed" if created else "Already subscribed")


@app.post("/api/notify", response_model=Acknowledged, status_code=status.HTTP_202_ACCEPTED)
def api_notify(
    req: NotifyRequest,
    background: BackgroundTasks,
    user_id: str = Depends(current_user),
    fanout: Optional[NotificationFanout] = Depends(optional_fanout),
):
    profile = db.get_profile(user_id) or {}
    if req.target_user_id not in (user_id, profile.get("partner_id")):
        raise HTTPException(status_code=403, detail="You can only notify yourself or your partner")
    if fanout is None:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    background.add_task(_notify, fanout, req.target_user_id, req.title, req.body)
    return Acknowledged(message="Queued")


@app.post("/api/reminders/run", response_model=SweepResponse)
async def api_run_reminders(
    user_id: str = Depends(current_user),
    fanout: Optional[NotificationFanout] = Depends(optional_fanout),
):
    if user_id not in REMINDER_ADMINS:
        raise HTTPException(status_code=403, detail="Only administrators can run reminders")
    if fanout is None:
        raise HTTPException(status_code=503, detail="Push notifications are not configured")
    users = await run_reminder_sweep(fanout)
    return SweepResponse(reminded=len(users), users=users)


@app.get("/api/favorites", response_model=FavoritesResponse)
def api_favorites(user_id: str = Depends(current_user)):
    favorites = db.list_favorites(user_id)
    return FavoritesResponse(
        received=[_respond(p, user_id) for p in favorites["received"]],
        sent=[_respond(p, user_id) for p in favorites["sent"]],
    )


@app.post("/api/favorites/{puzzle_id}", response_model=Acknowledged)
def api_add_favorite(puzzle_id: str, user_id: str = Depends(current_user)):
    _load_for(puzzle_id, user_id)
    added = db.add_favorite(user_id, puzzle_id)
    return Acknowledged(message="Added" if added else "Already a favorite")


@app.delete("/api/favorites/{puzzle_id}", response_model=Acknowledged)
def api_remove_favorite(puzzle_id: str, user_id: str = Depends(current_user)):
    removed = db.remove_favorite(user_id, puzzle_id)
    return Acknowledged(message="Removed" if removed else "Not a favorite")
