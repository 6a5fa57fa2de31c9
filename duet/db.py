# Relational data layer using SQLAlchemy for puzzles, profiles and push devices.
# Every committed puzzle insert/update is announced on the change feed so both
# parties watching a puzzle can reconcile against the authoritative row.

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import select

from .changefeed import FEED, RecordChanged
from .config import DATABASE_URL, MAX_GUESSES, REMINDER_HOUR
from .game import MUTABLE_FIELDS, PuzzleState, play_status
from .utils import local_now

logger = logging.getLogger(__name__)

Base = declarative_base()

PUZZLES = "puzzles"
FLAG_FIELDS = ("is_solved", "message_requested", "message_revealed", "message_viewed")


class DuplicatePuzzleError(Exception):
    pass


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    username = Column(String, nullable=True)
    partner_id = Column(String, nullable=True, index=True)
    timezone = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Puzzle(Base):
    __tablename__ = PUZZLES
    __table_args__ = (UniqueConstraint("setter_id", "solver_id", "date", name="uq_puzzle_pair_date"),)
    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    created_at = Column(DateTime, server_default=func.now())
    date = Column(String(10), index=True, nullable=False)
    setter_id = Column(String, index=True, nullable=False)
    solver_id = Column(String, index=True, nullable=False)
    target_word = Column(String(5), nullable=False)
    hint = Column(String(64), nullable=True)
    secret_message = Column(Text, nullable=False, default="")
    guesses = Column(JSON, nullable=False, default=list)
    is_solved = Column(Boolean, nullable=False, default=False)
    message_requested = Column(Boolean, nullable=False, default=False)
    message_revealed = Column(Boolean, nullable=False, default=False)
    message_viewed = Column(Boolean, nullable=False, default=False)


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    endpoint = Column(Text, unique=True, nullable=False)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "puzzle_id", name="uq_favorite"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    puzzle_id = Column(String(32), ForeignKey("puzzles.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


@dataclass(frozen=True)
class DeviceSubscription:
    id: int
    user_id: str
    endpoint: str
    p256dh: str
    auth: str


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args, pool_pre_ping=True)


_engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)


def init_db(url: Optional[str] = None) -> None:
    """Create all tables, optionally rebinding the session factory to another database first."""
    global _engine
    if url is not None:
        _engine.dispose()
        _engine = _make_engine(url)
        SessionLocal.configure(bind=_engine)
    Base.metadata.create_all(_engine)


def reset_db() -> None:
    Base.metadata.drop_all(_engine)
    Base.metadata.create_all(_engine)


# ---------------------------------------------------------------------------
# Profiles

def upsert_profile(
    user_id: str,
    email: Optional[str] = None,
    username: Optional[str] = None,
    partner_id: Optional[str] = None,
    timezone: Optional[str] = None,
) -> None:
    with SessionLocal() as s:
        p = s.get(Profile, user_id)
        if p is None:
            p = Profile(id=user_id)
            s.add(p)
        if email is not None:
            p.email = email
        if username is not None:
            p.username = username
        if partner_id is not None:
            p.partner_id = partner_id
        if timezone is not None:
            p.timezone = timezone
        s.commit()


def get_profile(user_id: str) -> Optional[dict]:
    with SessionLocal() as s:
        p = s.get(Profile, user_id)
        if p is None:
            return None
        return {
            "id": p.id,
            "email": p.email,
            "username": p.username,
            "partner_id": p.partner_id,
            "timezone": p.timezone,
        }


# ---------------------------------------------------------------------------
# Puzzles

def puzzle_record(row: Puzzle) -> dict:
    return {
        "id": row.id,
        "date": row.date,
        "setter_id": row.setter_id,
        "solver_id": row.solver_id,
        "target_word": row.target_word,
        "hint": row.hint,
        "secret_message": row.secret_message,
        "guesses": list(row.guesses or []),
        "is_solved": bool(row.is_solved),
        "message_requested": bool(row.message_requested),
        "message_revealed": bool(row.message_revealed),
        "message_viewed": bool(row.message_viewed),
    }


def state_from_record(record: dict) -> PuzzleState:
    return PuzzleState(**record)


def _publish(event: str, row: Puzzle) -> None:
    FEED.publish(RecordChanged(table=PUZZLES, record_id=row.id, event=event, record=puzzle_record(row)))


def create_puzzle(
    setter_id: str,
    solver_id: str,
    date: str,
    target_word: str,
    secret_message: str,
    hint: Optional[str] = None,
) -> PuzzleState:
    with SessionLocal() as s:
        row = Puzzle(
            date=date,
            setter_id=setter_id,
            solver_id=solver_id,
            target_word=target_word,
            secret_message=secret_message,
            hint=hint,
            guesses=[],
        )
        s.add(row)
        try:
            s.commit()
        except IntegrityError as ex:
            s.rollback()
            raise DuplicatePuzzleError(f"A puzzle for {date} already exists for this pair") from ex
        state = state_from_record(puzzle_record(row))
        _publish("INSERT", row)

    logger.info("Puzzle created", extra={"puzzle_id": state.id, "user_id": setter_id})
    return state


def get_puzzle(puzzle_id: str) -> Optional[PuzzleState]:
    with SessionLocal() as s:
        row = s.get(Puzzle, puzzle_id)
        return state_from_record(puzzle_record(row)) if row is not None else None


def find_puzzle(date: str, setter_id: Optional[str] = None, solver_id: Optional[str] = None) -> Optional[PuzzleState]:
    stmt = select(Puzzle).where(Puzzle.date == date)
    if setter_id is not None:
        stmt = stmt.where(Puzzle.setter_id == setter_id)
    if solver_id is not None:
        stmt = stmt.where(Puzzle.solver_id == solver_id)
    with SessionLocal() as s:
        row = s.execute(stmt.order_by(Puzzle.created_at.desc())).scalars().first()
        return state_from_record(puzzle_record(row)) if row is not None else None


def update_puzzle(puzzle_id: str, changes: Dict[str, object]) -> Optional[PuzzleState]:
    """Persist a set of puzzle field changes and return the authoritative row.

    Only mutable fields are accepted. Flags are written with a conditional
    update so they only ever flip False -> True (message_viewed additionally
    requires message_revealed). Guesses are append-only: the new list must
    extend the stored one.
    """
    unknown = set(changes) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f"Immutable or unknown puzzle fields: {sorted(unknown)}")

    changed = False
    with SessionLocal() as s:
        row = s.get(Puzzle, puzzle_id)
        if row is None:
            return None

        if "guesses" in changes:
            new = list(changes["guesses"])
            old = list(row.guesses or [])
            if len(new) > MAX_GUESSES or new[: len(old)] != old:
                raise ValueError("Guesses are append-only and limited to %d" % MAX_GUESSES)
            if new != old:
                if row.is_solved or len(old) >= MAX_GUESSES:
                    raise ValueError("Puzzle is already finished")
                row.guesses = new
                changed = True
            s.flush()

        if changes.get("is_solved") and row.target_word not in (row.guesses or []):
            raise ValueError("is_solved requires a guess matching the target word")

        for flag in FLAG_FIELDS:
            if not changes.get(flag):
                continue
            stmt = update(Puzzle).where(Puzzle.id == puzzle_id, getattr(Puzzle, flag).is_(False))
            if flag == "message_viewed":
                stmt = stmt.where(Puzzle.message_revealed.is_(True))
            result = s.execute(stmt.values({flag: True}).execution_options(synchronize_session=False))
            changed = changed or result.rowcount > 0

        s.commit()
        s.refresh(row)
        if changed:
            _publish("UPDATE", row)
        return state_from_record(puzzle_record(row))


def list_puzzles(puzzle_ids: List[str]) -> List[PuzzleState]:
    if not puzzle_ids:
        return []
    with SessionLocal() as s:
        rows = s.execute(select(Puzzle).where(Puzzle.id.in_(puzzle_ids)).order_by(Puzzle.date.desc())).scalars().all()
        return [state_from_record(puzzle_record(r)) for r in rows]


# ---------------------------------------------------------------------------
# Push subscriptions

def _subscription(row: PushSubscription) -> DeviceSubscription:
    return DeviceSubscription(id=row.id, user_id=row.user_id, endpoint=row.endpoint, p256dh=row.p256dh, auth=row.auth)


def add_subscription(user_id: str, endpoint: str, p256dh: str, auth: str) -> bool:
    """Register a device. Returns False when the endpoint was already known.

    A known endpoint is re-pointed at the caller with fresh keys, since one
    endpoint always maps to exactly one physical device.
    """
    with SessionLocal() as s:
        row = s.execute(select(PushSubscription).where(PushSubscription.endpoint == endpoint)).scalar_one_or_none()
        created = row is None
        if row is None:
            row = PushSubscription(user_id=user_id, endpoint=endpoint)
            s.add(row)
        row.user_id = user_id
        row.p256dh = p256dh
        row.auth = auth
        s.commit()
        return created


def list_subscriptions(user_id: str) -> List[DeviceSubscription]:
    with SessionLocal() as s:
        rows = s.execute(
            select(PushSubscription).where(PushSubscription.user_id == user_id).order_by(PushSubscription.id)
        ).scalars().all()
        return [_subscription(r) for r in rows]


def delete_subscription(subscription_id: int) -> bool:
    with SessionLocal() as s:
        result = s.execute(delete(PushSubscription).where(PushSubscription.id == subscription_id))
        s.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Reminders

def users_to_remind(now: Optional[datetime] = None) -> List[Tuple[str, str]]:
    """Users whose local reminder hour is now and who still owe today's puzzle.

    Returns (user_id, reason) pairs, reason being "set" (no puzzle sent to the
    partner yet) or "solve" (received puzzle not finished). The query is
    re-evaluated on every sweep, so users who have since acted drop out.
    """
    with SessionLocal() as s:
        profiles = s.execute(
            select(Profile).where(Profile.partner_id.is_not(None)).order_by(Profile.id)
        ).scalars().all()
        candidates = [(p.id, p.partner_id, p.timezone) for p in profiles]

    pending: List[Tuple[str, str]] = []
    for user_id, partner_id, tz_name in candidates:
        local = local_now(tz_name, now)
        if local.hour != REMINDER_HOUR:
            continue
        today = local.date().isoformat()
        if find_puzzle(today, setter_id=user_id, solver_id=partner_id) is None:
            pending.append((user_id, "set"))
            continue
        received = find_puzzle(today, solver_id=user_id)
        if received is not None and play_status(received) == "playing":
            pending.append((user_id, "solve"))
    return pending


# ---------------------------------------------------------------------------
# Favorites

def add_favorite(user_id: str, puzzle_id: str) -> bool:
    with SessionLocal() as s:
        s.add(Favorite(user_id=user_id, puzzle_id=puzzle_id))
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            return False
        return True


def remove_favorite(user_id: str, puzzle_id: str) -> bool:
    with SessionLocal() as s:
        result = s.execute(delete(Favorite).where(Favorite.user_id == user_id, Favorite.puzzle_id == puzzle_id))
        s.commit()
        return result.rowcount > 0


def favorite_puzzles(user_id: str) -> List[PuzzleState]:
    with SessionLocal() as s:
        ids = s.execute(select(Favorite.puzzle_id).where(Favorite.user_id == user_id)).scalars().all()
    return list_puzzles(list(ids))


def list_favorites(user_id: str) -> Dict[str, List[PuzzleState]]:
    """Favorited puzzles split by the user's side of them, newest date first."""
    puzzles = favorite_puzzles(user_id)
    return {
        "received": [p for p in puzzles if p.solver_id == user_id],
        "sent": [p for p in puzzles if p.setter_id == user_id],
    }
