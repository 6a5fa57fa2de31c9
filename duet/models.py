# Pydantic models and data structures for API IO.

from __future__ import annotations

import base64
import binascii
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from .game import KeyStatus, PlayStatus, Role, UnlockStatus, Verdict, normalize_word


class GuessRequest(BaseModel):
    guess: str = Field(..., description="5-letter guess")

    @field_validator("guess")
    @classmethod
    def validate_guess(cls, v: str) -> str:
        w = normalize_word(v)
        if w is None:
            raise ValueError("guess must be a 5-letter word")
        return w


class CreatePuzzleRequest(BaseModel):
    target_word: str = Field(..., description="Word the partner has to find")
    secret_message: str = Field(..., min_length=1, max_length=2000)
    hint: Optional[str] = Field(None, max_length=64)
    date: Optional[str] = Field(None, description="ISO date; defaults to today in the setter's timezone")

    @field_validator("target_word")
    @classmethod
    def validate_target(cls, v: str) -> str:
        w = normalize_word(v)
        if w is None:
            raise ValueError("target word must be exactly 5 letters")
        return w

    @field_validator("hint")
    @classmethod
    def strip_hint(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class GuessFeedback(BaseModel):
    guess: str
    marks: List[Verdict]


class PuzzleStateResponse(BaseModel):
    id: str
    date: str
    setter_id: str
    solver_id: str
    role: Role
    hint: Optional[str] = None
    guesses: List[GuessFeedback]
    status: PlayStatus
    unlock_status: UnlockStatus
    is_solved: bool
    message_requested: bool
    message_revealed: bool
    message_viewed: bool
    # Withheld from the solver until the puzzle is over
    target_word: Optional[str] = None
    secret_message: Optional[str] = None
    keyboard: Dict[str, KeyStatus]


class TransitionResponse(BaseModel):
    accepted: bool
    puzzle: PuzzleStateResponse
    feedback: Optional[GuessFeedback] = None


class DeviceRegistration(BaseModel):
    endpoint: str = Field(..., min_length=1)
    p256dh: str = Field(..., description="base64 encoded public key of the device")
    auth: str = Field(..., description="base64 encoded auth secret of the device")
    timezone: Optional[str] = Field(None, description="IANA timezone resolved on the device")

    @field_validator("p256dh", "auth")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v + "=" * (-len(v) % 4), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("must be base64 encoded")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v


class NotifyRequest(BaseModel):
    target_user_id: str
    title: str = Field(..., max_length=120)
    body: str = Field(..., max_length=500)


class FavoritesResponse(BaseModel):
    received: List[PuzzleStateResponse]
    sent: List[PuzzleStateResponse]


class SweepResponse(BaseModel):
    reminded: int
    users: List[str]


class Acknowledged(BaseModel):
    ok: Literal[True] = True
    message: Optional[str] = None
