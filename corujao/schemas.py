from __future__ import annotations

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)


class RankingUpdate(BaseModel):
    nick: str = Field(..., min_length=1, max_length=64)
    points: int


class PostMessageRequest(BaseModel):
    text: str
    room: str | None = None
