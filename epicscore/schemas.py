"""Pydantic request/response schemas for the EpicScore API."""
from __future__ import annotations

import uuid

from pydantic import BaseModel, field_validator


# ---------------------------------------------------------------------------
# Chat gateway
# ---------------------------------------------------------------------------


class ChatUser(BaseModel):
    handle: str | None = None
    first_name: str = ""


class CommandIn(BaseModel):
    user: ChatUser
    command: str
    args: str = ""

    @field_validator("command")
    @classmethod
    def command_must_be_word(cls, v: str) -> str:
        v = v.strip()
        if not v.lstrip("/"):
            raise ValueError("command must not be empty")
        return v


class TextIn(BaseModel):
    user: ChatUser
    text: str


class ClickIn(BaseModel):
    user: ChatUser
    token: str


class ChoiceOut(BaseModel):
    label: str
    token: str


class ReplyOut(BaseModel):
    text: str
    choices: list[list[ChoiceOut]] = []


class RepliesOut(BaseModel):
    replies: list[ReplyOut]


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class TeamOut(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    member_count: int


class ParticipantOut(BaseModel):
    id: uuid.UUID
    handle: str
    first_name: str
    last_name: str
    weight: int
    roles: list[str] = []
    teams: list[str] = []


class EpicOut(BaseModel):
    id: uuid.UUID
    number: str
    name: str
    description: str
    team_id: uuid.UUID
    team: str | None = None
    status: str
    final_score: float | None = None


class RiskOut(BaseModel):
    id: uuid.UUID
    epic_id: uuid.UUID
    description: str
    status: str
    weighted_score: float | None = None
    coefficient: float | None = None


class RoleScoreOut(BaseModel):
    role: str
    weighted_avg: float


class EpicResultsOut(EpicOut):
    role_scores: list[RoleScoreOut] = []
    risks: list[RiskOut] = []


class MemberRef(BaseModel):
    id: uuid.UUID
    handle: str
    name: str


class RiskStatusOut(RiskOut):
    missing: list[MemberRef] = []


class EpicStatusOut(EpicOut):
    member_count: int
    missing_effort: list[MemberRef] = []
    risks: list[RiskStatusOut] = []


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


class EffortIn(BaseModel):
    user: str
    value: int
    role: str | None = None


class RiskAssessmentIn(BaseModel):
    user: str
    probability: int
    impact: int


class CompletionOut(BaseModel):
    outcome: str
    target_id: uuid.UUID
    score: float | None = None
    cascade: CompletionOut | None = None


class SubmissionOut(BaseModel):
    created: bool
    completion: CompletionOut
