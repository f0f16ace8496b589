from __future__ import annotations

from pydantic import BaseModel, Field

from app.modules.quiz.models import (
    OptionTally,
    ParticipantRead,
    ScoreReport,
    SessionRead,
    SubmissionRead,
)


class JoinSessionRequest(BaseModel):
    display_name: str = Field(..., description="Name shown on the leaderboard")


class JoinSessionResponse(BaseModel):
    participant: ParticipantRead
    feed_url: str


class CreateSessionResponse(BaseModel):
    session: SessionRead
    is_existing: bool
    feed_url: str


class CompleteSessionResponse(BaseModel):
    session: SessionRead
    report: ScoreReport
    participants: list[ParticipantRead] = Field(default_factory=list)


class SubmitAnswerRequest(BaseModel):
    participant_id: int
    question_id: int
    option_ids: list[int] = Field(default_factory=list)


class QuestionSubmissionsResponse(BaseModel):
    submissions: list[SubmissionRead] = Field(default_factory=list)
    tally: list[OptionTally] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    kind: str
    detail: str
