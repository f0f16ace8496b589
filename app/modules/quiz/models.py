"""Pydantic models for live quiz sessions.

Read models returned by the session services and used directly as API response
models. ORM rows live under app.core.db.schemas.quiz; these are built from them
with ``model_validate`` (``from_attributes``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.db.schemas.quiz import QuestionType, SessionStatus


class QuizSettings(BaseModel):
    """Per-quiz switches stored as JSON on the quiz row."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    leaderboard_enabled: bool = Field(default=True, alias="leaderboardEnabled")
    participation_enabled: bool = Field(default=True, alias="participationEnabled")
    default_timer_seconds: Optional[int] = Field(
        default=None, alias="defaultTimerSeconds"
    )

    @classmethod
    def from_raw(cls, raw: Optional[dict]) -> "QuizSettings":
        return cls.model_validate(raw or {})


class QuizSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    settings: dict = Field(default_factory=dict)


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quiz_id: int
    host_id: int
    room_code: str
    status: SessionStatus
    current_question_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionWithQuiz(SessionRead):
    quiz: QuizSummary


class SessionHandle(BaseModel):
    """Result of create/restart: the session and whether it was reused."""

    session: SessionRead
    is_existing: bool = False


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    name: str
    score: int = 0
    joined_at: Optional[datetime] = None


class LeaderboardEntry(BaseModel):
    rank: int
    participant_id: int
    name: str
    score: int


class OptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    text: str
    is_correct: bool
    order_index: int


class PublicOption(BaseModel):
    """Option as shown to participants: no correctness flag."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    text: str
    order_index: int


class PublicQuestion(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: QuestionType
    text: str
    timer_seconds: Optional[int] = None
    order_index: int
    options: list[PublicOption] = Field(default_factory=list)


class SubmissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    participant_id: int
    question_id: int
    option_id: int
    is_correct: bool
    submitted_at: Optional[datetime] = None
    option: Optional[OptionRead] = None


class SubmitResult(BaseModel):
    success: bool = True
    count: int


class OptionTally(BaseModel):
    option_id: int
    count: int


class ScoreReport(BaseModel):
    """Outcome of one scoring run."""

    session_id: int
    scores: dict[int, int] = Field(default_factory=dict)
    failed_participant_ids: list[int] = Field(default_factory=list)
    total_questions: int = 0


class SessionCompletion(BaseModel):
    session: SessionRead
    report: ScoreReport


class FeedEvent(BaseModel):
    """Typed envelope for change-feed notifications."""

    event: str
    table: str
    new: dict = Field(default_factory=dict)
