"""Session lifecycle: waiting -> live -> ended.

One ``SessionLifecycleManager`` is built per request around that request's
``AsyncSession`` and the application's ``ChangeFeed``. Host operations check the
caller against the session's host (or the quiz owner for create/restart);
participant-facing lookups and joins are anonymous.
"""

from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.db.schemas.quiz import (
    Participant,
    Question,
    Quiz,
    QuizSession,
    SessionStatus,
)
from app.core.logging import get_logger, room_logger
from app.modules.quiz.errors import (
    InvalidStateError,
    NotFoundError,
    QuizValidationError,
    StoreFailureError,
    UnauthorizedError,
)
from app.modules.quiz.feed import INSERT, UPDATE, ChangeFeed
from app.modules.quiz.models import (
    LeaderboardEntry,
    ParticipantRead,
    PublicQuestion,
    QuizSettings,
    SessionCompletion,
    SessionHandle,
    SessionRead,
    SessionWithQuiz,
)
from app.modules.quiz.room_codes import generate_room_code, normalize_room_code
from app.modules.quiz.scoring import ScoringEngine
from app.modules.quiz.store import store_guard

logger = get_logger(__name__)

# Allowed forward moves; LIVE -> LIVE is question advancement
_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.WAITING: {SessionStatus.LIVE},
    SessionStatus.LIVE: {SessionStatus.LIVE, SessionStatus.ENDED},
    SessionStatus.ENDED: set(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in _TRANSITIONS[current]


class SessionLifecycleManager:
    def __init__(
        self,
        session: AsyncSession,
        feed: ChangeFeed,
        *,
        room_code_length: Optional[int] = None,
        room_code_attempts: Optional[int] = None,
    ):
        self.session = session
        self.feed = feed
        self.room_code_length = room_code_length or settings.quiz.room_code_length
        self.room_code_attempts = max(
            1, room_code_attempts or settings.quiz.room_code_attempts
        )

    # Lookups ------------------------------------------------------------
    async def _load_session(
        self, session_id: int, *, with_quiz: bool = False
    ) -> QuizSession:
        stmt = select(QuizSession).where(QuizSession.id == session_id)
        if with_quiz:
            stmt = stmt.options(selectinload(QuizSession.quiz))
        qs = (await self.session.execute(stmt)).scalar_one_or_none()
        if qs is None:
            raise NotFoundError("Session not found")
        return qs

    async def _load_owned_quiz(self, quiz_id: int, caller_id: Optional[int]) -> Quiz:
        if caller_id is None:
            raise UnauthorizedError("Sign in to host a quiz")
        quiz = (
            await self.session.execute(select(Quiz).where(Quiz.id == quiz_id))
        ).scalar_one_or_none()
        if quiz is None:
            raise NotFoundError("Quiz not found")
        if quiz.owner_id != caller_id:
            raise UnauthorizedError("Quiz not found or unauthorized")
        return quiz

    @staticmethod
    def _require_host(qs: QuizSession, caller_id: Optional[int]) -> None:
        if caller_id is None or qs.host_id != caller_id:
            raise UnauthorizedError("Session not found or unauthorized")

    async def _question_ids(self, quiz_id: int) -> list[int]:
        rows = await self.session.execute(
            select(Question.id)
            .where(Question.quiz_id == quiz_id)
            .order_by(Question.order_index, Question.id)
        )
        return list(rows.scalars().all())

    async def _find_open_session(self, quiz_id: int) -> Optional[QuizSession]:
        # live wins over waiting; newest first within a status
        for status in (SessionStatus.LIVE, SessionStatus.WAITING):
            qs = (
                await self.session.execute(
                    select(QuizSession)
                    .where(
                        QuizSession.quiz_id == quiz_id,
                        QuizSession.status == status,
                    )
                    .order_by(QuizSession.created_at.desc(), QuizSession.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if qs is not None:
                return qs
        return None

    async def _room_code_taken(self, code: str) -> bool:
        found = await self.session.execute(
            select(QuizSession.id).where(QuizSession.room_code == code).limit(1)
        )
        return found.scalar_one_or_none() is not None

    # Writes -------------------------------------------------------------
    async def _commit(self) -> None:
        await self.session.commit()

    def _publish_session(self, qs: QuizSession, event: str = UPDATE) -> None:
        self.feed.publish(
            event, "sessions", SessionRead.model_validate(qs).model_dump(mode="json")
        )

    async def _insert_session(self, quiz: Quiz, host_id: int) -> QuizSession:
        for attempt in range(1, self.room_code_attempts + 1):
            code = generate_room_code(self.room_code_length)
            if await self._room_code_taken(code):
                logger.info("Room code collision on attempt %d, regenerating", attempt)
                continue
            qs = QuizSession(
                quiz_id=quiz.id,
                host_id=host_id,
                room_code=code,
                status=SessionStatus.WAITING,
                current_question_id=None,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(qs)
            except IntegrityError:
                # lost a race for the same code
                logger.info("Room code %s claimed concurrently, regenerating", code)
                continue
            return qs
        raise StoreFailureError("Could not allocate a unique room code")

    def _move(self, qs: QuizSession, target: SessionStatus) -> None:
        if not can_transition(qs.status, target):
            raise InvalidStateError(
                f"Cannot move session from {qs.status.value} to {target.value}"
            )
        qs.status = target

    # Host operations ----------------------------------------------------
    @store_guard("create session")
    async def create(self, quiz_id: int, caller_id: Optional[int]) -> SessionHandle:
        """Find-or-create the open session for a quiz.

        Reloading the host view calls this every time, so an existing live or
        waiting session is handed back untouched instead of a duplicate.
        """
        quiz = await self._load_owned_quiz(quiz_id, caller_id)
        existing = await self._find_open_session(quiz.id)
        if existing is not None:
            room_logger(logger, existing.room_code, "host").info(
                "Resuming %s session %s", existing.status.value, existing.id
            )
            return SessionHandle(
                session=SessionRead.model_validate(existing), is_existing=True
            )

        qs = await self._insert_session(quiz, caller_id)  # type: ignore[arg-type]
        await self._commit()
        await self.session.refresh(qs)
        room_logger(logger, qs.room_code, "host").info(
            "Created session %s for quiz %s", qs.id, quiz.id
        )
        self._publish_session(qs, INSERT)
        return SessionHandle(session=SessionRead.model_validate(qs), is_existing=False)

    async def restart(self, quiz_id: int, caller_id: Optional[int]) -> SessionHandle:
        """New round for a quiz whose last session ended; same rules as create."""
        return await self.create(quiz_id, caller_id)

    @store_guard("start session")
    async def start(self, session_id: int, caller_id: Optional[int]) -> SessionRead:
        qs = await self._load_session(session_id)
        self._require_host(qs, caller_id)
        if qs.status != SessionStatus.WAITING:
            raise InvalidStateError(f"Session is already {qs.status.value}")
        question_ids = await self._question_ids(qs.quiz_id)
        if not question_ids:
            raise InvalidStateError("Quiz has no questions")

        self._move(qs, SessionStatus.LIVE)
        qs.current_question_id = question_ids[0]
        await self._commit()
        await self.session.refresh(qs)
        room_logger(logger, qs.room_code, "host").info(
            "Session %s is live on question %s", qs.id, qs.current_question_id
        )
        self._publish_session(qs)
        return SessionRead.model_validate(qs)

    @store_guard("advance question")
    async def advance(self, session_id: int, caller_id: Optional[int]) -> SessionRead:
        qs = await self._load_session(session_id)
        self._require_host(qs, caller_id)
        if qs.status != SessionStatus.LIVE:
            raise InvalidStateError(f"Session is {qs.status.value}, not live")
        question_ids = await self._question_ids(qs.quiz_id)
        if qs.current_question_id not in question_ids:
            raise InvalidStateError("Current question is no longer part of the quiz")
        idx = question_ids.index(qs.current_question_id)
        if idx >= len(question_ids) - 1:
            raise InvalidStateError("Already on the last question")

        self._move(qs, SessionStatus.LIVE)
        qs.current_question_id = question_ids[idx + 1]
        await self._commit()
        await self.session.refresh(qs)
        room_logger(logger, qs.room_code, "host").info(
            "Session %s advanced to question %s (%d/%d)",
            qs.id,
            qs.current_question_id,
            idx + 2,
            len(question_ids),
        )
        self._publish_session(qs)
        return SessionRead.model_validate(qs)

    @store_guard("complete session")
    async def complete(
        self, session_id: int, caller_id: Optional[int]
    ) -> SessionCompletion:
        """Score every participant, then end the session.

        The session ends even if some score writes failed; those participants
        are listed in the report. Two concurrent calls may both score; the
        second one fails the status check or rewrites identical scores.
        """
        qs = await self._load_session(session_id)
        self._require_host(qs, caller_id)
        if qs.status != SessionStatus.LIVE:
            raise InvalidStateError(f"Session is {qs.status.value}, not live")

        report = await ScoringEngine(self.session).score_session(qs)
        self._move(qs, SessionStatus.ENDED)
        await self._commit()
        await self.session.refresh(qs)
        room_logger(logger, qs.room_code, "host").info("Session %s ended", qs.id)

        self._publish_session(qs)
        for p in await self._participants(qs.id):
            if p.id in report.scores:
                self.feed.publish(
                    UPDATE,
                    "participants",
                    ParticipantRead.model_validate(p).model_dump(mode="json"),
                )
        return SessionCompletion(session=SessionRead.model_validate(qs), report=report)

    # Anonymous operations -----------------------------------------------
    @store_guard("look up session")
    async def get_by_room_code(self, room_code: str) -> SessionWithQuiz:
        code = normalize_room_code(room_code)
        if not code:
            raise NotFoundError("Room not found")
        qs = (
            await self.session.execute(
                select(QuizSession)
                .options(selectinload(QuizSession.quiz))
                .where(QuizSession.room_code == code)
            )
        ).scalar_one_or_none()
        if qs is None:
            raise NotFoundError("Room not found")
        return SessionWithQuiz.model_validate(qs)

    @store_guard("look up session")
    async def get_by_id(self, session_id: int) -> SessionWithQuiz:
        qs = await self._load_session(session_id, with_quiz=True)
        return SessionWithQuiz.model_validate(qs)

    @store_guard("join session")
    async def join(self, session_id: int, display_name: str) -> ParticipantRead:
        name = (display_name or "").strip()
        if not name:
            raise QuizValidationError("Display name is required")
        max_len = settings.quiz.display_name_max_length
        if len(name) > max_len:
            raise QuizValidationError(
                f"Display name must be at most {max_len} characters"
            )

        qs = await self._load_session(session_id, with_quiz=True)
        if qs.status == SessionStatus.ENDED:
            raise InvalidStateError("This quiz session has already ended")
        if not QuizSettings.from_raw(qs.quiz.settings).participation_enabled:
            raise InvalidStateError("Participation is disabled for this quiz")

        participant = Participant(session_id=qs.id, name=name, score=0)
        self.session.add(participant)
        await self._commit()
        await self.session.refresh(participant)
        room_logger(logger, qs.room_code, "participant").info(
            "Participant %s joined session %s", participant.id, qs.id
        )
        read = ParticipantRead.model_validate(participant)
        self.feed.publish(INSERT, "participants", read.model_dump(mode="json"))
        return read

    async def _participants(self, session_id: int) -> Sequence[Participant]:
        rows = await self.session.execute(
            select(Participant)
            .where(Participant.session_id == session_id)
            .order_by(Participant.score.desc(), Participant.id)
        )
        return rows.scalars().all()

    @store_guard("list participants")
    async def list_participants(self, session_id: int) -> list[ParticipantRead]:
        await self._load_session(session_id)
        return [
            ParticipantRead.model_validate(p)
            for p in await self._participants(session_id)
        ]

    @store_guard("build leaderboard")
    async def leaderboard(self, session_id: int) -> list[LeaderboardEntry]:
        qs = await self._load_session(session_id, with_quiz=True)
        if not QuizSettings.from_raw(qs.quiz.settings).leaderboard_enabled:
            raise InvalidStateError("Leaderboard is disabled for this quiz")

        participants = await self._participants(session_id)
        entries: list[LeaderboardEntry] = []
        for p in participants:
            # competition ranking: ties share a rank, next rank skips
            rank = 1 + sum(1 for other in participants if other.score > p.score)
            entries.append(
                LeaderboardEntry(
                    rank=rank, participant_id=p.id, name=p.name, score=p.score
                )
            )
        return entries

    @store_guard("load current question")
    async def current_question(self, session_id: int) -> PublicQuestion:
        qs = await self._load_session(session_id)
        if qs.status != SessionStatus.LIVE or qs.current_question_id is None:
            raise InvalidStateError("No question is active")
        question = (
            await self.session.execute(
                select(Question)
                .options(selectinload(Question.options))
                .where(Question.id == qs.current_question_id)
            )
        ).scalar_one_or_none()
        if question is None:
            raise NotFoundError("Question not found")
        return PublicQuestion.model_validate(question)
