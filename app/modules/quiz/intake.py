"""Answer intake for live sessions.

A participant answers each question once. One submit call writes an Answer
header plus one Submission row per selected option inside a single
transaction: either every row lands or none does. The header is unique per
(session, participant, question), so of two racing submits only one commits,
whatever options each picked.
"""

from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.db.schemas.quiz import (
    Answer,
    Option,
    Participant,
    Question,
    QuizSession,
    SessionStatus,
    Submission,
)
from app.core.logging import get_logger, room_logger
from app.modules.quiz.errors import (
    AlreadySubmittedError,
    InvalidStateError,
    NotFoundError,
    QuizValidationError,
    StoreFailureError,
)
from app.modules.quiz.feed import INSERT, ChangeFeed
from app.modules.quiz.models import OptionTally, SubmissionRead, SubmitResult
from app.modules.quiz.store import store_guard

logger = get_logger(__name__)


def distinct_option_ids(option_ids: Optional[Iterable[int]]) -> list[int]:
    """Validate the selection and drop repeats, keeping first-seen order."""
    if option_ids is None or isinstance(option_ids, (str, bytes)):
        raise QuizValidationError("Option ids must be a list")
    seen: list[int] = []
    for raw in option_ids:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise QuizValidationError(f"Invalid option id: {raw!r}")
        if raw not in seen:
            seen.append(raw)
    if not seen:
        raise QuizValidationError("Select at least one option")
    return seen


class AnswerIntake:
    def __init__(self, session: AsyncSession, feed: ChangeFeed):
        self.session = session
        self.feed = feed

    async def _already_answered(
        self, session_id: int, participant_id: int, question_id: int
    ) -> bool:
        found = await self.session.execute(
            select(Answer.id)
            .where(
                Answer.session_id == session_id,
                Answer.participant_id == participant_id,
                Answer.question_id == question_id,
            )
            .limit(1)
        )
        return found.scalar_one_or_none() is not None

    async def _existing_option_ids(self, option_ids: list[int]) -> set[int]:
        rows = await self.session.execute(
            select(Option.id).where(Option.id.in_(option_ids))
        )
        return set(rows.scalars().all())

    @store_guard("record answer")
    async def submit(
        self,
        session_id: int,
        participant_id: int,
        question_id: int,
        option_ids: Iterable[int],
    ) -> SubmitResult:
        selected = distinct_option_ids(option_ids)

        qs = await self.session.get(QuizSession, session_id)
        if qs is None:
            raise NotFoundError("Session not found")
        log = room_logger(logger, qs.room_code, role="participant")
        if qs.status != SessionStatus.LIVE:
            raise InvalidStateError("Session is not live")

        participant = await self.session.get(Participant, participant_id)
        if participant is None or participant.session_id != qs.id:
            raise NotFoundError("Participant not found in this session")

        question = (
            await self.session.execute(
                select(Question)
                .options(selectinload(Question.options))
                .where(Question.id == question_id)
            )
        ).scalar_one_or_none()
        if question is None or question.quiz_id != qs.quiz_id:
            raise NotFoundError("Question not found")
        if qs.current_question_id != question.id:
            raise InvalidStateError("Question is not currently active")

        if await self._already_answered(qs.id, participant.id, question.id):
            log.info(
                "Participant %s re-submitted question %s; rejected",
                participant.id,
                question.id,
            )
            raise AlreadySubmittedError("Already submitted answer for this question")

        known = await self._existing_option_ids(selected)
        missing = [oid for oid in selected if oid not in known]
        if missing:
            raise NotFoundError(f"Unknown option ids: {missing}")

        # Options from another question are recorded as incorrect, not rejected
        correct_ids = {o.id for o in question.options if o.is_correct}
        rows = [
            Submission(
                session_id=qs.id,
                participant_id=participant.id,
                question_id=question.id,
                option_id=oid,
                is_correct=oid in correct_ids,
            )
            for oid in selected
        ]
        answer = Answer(
            session_id=qs.id,
            participant_id=participant.id,
            question_id=question.id,
            submissions=rows,
        )

        try:
            self.session.add(answer)
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if await self._already_answered(session_id, participant_id, question_id):
                log.info(
                    "Concurrent submit for participant %s question %s lost the race",
                    participant_id,
                    question_id,
                )
                raise AlreadySubmittedError(
                    "Already submitted answer for this question"
                ) from e
            log.error("Submission insert rejected by the store: %s", e)
            raise StoreFailureError("Could not record answer") from e

        log.info(
            "Participant %s answered question %s with %d option(s)",
            participant_id,
            question_id,
            len(rows),
        )
        for row in rows:
            # built by hand: touching row.option would lazy-load outside a greenlet
            self.feed.publish(
                INSERT,
                "submissions",
                {
                    "id": row.id,
                    "session_id": row.session_id,
                    "participant_id": row.participant_id,
                    "question_id": row.question_id,
                    "option_id": row.option_id,
                    "is_correct": row.is_correct,
                    "submitted_at": (
                        row.submitted_at.isoformat() if row.submitted_at else None
                    ),
                },
            )
        return SubmitResult(success=True, count=len(rows))

    @store_guard("list submissions")
    async def list_submissions(
        self, session_id: int, question_id: int
    ) -> list[SubmissionRead]:
        if await self.session.get(QuizSession, session_id) is None:
            raise NotFoundError("Session not found")
        rows = await self.session.execute(
            select(Submission)
            .options(selectinload(Submission.option))
            .where(
                Submission.session_id == session_id,
                Submission.question_id == question_id,
            )
            .order_by(Submission.submitted_at, Submission.id)
        )
        return [SubmissionRead.model_validate(s) for s in rows.scalars().all()]

    @store_guard("tally submissions")
    async def tally(self, session_id: int, question_id: int) -> list[OptionTally]:
        """Votes per option of the question, zero-filled, in option order."""
        if await self.session.get(QuizSession, session_id) is None:
            raise NotFoundError("Session not found")
        question = (
            await self.session.execute(
                select(Question)
                .options(selectinload(Question.options))
                .where(Question.id == question_id)
            )
        ).scalar_one_or_none()
        if question is None:
            raise NotFoundError("Question not found")
        counts = dict(
            (
                await self.session.execute(
                    select(Submission.option_id, func.count(Submission.id))
                    .where(
                        Submission.session_id == session_id,
                        Submission.question_id == question_id,
                    )
                    .group_by(Submission.option_id)
                )
            ).all()
        )
        return [
            OptionTally(option_id=o.id, count=int(counts.get(o.id, 0)))
            for o in question.options
        ]
