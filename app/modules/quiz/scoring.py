"""Post-hoc scoring of a finished quiz session.

All-or-nothing per question, no partial credit:

* ``single``: one point iff the participant picked exactly one option and it
  is correct.
* ``multi``: one point iff the participant picked every correct option and
  nothing else.

Questions without any correct option are skipped. A participant's total is the
sum over the quiz's questions, so it always lies in ``[0, len(questions)]``.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Callable, Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.db.schemas.quiz import (
    Participant,
    Question,
    QuestionType,
    QuizSession,
    Submission,
)
from app.core.logging import get_logger, room_logger
from app.modules.quiz.errors import StoreFailureError
from app.modules.quiz.models import ScoreReport

logger = get_logger(__name__)

# (correct picks, incorrect picks, correct options on the question) -> points
ScoringRule = Callable[[int, int, int], int]


def _score_single(correct: int, incorrect: int, correct_options: int) -> int:
    return 1 if correct == 1 and incorrect == 0 else 0


def _score_multi(correct: int, incorrect: int, correct_options: int) -> int:
    return 1 if correct == correct_options and incorrect == 0 else 0


SCORING_RULES: dict[QuestionType, ScoringRule] = {
    QuestionType.SINGLE: _score_single,
    QuestionType.MULTI: _score_multi,
}


def rule_for(question_type: QuestionType) -> ScoringRule:
    return SCORING_RULES[question_type]


def score_answer(
    question_type: QuestionType,
    picks: Iterable[bool],
    correct_options: int,
) -> int:
    """Points for one participant's answer to one question.

    ``picks`` holds the is-correct flag of each submission row the participant
    recorded for the question.
    """
    flags = list(picks)
    if not flags or correct_options == 0:
        return 0
    correct = sum(1 for f in flags if f)
    incorrect = len(flags) - correct
    return rule_for(question_type)(correct, incorrect, correct_options)


class ScoringEngine:
    """Computes and persists participant scores for one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(
        self, quiz_session: QuizSession
    ) -> tuple[Sequence[Question], Sequence[Participant], list[tuple[int, int, bool]]]:
        questions = (
            (
                await self.session.execute(
                    select(Question)
                    .options(selectinload(Question.options))
                    .where(Question.quiz_id == quiz_session.quiz_id)
                    .order_by(Question.order_index, Question.id)
                )
            )
            .scalars()
            .all()
        )
        participants = (
            (
                await self.session.execute(
                    select(Participant)
                    .where(Participant.session_id == quiz_session.id)
                    .order_by(Participant.id)
                )
            )
            .scalars()
            .all()
        )
        rows = await self.session.execute(
            select(
                Submission.participant_id,
                Submission.question_id,
                Submission.is_correct,
            ).where(Submission.session_id == quiz_session.id)
        )
        return questions, participants, [tuple(r) for r in rows.all()]

    def compute(
        self,
        questions: Sequence[Question],
        participants: Sequence[Participant],
        submissions: Iterable[tuple[int, int, bool]],
        room: str = "-",
    ) -> dict[int, int]:
        log = room_logger(logger, room, role="host")
        picks: dict[tuple[int, int], list[bool]] = defaultdict(list)
        for participant_id, question_id, is_correct in submissions:
            picks[(participant_id, question_id)].append(bool(is_correct))

        # Resolve each question's rule inputs once, not per participant
        keys: list[tuple[int, QuestionType, int]] = []
        for q in questions:
            correct_options = sum(1 for o in q.options if o.is_correct)
            if correct_options == 0:
                log.info("Question %s has no correct option; skipped", q.id)
            elif q.type == QuestionType.SINGLE and correct_options > 1:
                log.warning(
                    "Single-choice question %s has %d correct options",
                    q.id,
                    correct_options,
                )
            keys.append((q.id, q.type, correct_options))

        scores: dict[int, int] = {}
        for p in participants:
            scores[p.id] = sum(
                score_answer(qtype, picks.get((p.id, qid), ()), correct_options)
                for qid, qtype, correct_options in keys
            )
        return scores

    async def _write_score(self, participant_id: int, score: int) -> None:
        await self.session.execute(
            update(Participant)
            .where(Participant.id == participant_id)
            .values(score=score)
        )

    async def score_session(self, quiz_session: QuizSession) -> ScoreReport:
        """Recompute every participant's score and write it back.

        Loading failures abort before any write. A failed write for one
        participant is logged and skipped; the rest are still recorded.
        Re-running overwrites with the same values.
        """
        log = room_logger(logger, quiz_session.room_code, role="host")
        try:
            questions, participants, submissions = await self._load(quiz_session)
        except SQLAlchemyError as e:
            log.error("Scoring aborted, could not load session data: %s", e)
            raise StoreFailureError("Could not load questions or participants") from e

        scores = self.compute(
            questions, participants, submissions, room=quiz_session.room_code
        )
        failed: list[int] = []
        for participant_id, score in scores.items():
            try:
                async with self.session.begin_nested():
                    await self._write_score(participant_id, score)
            except SQLAlchemyError as e:
                failed.append(participant_id)
                log.error(
                    "Failed to update score for participant %s: %s", participant_id, e
                )
                continue
            log.debug(
                "Participant %s scored %d/%d", participant_id, score, len(questions)
            )

        log.info(
            "Scored %d participants over %d questions (%d failed)",
            len(scores),
            len(questions),
            len(failed),
        )
        return ScoreReport(
            session_id=quiz_session.id,
            scores={pid: s for pid, s in scores.items() if pid not in failed},
            failed_participant_ids=failed,
            total_questions=len(questions),
        )
