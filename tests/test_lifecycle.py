import re

import pytest

from app.core.db.schemas.quiz import QuestionType, SessionStatus
from app.modules.quiz import lifecycle as lifecycle_module
from app.modules.quiz.errors import (
    InvalidStateError,
    NotFoundError,
    QuizValidationError,
    StoreFailureError,
    UnauthorizedError,
)
from app.modules.quiz.intake import AnswerIntake
from app.modules.quiz.lifecycle import SessionLifecycleManager, can_transition
from tests.factories import make_quiz, option_ids


@pytest.fixture
def lifecycle(session, feed):
    return SessionLifecycleManager(session, feed)


class TestCreate:
    async def test_new_session_is_waiting_with_room_code(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        assert handle.is_existing is False
        assert handle.session.status == SessionStatus.WAITING
        assert handle.session.current_question_id is None
        assert handle.session.host_id == host.id
        assert re.fullmatch(r"[A-Z0-9]{6}", handle.session.room_code)

    async def test_create_twice_resumes_same_session(self, lifecycle, host, quiz):
        first = await lifecycle.create(quiz.id, host.id)
        second = await lifecycle.create(quiz.id, host.id)

        assert second.is_existing is True
        assert second.session.id == first.session.id
        assert second.session.room_code == first.session.room_code

    async def test_create_resumes_live_session(self, lifecycle, host, quiz):
        first = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(first.session.id, host.id)

        again = await lifecycle.create(quiz.id, host.id)

        assert again.is_existing is True
        assert again.session.id == first.session.id
        assert again.session.status == SessionStatus.LIVE

    async def test_anonymous_caller_is_rejected(self, lifecycle, quiz):
        with pytest.raises(UnauthorizedError):
            await lifecycle.create(quiz.id, None)

    async def test_other_users_quiz_is_rejected(self, lifecycle, other_user, quiz):
        with pytest.raises(UnauthorizedError):
            await lifecycle.create(quiz.id, other_user.id)

    async def test_unknown_quiz(self, lifecycle, host):
        with pytest.raises(NotFoundError):
            await lifecycle.create(9999, host.id)

    async def test_room_code_collision_regenerates(
        self, session, lifecycle, host, quiz, monkeypatch
    ):
        codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        monkeypatch.setattr(
            lifecycle_module, "generate_room_code", lambda length: next(codes)
        )
        other_quiz = await make_quiz(
            session, host, [(QuestionType.SINGLE, [("A", True)])]
        )

        first = await lifecycle.create(quiz.id, host.id)
        second = await lifecycle.create(other_quiz.id, host.id)

        assert first.session.room_code == "AAAAAA"
        assert second.session.room_code == "BBBBBB"

    async def test_room_code_attempts_exhausted(
        self, session, feed, host, quiz, monkeypatch
    ):
        monkeypatch.setattr(
            lifecycle_module, "generate_room_code", lambda length: "ZZZZZZ"
        )
        other_quiz = await make_quiz(
            session, host, [(QuestionType.SINGLE, [("A", True)])]
        )
        manager = SessionLifecycleManager(session, feed, room_code_attempts=3)
        await manager.create(quiz.id, host.id)

        with pytest.raises(StoreFailureError):
            await manager.create(other_quiz.id, host.id)


class TestTransitions:
    async def test_start_sets_first_question_by_order_index(
        self, session, lifecycle, host
    ):
        quiz = await make_quiz(
            session,
            host,
            [
                (QuestionType.SINGLE, [("A", True)]),
                (QuestionType.SINGLE, [("A", True)]),
            ],
            order=[5, 1],
        )
        handle = await lifecycle.create(quiz.id, host.id)

        live = await lifecycle.start(handle.session.id, host.id)

        assert live.status == SessionStatus.LIVE
        assert live.current_question_id == quiz.questions[1].id

    async def test_start_requires_host(self, lifecycle, host, other_user, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        with pytest.raises(UnauthorizedError):
            await lifecycle.start(handle.session.id, other_user.id)
        with pytest.raises(UnauthorizedError):
            await lifecycle.start(handle.session.id, None)

        fetched = await lifecycle.get_by_id(handle.session.id)
        assert fetched.status == SessionStatus.WAITING

    async def test_start_without_questions(self, session, lifecycle, host):
        empty = await make_quiz(session, host, [])
        handle = await lifecycle.create(empty.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.start(handle.session.id, host.id)

    async def test_start_twice(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(handle.session.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.start(handle.session.id, host.id)

    async def test_advance_walks_questions_until_last(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(handle.session.id, host.id)

        moved = await lifecycle.advance(handle.session.id, host.id)

        assert moved.current_question_id == quiz.questions[1].id
        with pytest.raises(InvalidStateError):
            await lifecycle.advance(handle.session.id, host.id)

    async def test_advance_requires_live(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.advance(handle.session.id, host.id)

    async def test_complete_requires_live(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.complete(handle.session.id, host.id)

    async def test_ended_session_cannot_move(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        sid = handle.session.id
        await lifecycle.start(sid, host.id)
        await lifecycle.complete(sid, host.id)

        for op in (lifecycle.start, lifecycle.advance, lifecycle.complete):
            with pytest.raises(InvalidStateError):
                await op(sid, host.id)
        assert (await lifecycle.get_by_id(sid)).status == SessionStatus.ENDED

    async def test_restart_after_end_opens_new_round(self, lifecycle, host, quiz):
        first = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(first.session.id, host.id)
        await lifecycle.complete(first.session.id, host.id)

        fresh = await lifecycle.restart(quiz.id, host.id)

        assert fresh.is_existing is False
        assert fresh.session.id != first.session.id
        assert fresh.session.status == SessionStatus.WAITING
        assert (await lifecycle.get_by_id(first.session.id)).status == SessionStatus.ENDED

    def test_transition_table_only_moves_forward(self):
        assert can_transition(SessionStatus.WAITING, SessionStatus.LIVE)
        assert can_transition(SessionStatus.LIVE, SessionStatus.ENDED)
        assert not can_transition(SessionStatus.LIVE, SessionStatus.WAITING)
        assert not can_transition(SessionStatus.ENDED, SessionStatus.LIVE)
        assert not can_transition(SessionStatus.WAITING, SessionStatus.ENDED)


class TestLookups:
    async def test_room_code_lookup_is_case_insensitive(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        code = handle.session.room_code

        upper = await lifecycle.get_by_room_code(code.upper())
        lower = await lifecycle.get_by_room_code(f"  {code.lower()} ")

        assert upper.id == lower.id == handle.session.id
        assert upper.quiz.id == quiz.id

    async def test_unknown_room_code(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.get_by_room_code("NOPE42")

    async def test_unknown_session_id(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.get_by_id(12345)

    async def test_current_question_hides_correctness(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(handle.session.id, host.id)

        question = await lifecycle.current_question(handle.session.id)

        assert question.id == quiz.questions[0].id
        assert [o.text for o in question.options] == ["A", "B", "C"]
        assert "is_correct" not in question.options[0].model_dump()

    async def test_current_question_needs_live_session(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.current_question(handle.session.id)


class TestParticipants:
    async def test_join_creates_zero_score_participant(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        p = await lifecycle.join(handle.session.id, "  Ada  ")

        assert p.name == "Ada"
        assert p.score == 0
        assert p.session_id == handle.session.id

    async def test_names_need_not_be_unique(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        a = await lifecycle.join(handle.session.id, "Sam")
        b = await lifecycle.join(handle.session.id, "Sam")

        assert a.id != b.id

    async def test_blank_name_is_rejected(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)

        with pytest.raises(QuizValidationError):
            await lifecycle.join(handle.session.id, "   ")

    async def test_cannot_join_ended_session(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        await lifecycle.start(handle.session.id, host.id)
        await lifecycle.complete(handle.session.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.join(handle.session.id, "Late")

    async def test_participation_disabled(self, session, lifecycle, host):
        closed = await make_quiz(
            session,
            host,
            [(QuestionType.SINGLE, [("A", True)])],
            settings={"participationEnabled": False},
        )
        handle = await lifecycle.create(closed.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.join(handle.session.id, "Ada")

    async def test_join_unknown_session(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.join(4242, "Ada")

    async def test_participants_sorted_by_score(self, session, feed, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        sid = handle.session.id
        await lifecycle.start(sid, host.id)
        low = await lifecycle.join(sid, "Low")
        high = await lifecycle.join(sid, "High")
        q1 = quiz.questions[0]
        await AnswerIntake(session, feed).submit(sid, high.id, q1.id, option_ids(q1, "B"))
        await lifecycle.complete(sid, host.id)

        ranked = await lifecycle.list_participants(sid)

        assert [p.id for p in ranked] == [high.id, low.id]
        assert [p.score for p in ranked] == [1, 0]

    async def test_leaderboard_ties_share_rank(self, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        sid = handle.session.id
        await lifecycle.join(sid, "One")
        await lifecycle.join(sid, "Two")

        board = await lifecycle.leaderboard(sid)

        assert [e.rank for e in board] == [1, 1]

    async def test_leaderboard_disabled(self, session, lifecycle, host):
        private = await make_quiz(
            session,
            host,
            [(QuestionType.SINGLE, [("A", True)])],
            settings={"leaderboardEnabled": False},
        )
        handle = await lifecycle.create(private.id, host.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.leaderboard(handle.session.id)


class TestFeedNotifications:
    async def test_start_publishes_session_update(self, feed, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        sub = feed.subscribe("sessions", id=handle.session.id)

        await lifecycle.start(handle.session.id, host.id)

        event = await sub.get(timeout=1)
        assert event.event == "UPDATE"
        assert event.new["status"] == "live"
        assert event.new["current_question_id"] == quiz.questions[0].id

    async def test_join_publishes_participant_insert(self, feed, lifecycle, host, quiz):
        handle = await lifecycle.create(quiz.id, host.id)
        sub = feed.subscribe("participants", session_id=handle.session.id)

        p = await lifecycle.join(handle.session.id, "Ada")

        event = await sub.get(timeout=1)
        assert event.event == "INSERT"
        assert event.new["id"] == p.id
