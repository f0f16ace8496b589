import pytest

from app.core.db.schemas.quiz import QuestionType
from app.modules.quiz.errors import (
    AlreadySubmittedError,
    InvalidStateError,
    NotFoundError,
    QuizValidationError,
    StoreFailureError,
)
from app.modules.quiz.intake import AnswerIntake, distinct_option_ids
from app.modules.quiz.lifecycle import SessionLifecycleManager
from tests.factories import count_answers, count_submissions, make_quiz, option_ids


@pytest.fixture
def lifecycle(session, feed):
    return SessionLifecycleManager(session, feed)


@pytest.fixture
def intake(session, feed):
    return AnswerIntake(session, feed)


@pytest.fixture
async def live(lifecycle, host, quiz):
    handle = await lifecycle.create(quiz.id, host.id)
    await lifecycle.start(handle.session.id, host.id)
    return handle.session


@pytest.fixture
async def player(lifecycle, live):
    return await lifecycle.join(live.id, "Ada")


class TestDistinctOptionIds:
    def test_keeps_first_seen_order(self):
        assert distinct_option_ids([3, 1, 3, 2, 1]) == [3, 1, 2]

    @pytest.mark.parametrize("bad", [None, [], "12", [1, "2"], [True]])
    def test_rejects_bad_selections(self, bad):
        with pytest.raises(QuizValidationError):
            distinct_option_ids(bad)


class TestSubmit:
    async def test_single_choice_writes_one_row(self, session, intake, quiz, live, player):
        q1 = quiz.questions[0]

        result = await intake.submit(live.id, player.id, q1.id, option_ids(q1, "B"))

        assert result.success is True
        assert result.count == 1
        assert await count_submissions(session, participant_id=player.id) == 1

    async def test_multi_choice_writes_one_row_per_option(
        self, session, lifecycle, intake, host, quiz, live, player
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]

        result = await intake.submit(
            live.id, player.id, q2.id, option_ids(q2, "A", "B", "C")
        )

        assert result.count == 3
        assert await count_submissions(session, question_id=q2.id) == 3

    async def test_repeated_ids_in_one_call_collapse(
        self, session, lifecycle, intake, host, quiz, live, player
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        a, c = option_ids(q2, "A", "C")

        result = await intake.submit(live.id, player.id, q2.id, [a, c, a])

        assert result.count == 2
        assert await count_submissions(session, question_id=q2.id) == 2

    async def test_second_submit_is_rejected(self, session, intake, quiz, live, player):
        q1 = quiz.questions[0]
        await intake.submit(live.id, player.id, q1.id, option_ids(q1, "A"))

        with pytest.raises(AlreadySubmittedError):
            await intake.submit(live.id, player.id, q1.id, option_ids(q1, "B"))

        assert await count_submissions(session, participant_id=player.id) == 1

    async def test_empty_selection_writes_nothing(self, session, intake, quiz, live, player):
        with pytest.raises(QuizValidationError):
            await intake.submit(live.id, player.id, quiz.questions[0].id, [])

        assert await count_submissions(session) == 0

    async def test_waiting_session_rejects_answers(
        self, session, lifecycle, intake, host, quiz
    ):
        handle = await lifecycle.create(quiz.id, host.id)
        p = await lifecycle.join(handle.session.id, "Early")
        q1 = quiz.questions[0]

        with pytest.raises(InvalidStateError):
            await intake.submit(handle.session.id, p.id, q1.id, option_ids(q1, "B"))

        assert await count_submissions(session) == 0

    async def test_only_current_question_accepts_answers(
        self, intake, quiz, live, player
    ):
        q2 = quiz.questions[1]

        with pytest.raises(InvalidStateError):
            await intake.submit(live.id, player.id, q2.id, option_ids(q2, "A"))

    async def test_option_from_other_question_is_recorded_wrong(
        self, session, intake, quiz, live, player
    ):
        q1, q2 = quiz.questions
        foreign = option_ids(q2, "A")[0]

        await intake.submit(live.id, player.id, q1.id, [foreign])

        rows = await intake.list_submissions(live.id, q1.id)
        assert [(r.option_id, r.is_correct) for r in rows] == [(foreign, False)]

    async def test_unknown_option_id(self, session, intake, quiz, live, player):
        q1 = quiz.questions[0]

        with pytest.raises(NotFoundError):
            await intake.submit(live.id, player.id, q1.id, option_ids(q1, "B") + [99999])

        assert await count_submissions(session) == 0

    async def test_participant_from_another_session(
        self, session, lifecycle, intake, host, other_user, quiz, live
    ):
        elsewhere = await make_quiz(
            session, other_user, [(QuestionType.SINGLE, [("A", True)])]
        )
        other = await lifecycle.create(elsewhere.id, other_user.id)
        stranger = await lifecycle.join(other.session.id, "Stranger")
        q1 = quiz.questions[0]

        with pytest.raises(NotFoundError):
            await intake.submit(live.id, stranger.id, q1.id, option_ids(q1, "B"))

    async def test_unknown_session(self, intake, quiz, player):
        q1 = quiz.questions[0]

        with pytest.raises(NotFoundError):
            await intake.submit(777, player.id, q1.id, option_ids(q1, "B"))


def _miss_first_duplicate_check(monkeypatch):
    """The next duplicate check answers "not yet", as a racing request would see it."""
    original = AnswerIntake._already_answered
    calls = {"n": 0}

    async def stale_check(self, *args):
        calls["n"] += 1
        if calls["n"] == 1:
            return False
        return await original(self, *args)

    monkeypatch.setattr(AnswerIntake, "_already_answered", stale_check)


class TestRacingSubmits:
    async def test_same_option_race_keeps_one_answer(
        self, session, intake, quiz, live, player, monkeypatch
    ):
        q1 = quiz.questions[0]
        b = option_ids(q1, "B")
        q1_id, sid, pid = q1.id, live.id, player.id
        await intake.submit(sid, pid, q1_id, b)
        _miss_first_duplicate_check(monkeypatch)

        with pytest.raises(AlreadySubmittedError):
            await intake.submit(sid, pid, q1_id, b)

        assert await count_submissions(session, participant_id=pid) == 1
        assert await count_answers(session, participant_id=pid) == 1

    async def test_disjoint_option_race_keeps_one_answer(
        self, session, lifecycle, intake, host, quiz, live, player, monkeypatch
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        a, c = option_ids(q2, "A", "C")
        q2_id, sid, pid = q2.id, live.id, player.id
        await intake.submit(sid, pid, q2_id, [a])
        _miss_first_duplicate_check(monkeypatch)

        with pytest.raises(AlreadySubmittedError):
            await intake.submit(sid, pid, q2_id, [c])

        assert await count_submissions(session, participant_id=pid, question_id=q2_id) == 1
        assert await count_submissions(session, option_id=c) == 0

    async def test_losing_batch_writes_none_of_its_options(
        self, session, lifecycle, intake, host, quiz, live, player, monkeypatch
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        a, c = option_ids(q2, "A", "C")
        q2_id, sid, pid = q2.id, live.id, player.id
        await intake.submit(sid, pid, q2_id, [c])
        _miss_first_duplicate_check(monkeypatch)

        with pytest.raises(AlreadySubmittedError):
            await intake.submit(sid, pid, q2_id, [a, c])

        assert await count_submissions(session, option_id=a) == 0
        assert await count_submissions(session, participant_id=pid) == 1


class TestAtomicWrite:
    async def test_failure_on_a_later_row_rolls_back_the_whole_batch(
        self, session, lifecycle, intake, host, quiz, live, player, monkeypatch
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        a = option_ids(q2, "A")[0]
        q2_id, sid, pid = q2.id, live.id, player.id
        vanished = 99999

        async def stale_options(self, ids):
            # the last option is deleted between validation and insert
            return set(ids)

        monkeypatch.setattr(AnswerIntake, "_existing_option_ids", stale_options)

        with pytest.raises(StoreFailureError):
            await intake.submit(sid, pid, q2_id, [a, vanished])

        assert await count_submissions(session, participant_id=pid) == 0
        assert await count_answers(session, participant_id=pid) == 0

    async def test_participant_can_answer_after_a_failed_write(
        self, session, lifecycle, intake, host, quiz, live, player, monkeypatch
    ):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        a, c = option_ids(q2, "A", "C")
        q2_id, sid, pid = q2.id, live.id, player.id

        async def stale_options(self, ids):
            return set(ids)

        monkeypatch.setattr(AnswerIntake, "_existing_option_ids", stale_options)
        with pytest.raises(StoreFailureError):
            await intake.submit(sid, pid, q2_id, [a, 99999])
        monkeypatch.undo()

        result = await intake.submit(sid, pid, q2_id, [a, c])

        assert result.count == 2
        assert await count_answers(session, participant_id=pid) == 1


class TestReadBack:
    async def test_list_submissions_includes_option(self, intake, quiz, live, player):
        q1 = quiz.questions[0]
        await intake.submit(live.id, player.id, q1.id, option_ids(q1, "B"))

        rows = await intake.list_submissions(live.id, q1.id)

        assert len(rows) == 1
        assert rows[0].participant_id == player.id
        assert rows[0].is_correct is True
        assert rows[0].option.text == "B"

    async def test_tally_is_zero_filled(self, lifecycle, intake, quiz, live, player):
        second = await lifecycle.join(live.id, "Grace")
        q1 = quiz.questions[0]
        b = option_ids(q1, "B")
        await intake.submit(live.id, player.id, q1.id, b)
        await intake.submit(live.id, second.id, q1.id, b)

        tally = await intake.tally(live.id, q1.id)

        assert [(t.option_id, t.count) for t in tally] == [
            (o.id, 2 if o.text == "B" else 0) for o in q1.options
        ]

    async def test_submit_publishes_each_row(self, feed, intake, lifecycle, host, quiz, live, player):
        await lifecycle.advance(live.id, host.id)
        q2 = quiz.questions[1]
        sub = feed.subscribe("submissions", session_id=live.id)

        await intake.submit(live.id, player.id, q2.id, option_ids(q2, "A", "C"))

        first = await sub.get(timeout=1)
        second = await sub.get(timeout=1)
        assert {first.new["option_id"], second.new["option_id"]} == set(
            option_ids(q2, "A", "C")
        )
        assert all(e.event == "INSERT" for e in (first, second))

    async def test_submitted_at_comes_from_the_store_clock(
        self, session, feed, intake, quiz, live, player
    ):
        q1 = quiz.questions[0]
        sub = feed.subscribe("submissions", session_id=live.id)

        await intake.submit(live.id, player.id, q1.id, option_ids(q1, "B"))

        published = await sub.get(timeout=1)
        stored = (await intake.list_submissions(live.id, q1.id))[0]
        assert stored.submitted_at is not None
        assert published.new["submitted_at"] == stored.submitted_at.isoformat()
