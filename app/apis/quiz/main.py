from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from app.apis.deps import Intake, Lifecycle, optional_caller_id
from app.apis.quiz.schemas import (
    CompleteSessionResponse,
    CreateSessionResponse,
    ErrorResponse,
    JoinSessionRequest,
    JoinSessionResponse,
    QuestionSubmissionsResponse,
    SubmitAnswerRequest,
)
from app.core.config import settings
from app.core.db.schemas.quiz import QuizSession
from app.core.logging import get_logger, room_logger
from app.modules.quiz.errors import QuizError
from app.modules.quiz.feed import ChangeFeed, Subscription
from app.modules.quiz.models import (
    LeaderboardEntry,
    ParticipantRead,
    PublicQuestion,
    SessionHandle,
    SessionRead,
    SessionWithQuiz,
    SubmitResult,
)


logger = get_logger(__name__)
router = APIRouter()

PREFIX = f"/{settings.app.version}/quiz"
ERRORS = {
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


async def quiz_error_handler(request: Request, exc: QuizError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _feed_url(session_id: int) -> str:
    return f"{PREFIX}/sessions/{session_id}/feed"


def _created(handle: SessionHandle) -> CreateSessionResponse:
    return CreateSessionResponse(
        session=handle.session,
        is_existing=handle.is_existing,
        feed_url=_feed_url(handle.session.id),
    )


# Host operations ---------------------------------------------------------
@router.post(
    f"{PREFIX}/quizzes/{{quiz_id}}/sessions",
    response_model=CreateSessionResponse,
    responses=ERRORS,
    tags=["quiz"],
)
async def create_session(
    quiz_id: int,
    lifecycle: Lifecycle,
    caller_id: Optional[int] = Depends(optional_caller_id),
) -> CreateSessionResponse:
    return _created(await lifecycle.create(quiz_id, caller_id))


@router.post(
    f"{PREFIX}/quizzes/{{quiz_id}}/sessions/restart",
    response_model=CreateSessionResponse,
    responses=ERRORS,
    tags=["quiz"],
)
async def restart_session(
    quiz_id: int,
    lifecycle: Lifecycle,
    caller_id: Optional[int] = Depends(optional_caller_id),
) -> CreateSessionResponse:
    return _created(await lifecycle.restart(quiz_id, caller_id))


@router.post(
    f"{PREFIX}/sessions/{{session_id}}/start",
    response_model=SessionRead,
    responses=ERRORS,
    tags=["quiz"],
)
async def start_session(
    session_id: int,
    lifecycle: Lifecycle,
    caller_id: Optional[int] = Depends(optional_caller_id),
) -> SessionRead:
    return await lifecycle.start(session_id, caller_id)


@router.post(
    f"{PREFIX}/sessions/{{session_id}}/advance",
    response_model=SessionRead,
    responses=ERRORS,
    tags=["quiz"],
)
async def advance_question(
    session_id: int,
    lifecycle: Lifecycle,
    caller_id: Optional[int] = Depends(optional_caller_id),
) -> SessionRead:
    return await lifecycle.advance(session_id, caller_id)


@router.post(
    f"{PREFIX}/sessions/{{session_id}}/complete",
    response_model=CompleteSessionResponse,
    responses=ERRORS,
    tags=["quiz"],
)
async def complete_session(
    session_id: int,
    lifecycle: Lifecycle,
    caller_id: Optional[int] = Depends(optional_caller_id),
) -> CompleteSessionResponse:
    done = await lifecycle.complete(session_id, caller_id)
    participants = await lifecycle.list_participants(session_id)
    return CompleteSessionResponse(
        session=done.session, report=done.report, participants=participants
    )


# Participant-facing operations ------------------------------------------
@router.get(
    f"{PREFIX}/sessions/code/{{room_code}}",
    response_model=SessionWithQuiz,
    responses=ERRORS,
    tags=["quiz"],
)
async def get_session_by_room_code(room_code: str, lifecycle: Lifecycle) -> SessionWithQuiz:
    return await lifecycle.get_by_room_code(room_code)


@router.get(
    f"{PREFIX}/sessions/{{session_id}}",
    response_model=SessionWithQuiz,
    responses=ERRORS,
    tags=["quiz"],
)
async def get_session_by_id(session_id: int, lifecycle: Lifecycle) -> SessionWithQuiz:
    return await lifecycle.get_by_id(session_id)


@router.post(
    f"{PREFIX}/sessions/{{session_id}}/participants",
    response_model=JoinSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERRORS,
    tags=["quiz"],
)
async def join_session(
    session_id: int, req: JoinSessionRequest, lifecycle: Lifecycle
) -> JoinSessionResponse:
    participant = await lifecycle.join(session_id, req.display_name)
    return JoinSessionResponse(participant=participant, feed_url=_feed_url(session_id))


@router.get(
    f"{PREFIX}/sessions/{{session_id}}/participants",
    response_model=list[ParticipantRead],
    responses=ERRORS,
    tags=["quiz"],
)
async def list_participants(session_id: int, lifecycle: Lifecycle) -> list[ParticipantRead]:
    return await lifecycle.list_participants(session_id)


@router.get(
    f"{PREFIX}/sessions/{{session_id}}/leaderboard",
    response_model=list[LeaderboardEntry],
    responses=ERRORS,
    tags=["quiz"],
)
async def leaderboard(session_id: int, lifecycle: Lifecycle) -> list[LeaderboardEntry]:
    return await lifecycle.leaderboard(session_id)


@router.get(
    f"{PREFIX}/sessions/{{session_id}}/current-question",
    response_model=PublicQuestion,
    responses=ERRORS,
    tags=["quiz"],
)
async def current_question(session_id: int, lifecycle: Lifecycle) -> PublicQuestion:
    return await lifecycle.current_question(session_id)


@router.post(
    f"{PREFIX}/sessions/{{session_id}}/submissions",
    response_model=SubmitResult,
    status_code=status.HTTP_201_CREATED,
    responses={**ERRORS, 422: {"model": ErrorResponse}},
    tags=["quiz"],
)
async def submit_answer(
    session_id: int, req: SubmitAnswerRequest, intake: Intake
) -> SubmitResult:
    return await intake.submit(
        session_id, req.participant_id, req.question_id, req.option_ids
    )


@router.get(
    f"{PREFIX}/sessions/{{session_id}}/questions/{{question_id}}/submissions",
    response_model=QuestionSubmissionsResponse,
    responses=ERRORS,
    tags=["quiz"],
)
async def list_question_submissions(
    session_id: int, question_id: int, intake: Intake
) -> QuestionSubmissionsResponse:
    submissions = await intake.list_submissions(session_id, question_id)
    tally = await intake.tally(session_id, question_id)
    return QuestionSubmissionsResponse(submissions=submissions, tally=tally)


# Change feed -------------------------------------------------------------
async def _pump(websocket: WebSocket, sub: Subscription) -> None:
    try:
        async for event in sub:
            await websocket.send_json(event.model_dump(mode="json"))
    except (WebSocketDisconnect, RuntimeError):
        # socket went away; the receive loop cleans up
        return


@router.websocket(f"{PREFIX}/sessions/{{session_id}}/feed")
async def session_feed(websocket: WebSocket, session_id: int) -> None:
    feed: ChangeFeed = websocket.app.state.feed
    async with websocket.app.state.db.session_maker() as db:
        qs = await db.get(QuizSession, session_id)
        snapshot = SessionRead.model_validate(qs).model_dump(mode="json") if qs else None
    if snapshot is None:
        await websocket.close(code=4404)
        return

    log = room_logger(logger, snapshot["room_code"], role="viewer")
    await websocket.accept()
    subs = [
        feed.subscribe("sessions", id=session_id),
        feed.subscribe("participants", session_id=session_id),
        feed.subscribe("submissions", session_id=session_id),
    ]
    log.info("Feed connected (%d subscribers)", feed.count("sessions"))
    pumps = [asyncio.create_task(_pump(websocket, s)) for s in subs]
    try:
        await websocket.send_json(
            {"event": "SNAPSHOT", "table": "sessions", "new": snapshot}
        )
        while True:
            # clients may send keepalives; content is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        for s in subs:
            s.close()
        log.info("Feed disconnected")
