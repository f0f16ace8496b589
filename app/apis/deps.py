from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db.base import get_session
from app.core.db.schemas.auth import User
from app.modules.auth import optional_host
from app.modules.quiz.feed import ChangeFeed
from app.modules.quiz.intake import AnswerIntake
from app.modules.quiz.lifecycle import SessionLifecycleManager


async def optional_caller_id(
    user: Optional[User] = Depends(optional_host),
) -> Optional[int]:
    """Caller identity for routes participants also reach; ``None`` when anonymous."""
    return user.id if user else None

def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed

async def get_lifecycle(
    session: AsyncSession = Depends(get_session),
    feed: ChangeFeed = Depends(get_feed),
) -> SessionLifecycleManager:
    return SessionLifecycleManager(session, feed)

async def get_intake(
    session: AsyncSession = Depends(get_session),
    feed: ChangeFeed = Depends(get_feed),
) -> AnswerIntake:
    return AnswerIntake(session, feed)

Lifecycle = Annotated[SessionLifecycleManager, Depends(get_lifecycle)]
Intake = Annotated[AnswerIntake, Depends(get_intake)]
