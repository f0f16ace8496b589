from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app.core.logging import get_logger
from app.modules.quiz.errors import StoreFailureError

logger = get_logger(__name__)

T = TypeVar("T")


def store_guard(action: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Roll back and re-raise store errors from a service method as StoreFailureError.

    The wrapped method must live on an object with a ``session`` attribute.
    ``QuizError`` subclasses pass through untouched.
    """

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> T:
            try:
                return await fn(self, *args, **kwargs)
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.exception("Store failure during %s", action)
                raise StoreFailureError(f"Could not {action}: storage error") from e

        return wrapper

    return decorator
