"""Host accounts.

Only hosts authenticate: they register, log in for a bearer JWT and then run
sessions for quizzes they own. Participants stay anonymous, so quiz routes
resolve the caller with ``optional_host`` and let the services decide.
"""

from typing import AsyncIterator, Optional, Union, cast

from fastapi import Depends, Request
from fastapi_users import FastAPIUsers, InvalidPasswordException
from fastapi_users import schemas as fa_schemas
from fastapi_users.authentication import AuthenticationBackend, BearerTransport
from fastapi_users.authentication.transport import Transport
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from fastapi_users_db_sqlalchemy import SQLAlchemyUserDatabase
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db.base import get_session
from app.core.db.schemas.auth import User
from app.core.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class HostRead(fa_schemas.BaseUser[int]):
    pass


class HostCreate(fa_schemas.BaseUserCreate):
    pass


async def get_host_db(
    session: AsyncSession = Depends(get_session),
) -> AsyncIterator[SQLAlchemyUserDatabase]:
    yield SQLAlchemyUserDatabase(session, User)


class HostManager(IntegerIDMixin, BaseUserManager[User, int]):  # type: ignore[type-arg]
    reset_password_token_secret = settings.app.jwt_secret
    verification_token_secret = settings.app.jwt_secret

    async def validate_password(
        self, password: str, user: Union[HostCreate, User]
    ) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidPasswordException(
                reason=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if user.email and user.email.split("@")[0].lower() in password.lower():
            raise InvalidPasswordException(reason="Password must not contain the email")

    async def on_after_register(
        self, user: User, request: Optional[Request] = None
    ) -> None:
        logger.info("Host account %s registered", user.id)

    async def on_after_login(
        self, user: User, request: Optional[Request] = None, response=None
    ) -> None:
        logger.info("Host %s logged in", user.id)


async def get_host_manager(
    host_db: SQLAlchemyUserDatabase = Depends(get_host_db),
) -> AsyncIterator[HostManager]:
    yield HostManager(host_db)


bearer_transport = BearerTransport(tokenUrl=f"{settings.app.version}/auth/login")


_jwt_strategy = None


def get_jwt_strategy():
    global _jwt_strategy
    if _jwt_strategy is None:
        from app.core.jwt_strategy import RS256JWTStrategyWithKid

        _jwt_strategy = RS256JWTStrategyWithKid(
            lifetime_seconds=settings.jwt.token_lifetime_seconds,
            key_id="v1",
            key_file=settings.jwt.key_file,
        )
    return _jwt_strategy


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=cast(Transport, bearer_transport),
    get_strategy=get_jwt_strategy,
)

host_auth = FastAPIUsers[User, int](  # type: ignore[type-arg]
    get_host_manager,
    [auth_backend],
)

# None for anonymous callers and for inactive accounts
optional_host = host_auth.current_user(active=True, optional=True)
