from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.modules.auth import (
    HostCreate,
    HostRead,
    auth_backend,
    get_jwt_strategy,
    host_auth,
)


router = APIRouter()


@router.get("/.well-known/jwks.json", tags=["auth"])
async def jwks():
    """Public signing key, for services that verify host tokens."""
    return JSONResponse(content=get_jwt_strategy().get_jwks())


# Host accounts only: POST /auth/register, /auth/login, /auth/logout
router.include_router(
    host_auth.get_register_router(HostRead, HostCreate),
    prefix=f"/{settings.app.version}/auth",
    tags=["auth"],
)

router.include_router(
    host_auth.get_auth_router(auth_backend),
    prefix=f"/{settings.app.version}/auth",
    tags=["auth"],
)
