import json
import time
from pathlib import Path
from typing import Any, Dict, Optional

import jwt
from jwcrypto import jwk
from fastapi_users.authentication.strategy.jwt import JWTStrategy
from fastapi_users import exceptions, models

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class RS256JWTStrategyWithKid(JWTStrategy[models.UP, models.ID]):
    """
    FastAPI Users JWT strategy signing host tokens with RS256 and a ``kid`` header.

    The RSA key comes from ``key_file`` when one is configured; otherwise a key is
    generated in memory and tokens do not survive a restart.
    """

    def __init__(
        self, lifetime_seconds: int, key_id: str = "v1", key_file: Optional[str] = None
    ):
        self.key_id = key_id
        self.rsa_key = self._load_key(key_file)

        self.private_pem = self.rsa_key.export_to_pem(private_key=True, password=None)
        self.public_pem = self.rsa_key.export_to_pem(private_key=False, password=None)

        super().__init__(
            secret=self.private_pem,
            lifetime_seconds=lifetime_seconds,
            token_audience=[settings.jwt.application_id],
            algorithm="RS256",
            public_key=self.public_pem,
        )

        self.public_jwk = json.loads(self.rsa_key.export_public())
        self.public_jwk["kid"] = self.key_id

    @staticmethod
    def _load_key(key_file: Optional[str]) -> jwk.JWK:
        if key_file:
            path = Path(key_file)
            if path.exists():
                return jwk.JWK.from_pem(path.read_bytes())
            logger.warning("JWT key file %s missing; generating a new key", path)
            key = jwk.JWK.generate(kty="RSA", size=2048)
            path.write_bytes(key.export_to_pem(private_key=True, password=None))
            return key
        return jwk.JWK.generate(kty="RSA", size=2048)

    async def write_token(self, user: models.UP) -> str:
        now = int(time.time())
        data: Dict[str, Any] = {
            "sub": f"user:{user.id}",
            "user_id": str(user.id),
            "aud": self.token_audience,
            "iss": settings.jwt.issuer,
            "iat": now,
        }
        if self.lifetime_seconds:
            data["exp"] = now + self.lifetime_seconds
        if hasattr(user, "email"):
            data["email"] = str(user.email)

        return jwt.encode(
            data,
            self.encode_key,
            algorithm=self.algorithm,
            headers={"kid": self.key_id},
        )

    async def read_token(
        self, token: Optional[str], user_manager
    ) -> Optional[models.UP]:
        if token is None:
            return None

        try:
            payload = jwt.decode(
                token,
                self.decode_key,
                algorithms=[self.algorithm],
                audience=self.token_audience,
            )
        except jwt.PyJWTError:
            return None

        user_id = payload.get("user_id")
        if user_id is None:
            return None
        try:
            parsed_user_id = user_manager.parse_id(user_id)
            return await user_manager.get(parsed_user_id)
        except (exceptions.InvalidID, exceptions.UserNotExists):
            return None

    def get_jwks(self) -> Dict[str, Any]:
        """Get JWKS for public key distribution"""
        return {"keys": [self.public_jwk]}
