"""Bearer tokens: validation of the identity provider's JWTs (and minting, for tooling and tests)."""

from __future__ import annotations

import time
from dataclasses import dataclass

import jwt

from services.errors import UnauthorizedError

# Tolerate small clock drift between us and the issuer.
LEEWAY_SECONDS = 60


@dataclass(frozen=True)
class TokenClaims:
    external_id: str
    username: str | None = None
    display_name: str | None = None


class JwtTokenValidator:
    def __init__(self, secret: str, algorithm: str = "HS256", audience: str | None = None) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience

    def validate(self, token: str) -> TokenClaims:
        if not token:
            raise UnauthorizedError("Missing bearer token")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                leeway=LEEWAY_SECONDS,
                options={"require": ["sub", "exp"], "verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError as exc:
            raise UnauthorizedError("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise UnauthorizedError("Invalid token") from exc

        external_id = str(payload["sub"]).strip()
        if not external_id:
            raise UnauthorizedError("Token has an empty subject")
        return TokenClaims(
            external_id=external_id,
            username=payload.get("username") or payload.get("preferred_username"),
            display_name=payload.get("name"),
        )


def create_access_token(
    secret: str,
    external_id: str,
    *,
    username: str | None = None,
    display_name: str | None = None,
    expiration_seconds: int = 3600,
    algorithm: str = "HS256",
) -> str:
    """Mint a token the validator accepts. iat is backdated 60s like the issuer does."""
    now = int(time.time())
    payload: dict = {"sub": external_id, "iat": now - 60, "exp": now + expiration_seconds}
    if username:
        payload["username"] = username
    if display_name:
        payload["name"] = display_name
    return jwt.encode(payload, secret, algorithm=algorithm)
