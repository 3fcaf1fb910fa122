from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from jose import JWTError, jwt

from pipecd_api.platform.security.context import Identity


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be verified."""


def extract_bearer_token(headers: Mapping[str, str]) -> str | None:
    auth_header = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class IdentityProvider(Protocol):
    def verify(self, token: str) -> Identity:
        ...


class JwtIdentityProvider:
    """Verifies tokens signed with the identity provider's shared secret."""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: str | None = None) -> None:
        self._secret = secret
        self._algorithms = [algorithm]
        self._audience = audience

    def verify(self, token: str) -> Identity:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as exc:
            raise InvalidTokenError(str(exc)) from exc

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("token has no subject")
        email = payload.get("email")
        return Identity(id=subject, email=email if isinstance(email, str) and email else None)
