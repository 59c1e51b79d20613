"""Session credential issuing and verification."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from jose import JWTError, jwt

from .errors import ExpiredCredentialError, MalformedCredentialError


@dataclass(frozen=True)
class Credential:
    username: str
    is_admin: bool
    issued_at: int
    expires_at: int


class CredentialIssuer:
    """
    Mints and verifies signed, expiring session tokens (JWT).

    The admin flag is captured at issuance. Tokens are not revocable; they
    stay valid until they expire.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        ttl_s: float = 3600.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("credential secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._ttl_s = int(ttl_s)
        self._clock = clock or time.time
        self.log = logging.getLogger("rgcd.credentials")

    def issue(self, username: str, is_admin: bool) -> str:
        now = int(self._clock())
        claims = {
            "sub": username,
            "adm": bool(is_admin),
            "iat": now,
            "exp": now + self._ttl_s,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def verify(self, token) -> Credential:
        """
        Decode and check a token.

        Raises ExpiredCredentialError or MalformedCredentialError; both report
        the same reason and text to the caller.
        """
        if not isinstance(token, str) or not token:
            raise MalformedCredentialError("missing token")

        try:
            # Expiry is checked below against the injectable clock.
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise MalformedCredentialError(str(e)) from e

        username = claims.get("sub")
        exp = claims.get("exp")
        iat = claims.get("iat")
        if not isinstance(username, str) or not username:
            raise MalformedCredentialError("missing subject")
        if not isinstance(exp, int) or not isinstance(iat, int):
            raise MalformedCredentialError("missing timestamps")

        if int(self._clock()) >= exp:
            raise ExpiredCredentialError("token expired")

        return Credential(
            username=username,
            is_admin=bool(claims.get("adm", False)),
            issued_at=iat,
            expires_at=exp,
        )
