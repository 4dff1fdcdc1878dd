"""Bearer credential issuance and verification.

Tokens are HS256 JWTs signed with the host's symmetric secret. Nothing is
stored: every authenticated request is verified from the token alone.
"""

from __future__ import annotations

import hmac
import time
from typing import Any, Callable

import jwt

from .errors import AuthError
from .logging_utils import JsonlLogger, null_logger


ALGORITHM = "HS256"
SUBJECT = "host-authentication"

# Claims re-minted on refresh instead of being carried forward.
_TIME_CLAIMS = ("iat", "exp")


class CredentialAuthority:
    def __init__(
        self,
        host_id: str,
        secret: str,
        one_time_code: str,
        *,
        ttl: float = 30 * 24 * 60 * 60,
        refresh_grace: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
        logger: JsonlLogger | None = None,
    ) -> None:
        self.host_id = host_id
        self._secret = secret
        self._one_time_code = one_time_code
        self.ttl = ttl
        self.refresh_grace = refresh_grace
        self._clock = clock
        self.logger = logger or null_logger("auth")

    def _mint(self, claims: dict[str, Any]) -> str:
        now = int(self._clock())
        payload = {**claims, "iat": now, "exp": now + int(self.ttl)}
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def issue(self, proof: str | None) -> str:
        """Exchange the startup one-time code for a fresh credential."""
        if not proof or not str(proof).strip():
            raise AuthError("Missing otp")
        if not hmac.compare_digest(str(proof).strip(), self._one_time_code):
            self.logger.event("warn", "auth.issue.rejected", status="failed")
            raise AuthError("Invalid OTP")
        token = self._mint({"sub": SUBJECT, "hostId": self.host_id, "directories": []})
        self.logger.event("info", "auth.issue.ok", status="ok")
        return token

    def verify(self, token: str | None, allow_expired: bool = False) -> dict[str, Any] | None:
        """Return the claims of a correctly signed token, or None.

        Expiry is checked against the injected clock: a token is expired for
        every check at or after its ``exp``.
        """
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.InvalidTokenError:
            return None
        if not isinstance(claims, dict):
            return None
        exp = claims.get("exp")
        if not allow_expired and isinstance(exp, (int, float)) and self._clock() >= exp:
            return None
        return claims

    def is_refreshable(self, claims: dict[str, Any], grace: float | None = None) -> bool:
        """True only while the clock sits inside ``[exp, exp + grace]``."""
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            return False
        window = self.refresh_grace if grace is None else grace
        now = self._clock()
        return exp <= now <= exp + window

    def refresh(self, old_token: str | None) -> str:
        if not old_token:
            raise AuthError("Missing JWT")
        claims = self.verify(old_token, allow_expired=True)
        if claims is None:
            raise AuthError("Invalid JWT")
        if not self.is_refreshable(claims):
            exp = claims.get("exp")
            if isinstance(exp, (int, float)) and self._clock() < exp:
                raise AuthError("JWT not yet expired")
            raise AuthError("JWT expired")
        carried = {key: value for key, value in claims.items() if key not in _TIME_CLAIMS}
        token = self._mint(carried)
        self.logger.event("info", "auth.refresh.ok", status="ok")
        return token

    def require(self, token: str | None) -> dict[str, Any]:
        """Verify a request's bearer token, raising AuthError when it is unusable."""
        if not token:
            raise AuthError("Missing JWT")
        claims = self.verify(token)
        if claims is None:
            raise AuthError("Invalid or expired JWT")
        if claims.get("hostId") != self.host_id:
            raise AuthError("JWT was issued for another host")
        return claims
