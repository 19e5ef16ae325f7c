# tokens.py
"""
Signed bearer tokens (compact JWT, HS256 only).

The signing key is process-wide configuration handed to TokenService once at
startup. There is no revocation list: `exp` is the only way a token stops
working, and rotating the key invalidates every outstanding token.
"""
import binascii
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.utils import base64url_decode, base64url_encode
from pydantic import ValidationError

from errors import TokenDenied
from schemas import Claims

ALGORITHM = "HS256"
DEFAULT_LIFETIME = timedelta(hours=8)
MIN_KEY_LENGTH = 32


class TokenService:
    def __init__(self, signing_key: str, lifetime: timedelta = DEFAULT_LIFETIME):
        if not signing_key:
            raise ValueError("signing key must be set")
        if len(signing_key) < MIN_KEY_LENGTH:
            print(f"[auth] JWT signing key is shorter than {MIN_KEY_LENGTH} chars; use a longer random secret.",
                  flush=True)
        self._key = signing_key
        self.lifetime = lifetime

    def issue(self, claims: Claims, now: Optional[datetime] = None) -> str:
        """Sign `claims` with expiry = now + lifetime. `now` is for tests/clock control."""
        now = now or datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "sub": str(claims.subject_id),
            "username": claims.username,
            "role": claims.role,
            "name": claims.name,
            "exp": now + self.lifetime,
        }
        return jwt.encode(payload, self._key, algorithm=ALGORITHM, headers={"typ": "JWT"})

    def verify(self, token: str) -> Claims:
        """Decoded claims, or TokenDenied('malformed' | 'bad_signature' | 'expired')."""
        if not isinstance(token, str):
            raise TokenDenied("malformed")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise TokenDenied("malformed")
        # the segment must be the canonical encoding of the MAC, not just decode to it
        try:
            canonical = base64url_encode(base64url_decode(parts[2]))
        except (binascii.Error, ValueError, TypeError):
            raise TokenDenied("bad_signature") from None
        if canonical != parts[2].encode():
            raise TokenDenied("bad_signature")

        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenDenied("expired") from None
        except jwt.InvalidSignatureError:
            raise TokenDenied("bad_signature") from None
        except jwt.InvalidTokenError:
            raise TokenDenied("malformed") from None

        try:
            return Claims(
                subject_id=int(payload["sub"]),
                username=payload.get("username") or "",
                role=payload.get("role"),
                name=payload.get("name") or "",
                expiry=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError, ValidationError):
            raise TokenDenied("malformed") from None
