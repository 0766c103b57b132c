"""Signed, short-lived access tokens (HS256 JWT).

The signing key is derived once when the signer is built; every token minted
or verified by a signer instance uses that same key.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from accountlink.config import Settings
from accountlink.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class TokenError(Exception):
    """Access token could not be accepted."""


class TokenExpiredError(TokenError):
    pass


class MalformedTokenError(TokenError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    role: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key = settings.jwt_secret.encode("utf-8")
        self._issuer = settings.jwt_issuer
        self._ttl_seconds = settings.access_token_ttl_minutes * 60
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, account_id: str, role: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": account_id,
            "role": role,
            "iss": self._issuer,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + self._ttl_seconds,
            "token_type": ACCESS_TOKEN_TYPE,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Check signature, issuer, type and expiry.

        Raises:
            TokenExpiredError: the token is well formed but past ``exp``
            MalformedTokenError: anything else wrong with it
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise MalformedTokenError("token must have three segments")

        # Pin the algorithm to rule out alg=none and key-confusion tricks
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise MalformedTokenError("undecodable header")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise MalformedTokenError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # compare_digest rejects non-ASCII str, so compare bytes
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "replace")
        ):
            raise MalformedTokenError("bad signature")

        try:
            payload: dict[str, Any] = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("undecodable payload")
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload must be an object")
        if payload.get("iss") != self._issuer:
            raise MalformedTokenError("wrong issuer")
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise MalformedTokenError("wrong token type")

        sub = payload.get("sub")
        role = payload.get("role")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not sub or not isinstance(role, str) or not jti:
            raise MalformedTokenError("missing claims")
        try:
            iat = int(payload.get("iat"))
            exp = int(payload.get("exp"))
        except (TypeError, ValueError):
            raise MalformedTokenError("bad timestamps")
        if exp <= self._clock():
            raise TokenExpiredError("token expired")

        return TokenClaims(
            account_id=sub,
            role=role,
            jti=str(jti),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
