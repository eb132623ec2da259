from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from lettera.config import Settings
from lettera.logging import get_logger
from lettera.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    WrongTokenTypeError,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    jti: str
    issued_at: int
    expires_at: int


class TokenIssuer:
    """Issue and verify HS256 access and refresh tokens.

    Tokens carry a ``type`` discriminator so an access token can never be
    replayed as a refresh token (or the reverse), and a random ``jti`` so two
    tokens minted in the same second still differ. The issuer is pure:
    revocation is tracked by the caller in the ephemeral store.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            **kwargs,
        )

    def issue_access_token(self, user_id: str, email: str) -> str:
        now = int(self._clock())
        return self._encode(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": user_id,
                "email": email,
                "type": ACCESS_TOKEN_TYPE,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            }
        )

    def issue_refresh_token(self, user_id: str) -> str:
        now = int(self._clock())
        return self._encode(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": user_id,
                "type": REFRESH_TOKEN_TYPE,
                "jti": str(uuid.uuid4()),
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            }
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode(token)
        self._require_type(payload, ACCESS_TOKEN_TYPE)
        email = payload.get("email")
        if not isinstance(email, str) or not email:
            raise InvalidTokenError()
        return AccessClaims(
            user_id=payload["sub"],
            email=email,
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        payload = self._decode(token)
        self._require_type(payload, REFRESH_TOKEN_TYPE)
        return RefreshClaims(
            user_id=payload["sub"],
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    @staticmethod
    def _require_type(payload: dict[str, Any], expected: str) -> None:
        if payload.get("type") != expected:
            logger.info(
                "token_type_mismatch", expected=expected, received=payload.get("type")
            )
            raise WrongTokenTypeError()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: Optional[str]) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        try:
            signature_ok = hmac.compare_digest(
                self._sign(f"{header_b64}.{payload_b64}"), sig_b64
            )
        except TypeError:
            # compare_digest refuses non-ASCII strings
            signature_ok = False
        if not signature_ok:
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError()
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidTokenError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError()
        return payload
