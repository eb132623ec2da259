from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from lettera.config import Settings
from lettera.logging import email_fingerprint, get_logger
from lettera.service.codes import generate_verification_code
from lettera.service.errors import (
    AccessTokenRequiredError,
    AlreadyVerifiedError,
    CodeExpiredError,
    EmailDispatchError,
    EmailExistsError,
    EmailNotVerifiedError,
    InvalidCodeError,
    InvalidRefreshTokenError,
    TokenError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from lettera.service.passwords import PasswordHasher, password_violations
from lettera.service.tokens import TokenIssuer
from lettera.storage.ephemeral import (
    EphemeralStore,
    email_code_key,
    refresh_token_key,
)
from lettera.storage.errors import ConstraintViolation
from lettera.storage.models import PROFILE_CATEGORIES, User

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str,
        last_name: str,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]: ...

    def touch_last_seen(self, user_id: str, status: str) -> None: ...

    def verify_connection(self) -> None: ...


class VerificationMailer(Protocol):
    def send_verification_code(
        self, to_email: str, code: str, first_name: Optional[str] = None
    ) -> bool: ...


@dataclass
class VerificationDispatch:
    success: bool
    message: str
    email: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    user: User


class AuthService:
    """Account verification state machine and session lifecycle.

    An identity is created unverified, receives a one-time code by email and
    only receives tokens once that code is consumed. Identities live in the
    durable store; codes, refresh tokens and counters live in the ephemeral
    store under the keys built in ``lettera.storage.ephemeral``.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        email: VerificationMailer,
        hasher: Optional[PasswordHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        code_generator: Callable[[], str] = generate_verification_code,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email
        self.hasher = hasher or PasswordHasher()
        self.tokens = tokens or TokenIssuer.from_settings(settings)
        self._generate_code = code_generator
        self.logger = logger

    # Registration and verification

    async def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> VerificationDispatch:
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            self.logger.warning(
                "registration_email_exists", account_ref=email_fingerprint(email)
            )
            raise EmailExistsError()

        violations = password_violations(password)
        if violations:
            raise WeakPasswordError(
                f"Password validation failed: {', '.join(violations)}",
                detail={"violations": violations},
            )

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = self.store.create_user(
                email,
                password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email_verified=False,
            )
        except ConstraintViolation:
            # Lost a concurrent registration race for the same address
            raise EmailExistsError()
        self.logger.info("user_registered", user_id=user.id)

        await self._issue_code(user)
        return VerificationDispatch(
            success=True, message="Verification code sent to email", email=user.email
        )

    async def verify_email(self, email: str, code: str) -> AuthResult:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            raise UserNotFoundError()
        if user.email_verified:
            raise AlreadyVerifiedError()

        key = email_code_key(user.email)
        stored = await self.cache.get(key)
        if stored is None:
            raise CodeExpiredError()
        if not hmac.compare_digest(stored.encode(), code.encode()):
            self.logger.info("verification_code_mismatch", user_id=user.id)
            raise InvalidCodeError()
        # Conditional delete: only one concurrent submission may consume the code
        if not await self.cache.delete_if_equals(key, stored):
            raise CodeExpiredError()

        verified = self.store.mark_email_verified(user.id)
        if not verified:
            raise UserNotFoundError()
        pair = self._issue_pair(verified)
        await self._store_refresh_token(verified.id, pair.refresh_token)
        self.logger.info("email_verified", user_id=verified.id)
        return AuthResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=verified,
        )

    async def resend_verification(self, email: str) -> VerificationDispatch:
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            raise UserNotFoundError()
        if user.email_verified:
            raise AlreadyVerifiedError()
        await self._issue_code(user)
        return VerificationDispatch(
            success=True, message="Verification code resent to email", email=user.email
        )

    async def _issue_code(self, user: User) -> None:
        """Store a fresh code (replacing any previous one) and email it."""
        code = self._generate_code()
        await self.cache.set(
            email_code_key(user.email), code, self.settings.email_code_ttl_seconds
        )
        sent = await asyncio.to_thread(
            self.email.send_verification_code, user.email, code, user.first_name
        )
        if not sent:
            # The identity and the code stay in place so a resend can recover
            self.logger.error("verification_email_failed", user_id=user.id)
            raise EmailDispatchError(
                detail={"email": user.email, "resendAvailable": True}
            )
        self.logger.info(
            "verification_code_sent",
            user_id=user.id,
            ttl_seconds=self.settings.email_code_ttl_seconds,
        )

    # Sessions

    def _issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.tokens.issue_access_token(user.id, user.email),
            refresh_token=self.tokens.issue_refresh_token(user.id),
        )

    async def _store_refresh_token(self, user_id: str, refresh_token: str) -> None:
        # One active refresh token per identity; the set is replaced, TTL reset
        await self.cache.add_member(
            refresh_token_key(user_id),
            refresh_token,
            self.settings.refresh_token_ttl_seconds,
            replace=True,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token.

        Rotation is read-then-write: two concurrent refreshes with the same
        token may both succeed, and the last write decides which new refresh
        token survives.
        """
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.error_code)
            raise InvalidRefreshTokenError()

        if not await self.cache.is_member(refresh_token_key(claims.user_id), refresh_token):
            self.logger.info("refresh_token_not_active", user_id=claims.user_id)
            raise InvalidRefreshTokenError()

        user = self.store.get_user(claims.user_id)
        if not user or not user.email_verified:
            raise UserNotFoundError(status_code=401)

        pair = self._issue_pair(user)
        await self._store_refresh_token(user.id, pair.refresh_token)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return pair

    async def logout(self, user_id: str) -> None:
        """Invalidate every refresh token for ``user_id``. Idempotent.

        Outstanding access tokens stay valid until they expire, and the
        presence record is left to its own TTL.
        """
        await self.cache.delete(refresh_token_key(user_id))
        self.logger.info("user_logged_out", user_id=user_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> User:
        token = self._extract_bearer(authorization)
        if not token:
            raise AccessTokenRequiredError()
        claims = self.tokens.verify_access_token(token)
        user = self.store.get_user(claims.user_id)
        if not user:
            raise UserNotFoundError(status_code=401)
        if not user.email_verified:
            raise EmailNotVerifiedError()
        return user

    # Profile

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> User:
        """Update the caller's own profile; ``None`` values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        category = changes.get("category")
        if category is not None and category not in PROFILE_CATEGORIES:
            raise ValidationError(
                "Invalid profile category",
                detail={"allowed": list(PROFILE_CATEGORIES)},
            )
        for name in ("first_name", "last_name"):
            if name in changes:
                changes[name] = changes[name].strip()
        if not changes:
            user = self.store.get_user(user_id)
        else:
            user = self.store.update_profile(user_id, changes)
        if not user:
            raise UserNotFoundError()
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(changes))
        return user


__all__ = [
    "AuthResult",
    "AuthService",
    "IdentityStore",
    "TokenPair",
    "VerificationDispatch",
    "VerificationMailer",
]
