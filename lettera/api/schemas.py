from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from lettera.storage.models import User

MAX_EMAIL_LENGTH = 255
MAX_NAME_LENGTH = 50
MAX_SKILLS = 50


class CamelModel(BaseModel):
    """Accepts camelCase on the wire and snake_case from Python callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise ``value`` after stripping invisible spoofing characters."""
    # U+200B..U+200D zero-width space/joiners, U+FEFF zero-width no-break space
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069 bidi overrides
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _strip_name(value: Any) -> Any:
    if isinstance(value, str):
        return _normalize_unicode(value).strip()
    return value


# Requests


class RegisterRequest(CamelModel):
    email: str
    # Strength rules are enforced by the service so every violation is reported
    password: str
    first_name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _strip_names(cls, value: Any) -> Any:
        return _strip_name(value)


class VerifyEmailRequest(CamelModel):
    email: str
    verification_code: str = Field(pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendVerificationRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class ProfileUpdateRequest(CamelModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    position: Optional[str] = Field(default=None, max_length=100)
    company: Optional[str] = Field(default=None, max_length=100)
    category: Optional[Literal["IT", "Marketing", "Design", "Finance", "Other"]] = None
    skills: Optional[List[str]] = Field(default=None, max_length=MAX_SKILLS)

    @field_validator("first_name", "last_name", "position", "company", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip_name(value)

    @field_validator("skills")
    @classmethod
    def _clean_skills(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        cleaned: List[str] = []
        for skill in value:
            skill = _normalize_unicode(skill).strip()
            if not skill:
                continue
            if len(skill) > 50:
                raise ValueError("skill must be at most 50 characters")
            if skill not in cleaned:
                cleaned.append(skill)
        return cleaned


class PresencePingRequest(CamelModel):
    status: Literal["online", "away"] = "online"


# Responses


class UserProfileResponse(CamelModel):
    position: Optional[str] = None
    company: Optional[str] = None
    category: Optional[str] = None
    skills: List[str] = Field(default_factory=list)


class UserResponse(CamelModel):
    """Public projection of an identity; never carries the password hash."""

    id: str
    email: str
    first_name: str
    last_name: str
    email_verified: bool
    profile: UserProfileResponse

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            email_verified=user.email_verified,
            profile=UserProfileResponse(
                position=user.profile.position,
                company=user.profile.company,
                category=user.profile.category,
                skills=list(user.profile.skills),
            ),
        )


class RegistrationResponse(CamelModel):
    success: bool
    message: str
    email: str


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str


class AuthResponse(TokenPairResponse):
    user: UserResponse


class MeResponse(CamelModel):
    user: UserResponse


class PresenceResponse(CamelModel):
    user_id: str
    status: str


class HealthResponse(CamelModel):
    status: str
    checks: Dict[str, str]
    version: str
    environment: str
    uptime_seconds: int
    timestamp: str


class ErrorBody(CamelModel):
    """Error envelope body; ``code`` is the stable machine-readable value."""

    message: str
    code: str
    status_code: int
    request_id: Optional[str] = None
    details: Optional[Any] = None
    stack: Optional[str] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody
