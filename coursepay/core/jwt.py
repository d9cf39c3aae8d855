from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from jwt.exceptions import PyJWTError

from coursepay.core.config import Settings
from coursepay.core.errors import AuthenticationError


@dataclass(frozen=True)
class SubjectIdentity:
    """A verified caller: the auth platform's subject id and, when known, email."""

    subject_id: str
    email: Optional[str] = None


def create_access_token(
    settings: Settings,
    subject: str,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Issue a subject token. Used by tests and local tooling; production tokens come from the auth platform."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": str(subject)}
    if email:
        to_encode["email"] = email
    if settings.JWT_AUDIENCE:
        to_encode["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_subject_token(settings: Settings, token: str) -> SubjectIdentity:
    """
    Verify a bearer token and return the caller identity.

    Raises AuthenticationError for expired, malformed or wrongly signed tokens
    and for tokens without a subject.
    """
    settings.require("SECRET_KEY")

    options = {"require": ["exp", "sub"]}
    kwargs = {}
    if settings.JWT_AUDIENCE:
        kwargs["audience"] = settings.JWT_AUDIENCE
    else:
        options["verify_aud"] = False

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options=options,
            **kwargs,
        )
    except PyJWTError:
        raise AuthenticationError("Could not validate credentials")

    subject_id = payload.get("sub")
    if not subject_id:
        raise AuthenticationError("Could not validate credentials")

    return SubjectIdentity(subject_id=str(subject_id), email=payload.get("email"))
