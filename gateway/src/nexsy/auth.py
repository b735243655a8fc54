"""Credential checks and bearer tokens for the HTTP surface.

The chat core never looks inside this module; it only receives the
identity string that :meth:`Authenticator.verify_token` resolves to.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import bcrypt

from .errors import AuthenticationError, InvalidToken, ValidationError
from .models import User, _now_ms
from .sessions import Session

BCRYPT_ROUNDS = 12
# bcrypt only looks at the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72
MIN_USERNAME_LENGTH = 3


def hash_password(password: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(password: str, encoded: str) -> bool:
    secret = password.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(secret, encoded.encode("utf-8"))
    except ValueError:
        return False


class Authenticator:
    def __init__(
        self,
        users,
        sessions,
        *,
        now_func: Callable[[], int] = _now_ms,
        rounds: int = BCRYPT_ROUNDS,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self._now = now_func
        self._rounds = rounds

    async def register(self, username, password, email=None) -> User:
        if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
            raise ValidationError("Username and password required")
        if len(username) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        if email is not None and not isinstance(email, str):
            raise ValidationError("email must be a string")
        password_hash = await asyncio.to_thread(hash_password, password, rounds=self._rounds)
        return await self._users.create(username, password_hash, email=email, at_ms=self._now())

    async def authenticate(self, username, password) -> str:
        if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
            raise ValidationError("Username and password required")
        user = await self._users.get(username)
        if user is None or not await asyncio.to_thread(verify_password, password, user.password_hash):
            raise AuthenticationError("Invalid username or password")
        return user.username

    async def issue_token(self, identity: str) -> Session:
        return await self._sessions.create(identity)

    async def verify_token(self, token: str) -> str:
        session = await self._sessions.get(token) if token else None
        if session is None:
            raise InvalidToken("Invalid or expired token")
        return session.username
