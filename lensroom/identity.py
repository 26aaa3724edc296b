# lensroom/identity.py

import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lensroom.entities import UserSession
from lensroom.errors import ConfigurationError
from lensroom.fallback import DegradedModeGuard
from lensroom.settings import UUID_RE, Settings

logger = logging.getLogger("lensroom_infer")

SESSION_COOKIES = ("lr_session", "sb-access-token")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_token(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Session cookie first, then an Authorization: Bearer header."""
    for name in SESSION_COOKIES:
        value = (cookies.get(name) or "").strip()
        if value:
            return value
    auth = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


class IdentityResolver:
    """
    Maps request credentials to a user id, or None for anonymous callers.
    Identity fields in the request body are never looked at.
    """

    def __init__(self, settings: Settings, session_factory: Callable[[], Session]):
        self.settings = settings
        self.session_factory = session_factory

    def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        guard: Optional[DegradedModeGuard] = None,
    ) -> Optional[str]:
        if self.settings.test_mode:
            user_id = self.settings.test_user_id or ""
            if not UUID_RE.match(user_id):
                raise ConfigurationError(f"TEST_MODE requires a valid TEST_USER_ID UUID, got {user_id!r}")
            return user_id

        token = extract_token(headers, cookies)
        if token is None:
            return None

        if guard is None:
            return self.lookup(token)
        result = guard.call("identity.lookup", self.lookup, token)
        return result.value

    def lookup(self, token: str) -> Optional[str]:
        session = self.session_factory()
        try:
            row = session.execute(
                select(UserSession).where(UserSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if row is None or row.revoked:
                return None
            if row.expires_at is not None:
                expires_at = row.expires_at
                # SQLite hands back naive datetimes; stored values are UTC
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
                if expires_at <= datetime.now(timezone.utc):
                    return None
            return row.user_id
        finally:
            session.close()

    def create_session(self, user_id: str, token: str, expires_at: Optional[datetime] = None) -> None:
        """Register a session token (stored hashed)."""
        session = self.session_factory()
        try:
            session.add(UserSession(token_hash=hash_token(token), user_id=str(user_id), expires_at=expires_at))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
