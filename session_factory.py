"""Session creation, cookie issuing and explicit destruction."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

import jwt
from starlette.responses import Response

from session_config import COOKIE_HTTPONLY, COOKIE_SAMESITE, SessionConfig, check_secret
from session_policy import SessionRecord
from session_store import StoreUnavailable

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 32
MAX_CREATE_ATTEMPTS = 3


class SessionIdError(RuntimeError):
    """The secure random source could not produce a session identifier."""


class SessionCreationError(RuntimeError):
    pass


def generate_session_id() -> str:
    """Return 256 bits from the OS CSPRNG, hex-encoded."""
    try:
        return secrets.token_hex(SESSION_ID_BYTES)
    except (NotImplementedError, OSError) as e:
        # No weaker fallback: without a secure source there is no session.
        raise SessionIdError("Secure random source unavailable") from e


def now_ms() -> int:
    return int(time.time() * 1000)


class CookieSigner:
    """Signs session identifiers for the cookie value with HS256."""

    algorithm = "HS256"

    def __init__(self, secret: str):
        self._secret = secret

    def sign(self, session_id: str) -> str:
        return jwt.encode({"sid": session_id}, self._secret, algorithm=self.algorithm)

    def unsign(self, value: str) -> Optional[str]:
        try:
            payload = jwt.decode(value, self._secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError:
            return None
        session_id = payload.get("sid")
        return session_id if isinstance(session_id, str) else None


class SessionFactory:
    """Builds session records on login and translates config into cookie attributes.

    The factory deliberately leaves the fingerprint unbound: the first request
    through the middleware after login binds it, so the login request itself
    (which may arrive through a different proxy hop) cannot poison it.
    """

    def __init__(self, config: SessionConfig, store, clock: Callable[[], int] = now_ms):
        # Fail at startup, never per request
        check_secret(config.secret)
        self.config = config
        self.store = store
        self.signer = CookieSigner(config.secret)
        self._clock = clock

    def cookie_attributes(self) -> Dict[str, Any]:
        return {
            "httponly": COOKIE_HTTPONLY,
            "secure": self.config.production,
            "samesite": COOKIE_SAMESITE,
            "max_age": self.config.max_age,
            "path": "/",
        }

    def create(self, user_id: str) -> str:
        now = self._clock()
        for _ in range(MAX_CREATE_ATTEMPTS):
            session_id = generate_session_id()
            record = SessionRecord(
                session_id=session_id,
                user_id=str(user_id),
                login_time=now,
                last_activity=now,
            )
            if self.store.put(session_id, record, self.config.max_age_ms, nx=True):
                logger.info(f"Session created for user {user_id}: {session_id[:8]}")
                return session_id
            logger.warning("Session identifier collision, regenerating")
        raise SessionCreationError("Could not allocate a unique session identifier")

    def set_cookie(self, response: Response, session_id: str) -> None:
        response.set_cookie(
            key=self.config.cookie_name,
            value=self.signer.sign(session_id),
            **self.cookie_attributes()
        )

    def clear_cookie(self, response: Response) -> None:
        attributes = self.cookie_attributes()
        response.delete_cookie(
            key=self.config.cookie_name,
            path=attributes["path"],
            secure=attributes["secure"],
            httponly=attributes["httponly"],
            samesite=attributes["samesite"],
        )

    def read_cookie(self, cookies: Dict[str, str]) -> Optional[str]:
        value = cookies.get(self.config.cookie_name)
        if not value:
            return None
        session_id = self.signer.unsign(value)
        if session_id is None:
            logger.warning("Rejected session cookie with an invalid signature")
        return session_id


class SessionLifecycle:
    """Explicit destruction of session records (logout and violations)."""

    def __init__(self, store):
        self.store = store

    def destroy(self, session_id: str) -> bool:
        return self.store.delete(session_id)

    def destroy_quietly(self, session_id: str) -> bool:
        """Destroy a record, logging store failures instead of raising them."""
        try:
            return self.destroy(session_id)
        except StoreUnavailable as e:
            logger.error(f"Session destruction error for {session_id[:8]}: {str(e)}")
            return False
