import asyncio
import logging
from typing import Callable, Optional, Tuple

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from security_events import SecurityEvent, SecurityEventType, Severity, emit_event
from session_factory import SessionFactory, SessionLifecycle, now_ms
from session_policy import (
    Fingerprint,
    FingerprintStatus,
    SessionRecord,
    TimeoutStatus,
    check_fingerprint,
    check_timeouts,
)
from session_store import StoreUnavailable

logger = logging.getLogger(__name__)

RELOGIN_MESSAGE = "Please log in again"

_TIMEOUT_ERRORS = {
    TimeoutStatus.ABSOLUTE_EXPIRED: "Session expired",
    TimeoutStatus.IDLE_EXPIRED: "Session expired due to inactivity",
}


def rejection_response(error: str, reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "success": False,
            "error": error,
            "data": {"reason": reason, "message": RELOGIN_MESSAGE},
        },
    )


def client_origin(request: Request, trust_proxy: bool = False) -> Tuple[str, str]:
    """Return the (address, User-Agent) pair a fingerprint is built from."""
    address = request.client.host if request.client else ""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            address = forwarded.split(",")[0].strip()
    return address, request.headers.get("user-agent", "")


def _sets_cookie(response: Response, name: str) -> bool:
    prefix = f"{name}="
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))


class SessionSecurityMiddleware(BaseHTTPMiddleware):
    """Validates the session behind every request before it reaches a route.

    Order per request: load record, timeouts (absolute before idle),
    fingerprint (binding it on first use), activity update, identity
    attachment. Any violation destroys the record and answers 401.
    """

    def __init__(
        self,
        app,
        factory: SessionFactory,
        lifecycle: SessionLifecycle,
        emitter,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(app)
        self.factory = factory
        self.config = factory.config
        self.store = factory.store
        self.lifecycle = lifecycle
        self.emitter = emitter
        self._clock = clock

    def _client_origin(self, request: Request) -> Tuple[str, str]:
        return client_origin(request, self.config.trust_proxy)

    async def _store_unavailable(self, request: Request, session_id: str, error: StoreUnavailable) -> None:
        logger.error(f"Session store unavailable, treating request as unauthenticated: {str(error)}")
        address, agent = self._client_origin(request)
        await emit_event(self.emitter, SecurityEvent(
            event_type=SecurityEventType.STORE_UNAVAILABLE,
            severity=Severity.CRITICAL,
            session_id=session_id,
            client_address=address,
            client_agent=agent,
            details={"error": str(error), "path": request.url.path},
        ))

    async def _reject(self, session_id: str, event: SecurityEvent, error: str) -> JSONResponse:
        # The 401 stands even if the record cannot be removed right now.
        await asyncio.to_thread(self.lifecycle.destroy_quietly, session_id)
        await emit_event(self.emitter, event)
        response = rejection_response(error, event.reason)
        self.factory.clear_cookie(response)
        return response

    async def _reject_timeout(
        self, request: Request, record: SessionRecord, outcome: TimeoutStatus, now: int
    ) -> JSONResponse:
        address, agent = self._client_origin(request)
        logger.warning(
            f"Session expired ({outcome.value}): user={record.user_id} "
            f"age_ms={now - record.login_time} ip={address}"
        )
        event = SecurityEvent(
            event_type=SecurityEventType.SESSION_EXPIRED,
            severity=Severity.MEDIUM,
            reason=outcome.value,
            session_id=record.session_id,
            user_id=record.user_id,
            client_address=address,
            client_agent=agent,
            details={
                "session_age_ms": now - record.login_time,
                "idle_ms": now - (record.last_activity if record.last_activity is not None else record.login_time),
            },
        )
        return await self._reject(record.session_id, event, _TIMEOUT_ERRORS[outcome])

    async def _reject_hijack(
        self, request: Request, record: SessionRecord, outcome: FingerprintStatus
    ) -> JSONResponse:
        address, agent = self._client_origin(request)
        original = record.fingerprint
        logger.error(
            f"SECURITY ALERT - Session hijacking attempt ({outcome.value}): user={record.user_id} "
            f"original_ip={original.client_address} current_ip={address} "
            f"original_agent={original.client_agent!r} current_agent={agent!r}"
        )
        event = SecurityEvent(
            event_type=SecurityEventType.SESSION_HIJACK_ATTEMPT,
            severity=Severity.HIGH,
            reason=outcome.value,
            session_id=record.session_id,
            user_id=record.user_id,
            client_address=address,
            client_agent=agent,
            details={
                "original_fingerprint": original.to_dict(),
                "current_fingerprint": {"client_address": address, "client_agent": agent},
            },
        )
        return await self._reject(record.session_id, event, "Security validation failed")

    async def dispatch(self, request: Request, call_next):
        request.state.user_id = None
        request.state.session_id = None

        cookie_present = self.config.cookie_name in request.cookies
        session_id = self.factory.read_cookie(request.cookies)
        if session_id is None:
            return await self._unauthenticated(request, call_next, clear_cookie=cookie_present)

        try:
            record: Optional[SessionRecord] = await asyncio.to_thread(self.store.get, session_id)
        except StoreUnavailable as e:
            await self._store_unavailable(request, session_id, e)
            return await call_next(request)

        if record is None:
            # Unknown, expired by TTL, or destroyed: never reaccepted.
            return await self._unauthenticated(request, call_next, clear_cookie=True)

        now = self._clock()
        timeout = check_timeouts(record, self.config, now)
        if timeout is not TimeoutStatus.VALID:
            return await self._reject_timeout(request, record, timeout, now)

        if self.config.checks_fingerprint:
            address, agent = self._client_origin(request)
            outcome = check_fingerprint(record, address, agent, self.config)
            if outcome is FingerprintStatus.UNBOUND:
                record = record.bound_to(Fingerprint(client_address=address, client_agent=agent))
                logger.info(f"Session fingerprint bound for user {record.user_id}: ip={address}")
            elif outcome is not FingerprintStatus.MATCH:
                return await self._reject_hijack(request, record, outcome)

        record = record.touched(now)
        renew = self.config.renew_on_activity
        ttl_ms = self.config.max_age_ms if renew else None
        try:
            written = await asyncio.to_thread(self.store.put, session_id, record, ttl_ms, xx=True)
        except StoreUnavailable as e:
            await self._store_unavailable(request, session_id, e)
            return await call_next(request)

        if not written:
            # Destroyed by a concurrent request after our read.
            logger.info(f"Session {session_id[:8]} was destroyed concurrently")
            return await self._unauthenticated(request, call_next, clear_cookie=True)

        request.state.user_id = record.user_id
        request.state.session_id = session_id

        response = await call_next(request)
        if renew and not _sets_cookie(response, self.config.cookie_name):
            self.factory.set_cookie(response, session_id)
        return response

    async def _unauthenticated(self, request: Request, call_next, clear_cookie: bool):
        response = await call_next(request)
        if clear_cookie and not _sets_cookie(response, self.config.cookie_name):
            self.factory.clear_cookie(response)
        return response


def get_current_user_id(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None)


def require_user(request: Request) -> str:
    user_id = get_current_user_id(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id
