import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Form, HTTPException, Request, status
from fastapi.responses import JSONResponse

from auth_backend import SupabaseAuthenticator
from security_events import (
    LoggingSecurityEventEmitter,
    RedisSecurityEventEmitter,
    SecurityEvent,
    SecurityEventType,
    Severity,
    emit_event,
)
from session_config import ConfigurationError, SessionConfig, load_session_config
from session_factory import SessionFactory, SessionLifecycle, now_ms
from session_middleware import SessionSecurityMiddleware, client_origin, require_user
from session_store import RedisSessionStore, StoreUnavailable

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ConfigurationError(f"{name} environment variable is not set")
    return value


def create_app(
    config: Optional[SessionConfig] = None,
    store=None,
    emitter=None,
    authenticator=None,
    clock: Callable[[], int] = now_ms,
) -> FastAPI:
    """Wire the session layer and its HTTP surface.

    Every collaborator can be injected; anything left out is built from the
    environment. Misconfiguration raises ConfigurationError here, before the
    app serves a single request.
    """
    load_dotenv()
    if config is None:
        config = load_session_config()
    if store is None:
        store = RedisSessionStore(_required_env("REDIS_URL"), tombstone_ttl=config.max_age)
    if emitter is None:
        if isinstance(store, RedisSessionStore):
            emitter = RedisSecurityEventEmitter(store.redis)
        else:
            emitter = LoggingSecurityEventEmitter()
    if authenticator is None:
        authenticator = SupabaseAuthenticator.from_credentials(
            _required_env("SUPABASE_URL"), _required_env("SUPABASE_ANON_KEY")
        )

    factory = SessionFactory(config, store, clock=clock)
    lifecycle = SessionLifecycle(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Session security layer started")
        yield
        store.close()
        logger.info("Session store closed")

    app = FastAPI(
        title="Study Notes Session Service",
        description="Session issuing, validation and hijack detection for the study notes app",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.session_factory = factory
    app.state.session_lifecycle = lifecycle
    app.add_middleware(
        SessionSecurityMiddleware,
        factory=factory,
        lifecycle=lifecycle,
        emitter=emitter,
        clock=clock,
    )

    @app.post("/login")
    async def login_post(
        request: Request,
        email: str = Form(...),
        password: str = Form(...),
    ):
        address, agent = client_origin(request, config.trust_proxy)
        user_id = await asyncio.to_thread(authenticator.authenticate, email, password)
        if not user_id:
            await emit_event(emitter, SecurityEvent(
                event_type=SecurityEventType.LOGIN_FAILURE,
                severity=Severity.MEDIUM,
                client_address=address,
                client_agent=agent,
                details={"email": email},
            ))
            return JSONResponse(
                status_code=400,
                content={"success": False, "message": "Invalid credentials"}
            )

        # Never carry a pre-login session across authentication
        previous = request.state.session_id
        if previous:
            await asyncio.to_thread(lifecycle.destroy_quietly, previous)

        try:
            session_id = await asyncio.to_thread(factory.create, user_id)
        except StoreUnavailable as e:
            logger.error(f"Login error: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Failed to create session"
            )

        await emit_event(emitter, SecurityEvent(
            event_type=SecurityEventType.LOGIN_SUCCESS,
            severity=Severity.LOW,
            session_id=session_id,
            user_id=user_id,
            client_address=address,
            client_agent=agent,
        ))
        response = JSONResponse(content={"success": True, "message": "Login successful"})
        factory.set_cookie(response, session_id)
        return response

    @app.post("/logout")
    async def logout(request: Request):
        session_id = request.state.session_id or factory.read_cookie(request.cookies)
        if session_id:
            await asyncio.to_thread(lifecycle.destroy_quietly, session_id)
            address, agent = client_origin(request, config.trust_proxy)
            await emit_event(emitter, SecurityEvent(
                event_type=SecurityEventType.LOGOUT,
                severity=Severity.LOW,
                session_id=session_id,
                user_id=request.state.user_id,
                client_address=address,
                client_agent=agent,
            ))

        response = JSONResponse(content={"success": True, "message": "Logout successful"})
        factory.clear_cookie(response)
        return response

    @app.get("/auth_status")
    async def auth_status(request: Request):
        user_id = request.state.user_id
        if not user_id:
            return JSONResponse(content={"authenticated": False, "message": "No active session"})
        return JSONResponse(content={
            "authenticated": True,
            "user_id": user_id,
            "session_status": "active"
        })

    @app.get("/me")
    async def me(user_id: str = Depends(require_user)):
        return {"success": True, "data": {"user_id": user_id}}

    @app.get("/health")
    async def health_check():
        store_health = await asyncio.to_thread(store.health_check)
        return {
            "status": store_health.get("status", "unknown"),
            "services": {"session_store": store_health}
        }

    return app


def main():
    uvicorn.run(
        "app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
