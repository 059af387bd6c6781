import os
import sys

import pytest
from fastapi.testclient import TestClient

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from app import create_app  # noqa: E402
from security_events import RecordingSecurityEventEmitter  # noqa: E402
from session_config import build_session_config  # noqa: E402
from session_store import MemorySessionStore  # noqa: E402

SECRET = "s" * 16 + "e" * 16 + "-test-signing-secret"
T0 = 1_700_000_000_000
MINUTE = 60 * 1000
ADDRESS_A = "203.0.113.10"
ADDRESS_B = "198.51.100.77"
BROWSER = "Mozilla/5.0 (X11; Linux x86_64) StudyNotes/1.0"


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float = 0, ms: int = 0) -> int:
        self.now += int(minutes * MINUTE) + ms
        return self.now

    def set(self, value: int) -> None:
        self.now = value


class StubAuthenticator:
    def __init__(self, users=None):
        self.users = users or {"ada@example.com": ("correct horse", "user-1")}

    def authenticate(self, email, password):
        entry = self.users.get(email)
        if entry and entry[0] == password:
            return entry[1]
        return None


class SessionHarness:
    """Drives the app the way a browser behind a proxy would."""

    def __init__(self, client, store, emitter, clock, config):
        self.client = client
        self.store = store
        self.emitter = emitter
        self.clock = clock
        self.config = config

    def login(self, address=ADDRESS_A, agent=BROWSER, email="ada@example.com", password="correct horse", cookie=None):
        headers = {"X-Forwarded-For": address, "User-Agent": agent}
        if cookie:
            headers["Cookie"] = f"{self.config.cookie_name}={cookie}"
        return self.client.post("/login", data={"email": email, "password": password}, headers=headers)

    def login_cookie(self, **kwargs) -> str:
        response = self.login(**kwargs)
        assert response.status_code == 200
        return response.cookies[self.config.cookie_name]

    def get(self, path, cookie=None, address=ADDRESS_A, agent=BROWSER):
        headers = {"X-Forwarded-For": address, "User-Agent": agent}
        if cookie:
            headers["Cookie"] = f"{self.config.cookie_name}={cookie}"
        return self.client.get(path, headers=headers)

    def post(self, path, cookie=None, address=ADDRESS_A, agent=BROWSER):
        headers = {"X-Forwarded-For": address, "User-Agent": agent}
        if cookie:
            headers["Cookie"] = f"{self.config.cookie_name}={cookie}"
        return self.client.post(path, headers=headers)

    def session_id(self, cookie: str) -> str:
        return self.client.app.state.session_factory.signer.unsign(cookie)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_harness(clock):
    def _make(store=None, authenticator=None, **overrides):
        values = {"secret": SECRET, "trust_proxy": True}
        values.update(overrides)
        config = build_session_config(**values)
        store = store if store is not None else MemorySessionStore(tombstone_ttl=config.max_age, clock=clock)
        emitter = RecordingSecurityEventEmitter()
        app = create_app(
            config=config,
            store=store,
            emitter=emitter,
            authenticator=authenticator or StubAuthenticator(),
            clock=clock,
        )
        return SessionHarness(TestClient(app), store, emitter, clock, config)

    return _make


@pytest.fixture
def harness(make_harness):
    return make_harness()
