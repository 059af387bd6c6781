"""Session records and the pure checks run against them on every request."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from session_config import SessionConfig


class TimeoutStatus(Enum):
    VALID = "valid"
    IDLE_EXPIRED = "idle_timeout"
    ABSOLUTE_EXPIRED = "absolute_timeout"


class FingerprintStatus(Enum):
    MATCH = "match"
    UNBOUND = "unbound"
    ADDRESS_MISMATCH = "address_mismatch"
    AGENT_MISMATCH = "agent_mismatch"


@dataclass(frozen=True)
class Fingerprint:
    """Client address and declared User-Agent seen on first authenticated use."""

    client_address: str
    client_agent: str

    def to_dict(self) -> Dict[str, str]:
        return {"client_address": self.client_address, "client_agent": self.client_agent}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Fingerprint:
        return cls(
            client_address=data.get("client_address", ""),
            client_agent=data.get("client_agent", ""),
        )


@dataclass
class SessionRecord:
    """Server-side state for one authenticated browser session.

    Timestamps are epoch milliseconds. ``last_activity`` is ``None`` until the
    record has been touched, and ``fingerprint`` stays unbound until the first
    request after login passes through the middleware.
    """

    session_id: str
    user_id: str
    login_time: int
    last_activity: Optional[int] = None
    fingerprint: Optional[Fingerprint] = field(default=None)

    def touched(self, now_ms: int) -> SessionRecord:
        # lastActivity never moves backwards, even with concurrent requests
        last = now_ms if self.last_activity is None else max(self.last_activity, now_ms)
        return replace(self, last_activity=last)

    def bound_to(self, fingerprint: Fingerprint) -> SessionRecord:
        return replace(self, fingerprint=fingerprint)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "login_time": self.login_time,
            "last_activity": self.last_activity,
            "fingerprint": self.fingerprint.to_dict() if self.fingerprint else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionRecord:
        fingerprint = data.get("fingerprint")
        last_activity = data.get("last_activity")
        return cls(
            session_id=data["session_id"],
            user_id=str(data["user_id"]),
            login_time=int(data["login_time"]),
            last_activity=int(last_activity) if last_activity is not None else None,
            fingerprint=Fingerprint.from_dict(fingerprint) if fingerprint else None,
        )


def check_timeouts(record: SessionRecord, config: SessionConfig, now_ms: int) -> TimeoutStatus:
    """Classify a record against the absolute and idle timeouts.

    Absolute expiry is checked first so that a session kept fresh by polling
    still dies at its ceiling. A record that was never active is measured
    for idleness from its login time.
    """
    if now_ms - record.login_time > config.absolute_timeout_ms:
        return TimeoutStatus.ABSOLUTE_EXPIRED

    last_seen = record.last_activity if record.last_activity is not None else record.login_time
    if now_ms - last_seen > config.idle_timeout_ms:
        return TimeoutStatus.IDLE_EXPIRED

    return TimeoutStatus.VALID


def check_fingerprint(
    record: SessionRecord,
    client_address: str,
    client_agent: str,
    config: SessionConfig,
) -> FingerprintStatus:
    # Exact string comparison; a dimension is skipped when its flag is off.
    bound = record.fingerprint
    if bound is None:
        return FingerprintStatus.UNBOUND

    if config.check_client_address and bound.client_address != client_address:
        return FingerprintStatus.ADDRESS_MISMATCH

    if config.check_client_agent and bound.client_agent != client_agent:
        return FingerprintStatus.AGENT_MISMATCH

    return FingerprintStatus.MATCH
