import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import redis

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


class SecurityEventType(Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    SESSION_EXPIRED = "session_expired"
    SESSION_HIJACK_ATTEMPT = "session_hijack_attempt"
    STORE_UNAVAILABLE = "store_unavailable"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.ERROR,
}


@dataclass
class SecurityEvent:
    event_type: SecurityEventType
    severity: Severity
    reason: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    client_address: Optional[str] = None
    client_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        # Only a prefix of the identifier is ever written to logs or audit storage
        if self.session_id:
            data["session_id"] = self.session_id[:8]
        return data


async def emit_event(emitter, event: SecurityEvent) -> None:
    """Deliver an event without letting emitter failures reach the request."""
    try:
        await asyncio.to_thread(emitter.emit, event)
    except Exception as e:
        logger.error(f"Error emitting security event {event.event_type.value}: {str(e)}")


def log_security_event(event: SecurityEvent) -> None:
    level = _LOG_LEVELS[event.severity]
    payload = event.to_dict()
    if event.severity == Severity.CRITICAL:
        security_logger.log(level, f"CRITICAL SECURITY ALERT: {json.dumps(payload)}")
    else:
        security_logger.log(level, f"SECURITY_EVENT {json.dumps(payload)}")


class LoggingSecurityEventEmitter:
    """Writes security events to the ``security`` logger only."""

    def emit(self, event: SecurityEvent) -> None:
        log_security_event(event)


class RecordingSecurityEventEmitter:
    """Keeps emitted events in memory; used by tests and local tooling."""

    def __init__(self):
        self.events: List[SecurityEvent] = []

    def emit(self, event: SecurityEvent) -> None:
        log_security_event(event)
        self.events.append(event)

    def of_type(self, event_type: SecurityEventType) -> List[SecurityEvent]:
        return [event for event in self.events if event.event_type == event_type]


class RedisSecurityEventEmitter:
    """Logs events and keeps them in Redis for 24 hours for audit review."""

    def __init__(self, client: redis.Redis, ttl: int = 86400):
        self.redis = client
        self.ttl = ttl
        self.security_prefix = "security:"

    def emit(self, event: SecurityEvent) -> None:
        log_security_event(event)
        event_key = f"{self.security_prefix}events:{int(event.timestamp * 1000)}:{event.event_type.value}"
        try:
            self.redis.set(event_key, json.dumps(event.to_dict()), ex=self.ttl)
        except redis.RedisError as e:
            # The log line above is the record of last resort.
            logger.error(f"Error recording security event: {str(e)}")

