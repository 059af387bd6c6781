import json
import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from session_config import MAX_AGE
from session_policy import SessionRecord

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """The session record store could not be reached."""


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisSessionStore:
    """Session records in Redis, one JSON string per key with a TTL.

    Destroyed identifiers are remembered under ``revoked:`` so they are never
    handed out or accepted again while a cookie carrying them can still exist.
    """

    def __init__(self, redis_url: Optional[str] = None, tombstone_ttl: int = MAX_AGE, client: Optional[redis.Redis] = None):
        if client is None and not redis_url:
            raise ValueError("Either redis_url or client is required")
        if client is not None:
            self.pool = client.connection_pool
            self.redis = client
        else:
            self.pool = ConnectionPool.from_url(
                url=redis_url,
                max_connections=10,
                socket_timeout=5.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True
            )
            self.redis = redis.Redis(connection_pool=self.pool)

        self.circuit_state = CircuitState.CLOSED
        self.error_threshold = 5
        self.reset_timeout = 60
        self.error_count = 0
        self.last_error_time = 0
        self._circuit_lock = threading.Lock()

        self.session_prefix = "session:"
        self.revoked_prefix = "revoked:"
        self.tombstone_ttl = tombstone_ttl

        self.max_retries = 3
        self.base_delay = 0.1
        self.max_delay = 2.0

    def _build_key(self, prefix: str, key: str) -> str:
        return f"{prefix}{key}"

    def _check_circuit_state(self):
        with self._circuit_lock:
            if self.circuit_state == CircuitState.OPEN:
                if time.time() - self.last_error_time > self.reset_timeout:
                    self.circuit_state = CircuitState.HALF_OPEN
                    logger.info("Circuit breaker state changed to HALF_OPEN")
                else:
                    raise StoreUnavailable("Circuit breaker is OPEN")

    def _handle_error(self, error: Exception):
        with self._circuit_lock:
            self.error_count += 1
            if self.error_count >= self.error_threshold or self.circuit_state == CircuitState.HALF_OPEN:
                self.circuit_state = CircuitState.OPEN
                self.last_error_time = time.time()
                logger.warning(f"Circuit breaker opened due to {self.error_count} errors")
        logger.error(f"Redis operation error: {str(error)}")

    def _handle_success(self):
        with self._circuit_lock:
            if self.circuit_state == CircuitState.HALF_OPEN:
                self.circuit_state = CircuitState.CLOSED
                logger.info("Circuit breaker reset to CLOSED state")
            self.error_count = 0

    def _retry_operation(self, operation, *args, **kwargs):
        self._check_circuit_state()

        for attempt in range(self.max_retries):
            try:
                result = operation(*args, **kwargs)
                self._handle_success()
                return result
            except (ConnectionError, TimeoutError) as e:
                if attempt == self.max_retries - 1:
                    self._handle_error(e)
                    raise StoreUnavailable(f"Redis unavailable: {str(e)}") from e
                delay = min(self.base_delay * (2 ** attempt) + random.uniform(0, 0.1), self.max_delay)
                logger.warning(f"Redis operation failed, retrying in {delay:.2f}s. Error: {str(e)}")
                time.sleep(delay)
            except RedisError as e:
                # READONLY and OOM replies do not heal on retry.
                self._handle_error(e)
                raise StoreUnavailable(f"Redis refused operation: {str(e)}") from e

    def get(self, session_id: str) -> Optional[SessionRecord]:
        key = self._build_key(self.session_prefix, session_id)
        revoked_key = self._build_key(self.revoked_prefix, session_id)
        raw, revoked = self._retry_operation(self.redis.mget, key, revoked_key)

        if revoked is not None:
            logger.warning(f"Attempted access to revoked session: {session_id[:8]}")
            return None
        if raw is None:
            return None

        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # An unreadable record cannot be validated; drop it.
            logger.error(f"Discarding corrupt session record {session_id[:8]}: {str(e)}")
            self._retry_operation(self.redis.delete, key)
            return None

    def put(self, session_id: str, record: SessionRecord, ttl_ms: Optional[int] = None, *, nx: bool = False, xx: bool = False) -> bool:
        """Write a record. ``nx`` only creates, ``xx`` only overwrites a live record.

        ``ttl_ms=None`` keeps whatever TTL the key already has.
        """
        key = self._build_key(self.session_prefix, session_id)
        if nx and self._retry_operation(self.redis.exists, self._build_key(self.revoked_prefix, session_id)):
            return False

        options: Dict[str, Any] = {"nx": nx, "xx": xx}
        if ttl_ms is None:
            options["keepttl"] = True
        else:
            options["px"] = ttl_ms
        return bool(self._retry_operation(self.redis.set, key, json.dumps(record.to_dict()), **options))

    def delete(self, session_id: str) -> bool:
        key = self._build_key(self.session_prefix, session_id)
        revoked_key = self._build_key(self.revoked_prefix, session_id)

        def _destroy():
            with self.redis.pipeline() as pipe:
                pipe.multi()
                pipe.set(revoked_key, "1", ex=self.tombstone_ttl)
                pipe.delete(key)
                return pipe.execute()

        results = self._retry_operation(_destroy)
        return bool(results[-1])

    def health_check(self) -> Dict[str, Any]:
        health_info = {
            "status": "healthy",
            "circuit_state": self.circuit_state.value,
            "latency_ms": None,
            "errors": []
        }

        try:
            start_time = time.time()
            self._retry_operation(self.redis.ping)
            health_info["latency_ms"] = round((time.time() - start_time) * 1000, 2)
        except StoreUnavailable as e:
            health_info["status"] = "unhealthy"
            health_info["errors"].append(str(e))
        health_info["circuit_state"] = self.circuit_state.value

        return health_info

    def close(self) -> None:
        self.pool.disconnect()


class MemorySessionStore:
    """In-process store with the same TTL, create-only and update-only semantics.

    Suitable for development and tests; records do not survive a restart and
    are not shared between workers.
    """

    def __init__(self, tombstone_ttl: int = MAX_AGE, clock: Callable[[], int] = _now_ms):
        self._records: Dict[str, Tuple[str, Optional[int]]] = {}
        self._revoked: Dict[str, int] = {}
        self._tombstone_ttl_ms = tombstone_ttl * 1000
        self._clock = clock
        self._lock = threading.Lock()

    def _live_payload(self, session_id: str, now: int) -> Optional[str]:
        entry = self._records.get(session_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._records[session_id]
            return None
        return payload

    def _is_revoked(self, session_id: str, now: int) -> bool:
        expires_at = self._revoked.get(session_id)
        if expires_at is None:
            return False
        if now >= expires_at:
            del self._revoked[session_id]
            return False
        return True

    def _sweep(self, now: int) -> None:
        # Expired ids are never looked up again, so drop them on writes.
        for session_id, (_, expires_at) in list(self._records.items()):
            if expires_at is not None and now >= expires_at:
                del self._records[session_id]
        for session_id, expires_at in list(self._revoked.items()):
            if now >= expires_at:
                del self._revoked[session_id]

    def get(self, session_id: str) -> Optional[SessionRecord]:
        now = self._clock()
        with self._lock:
            if self._is_revoked(session_id, now):
                return None
            payload = self._live_payload(session_id, now)
        if payload is None:
            return None
        return SessionRecord.from_dict(json.loads(payload))

    def put(self, session_id: str, record: SessionRecord, ttl_ms: Optional[int] = None, *, nx: bool = False, xx: bool = False) -> bool:
        now = self._clock()
        payload = json.dumps(record.to_dict())
        with self._lock:
            if nx:
                self._sweep(now)
            current = self._live_payload(session_id, now)
            if nx and (current is not None or self._is_revoked(session_id, now)):
                return False
            if xx and current is None:
                return False

            if ttl_ms is None:
                expires_at = self._records[session_id][1] if current is not None else None
            else:
                expires_at = now + ttl_ms
            self._records[session_id] = (payload, expires_at)
            return True

    def delete(self, session_id: str) -> bool:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._revoked[session_id] = now + self._tombstone_ttl_ms
            existed = self._live_payload(session_id, now) is not None
            self._records.pop(session_id, None)
            return existed

    def health_check(self) -> Dict[str, Any]:
        with self._lock:
            return {"status": "healthy", "sessions": len(self._records)}

    def close(self) -> None:
        with self._lock:
            self._records.clear()
            self._revoked.clear()
