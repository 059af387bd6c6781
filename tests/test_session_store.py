import json
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError, ReadOnlyError, ResponseError

import session_store
from session_factory import SessionLifecycle
from session_policy import Fingerprint, SessionRecord
from session_store import CircuitState, MemorySessionStore, RedisSessionStore, StoreUnavailable

from conftest import T0, FakeClock

SID = "9f" * 32


def _record(**overrides):
    values = {"session_id": SID, "user_id": "user-1", "login_time": T0, "last_activity": T0}
    values.update(overrides)
    return SessionRecord(**values)


class TestMemorySessionStore:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemorySessionStore(tombstone_ttl=3600, clock=self.clock)

    def test_create_only_and_update_only(self):
        assert self.store.put(SID, _record(), 1000, xx=True) is False
        assert self.store.put(SID, _record(), 1000, nx=True) is True
        assert self.store.put(SID, _record(), 1000, nx=True) is False
        assert self.store.put(SID, _record(last_activity=T0 + 5), 1000, xx=True) is True
        assert self.store.get(SID).last_activity == T0 + 5

    def test_ttl_expiry(self):
        self.store.put(SID, _record(), 1000, nx=True)
        self.clock.advance(ms=999)
        assert self.store.get(SID) is not None
        self.clock.advance(ms=1)
        assert self.store.get(SID) is None

    def test_update_without_ttl_keeps_existing_expiry(self):
        self.store.put(SID, _record(), 1000, nx=True)
        self.clock.advance(ms=600)
        self.store.put(SID, _record(last_activity=T0 + 600), None, xx=True)
        self.clock.advance(ms=400)
        assert self.store.get(SID) is None

    def test_destroyed_record_cannot_be_resurrected(self):
        self.store.put(SID, _record(), 60_000, nx=True)
        stale = self.store.get(SID)
        assert self.store.delete(SID) is True
        assert self.store.put(SID, stale.touched(T0 + 10), 60_000, xx=True) is False
        assert self.store.put(SID, stale, 60_000, nx=True) is False
        assert self.store.get(SID) is None

    def test_records_are_copies(self):
        self.store.put(SID, _record(), 60_000, nx=True)
        loaded = self.store.get(SID)
        loaded.fingerprint = Fingerprint("10.0.0.1", "agent")
        assert self.store.get(SID).fingerprint is None

    def test_expired_entries_are_swept_on_writes(self):
        self.store.put("a" * 64, _record(session_id="a" * 64), 1000, nx=True)
        self.store.delete("b" * 64)
        self.clock.advance(ms=3600 * 1000)

        self.store.put(SID, _record(), 1000, nx=True)
        assert set(self.store._records) == {SID}
        assert self.store._revoked == {}

        self.store.delete(SID)
        assert set(self.store._revoked) == {SID}
        assert self.store._records == {}


@pytest.fixture
def redis_client():
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute.return_value = [True, 1]
    client.pipeline.return_value.__enter__.return_value = pipe
    return client


@pytest.fixture
def redis_store(redis_client, monkeypatch):
    monkeypatch.setattr(session_store.time, "sleep", lambda seconds: None)
    return RedisSessionStore(client=redis_client, tombstone_ttl=3600)


def test_redis_get_decodes_record(redis_store, redis_client):
    record = _record(fingerprint=Fingerprint("10.0.0.1", "agent"))
    redis_client.mget.return_value = [json.dumps(record.to_dict()).encode(), None]
    assert redis_store.get(SID) == record
    redis_client.mget.assert_called_once_with(f"session:{SID}", f"revoked:{SID}")


def test_redis_get_honours_tombstone(redis_store, redis_client):
    redis_client.mget.return_value = [json.dumps(_record().to_dict()).encode(), b"1"]
    assert redis_store.get(SID) is None


def test_redis_get_drops_corrupt_record(redis_store, redis_client):
    redis_client.mget.return_value = [b"{not json", None]
    assert redis_store.get(SID) is None
    redis_client.delete.assert_called_once_with(f"session:{SID}")


def test_redis_put_options(redis_store, redis_client):
    redis_client.exists.return_value = 0
    redis_client.set.return_value = True
    assert redis_store.put(SID, _record(), 5000, nx=True) is True
    _, kwargs = redis_client.set.call_args
    assert kwargs == {"nx": True, "xx": False, "px": 5000}

    redis_client.set.return_value = None
    assert redis_store.put(SID, _record(), None, xx=True) is False
    _, kwargs = redis_client.set.call_args
    assert kwargs == {"nx": False, "xx": True, "keepttl": True}


def test_redis_create_refuses_revoked_identifier(redis_store, redis_client):
    redis_client.exists.return_value = 1
    assert redis_store.put(SID, _record(), 5000, nx=True) is False
    redis_client.set.assert_not_called()


def test_redis_delete_tombstones_then_deletes(redis_store, redis_client):
    assert redis_store.delete(SID) is True
    pipe = redis_client.pipeline.return_value.__enter__.return_value
    pipe.set.assert_called_once_with(f"revoked:{SID}", "1", ex=3600)
    pipe.delete.assert_called_once_with(f"session:{SID}")


def test_redis_errors_surface_as_store_unavailable(redis_store, redis_client):
    redis_client.mget.side_effect = ConnectionError("connection refused")
    with pytest.raises(StoreUnavailable):
        redis_store.get(SID)
    assert redis_client.mget.call_count == redis_store.max_retries


def test_circuit_opens_after_repeated_failures(redis_store, redis_client):
    redis_client.mget.side_effect = ConnectionError("connection refused")
    for _ in range(redis_store.error_threshold):
        with pytest.raises(StoreUnavailable):
            redis_store.get(SID)
    assert redis_store.circuit_state is CircuitState.OPEN

    calls = redis_client.mget.call_count
    with pytest.raises(StoreUnavailable, match="Circuit breaker"):
        redis_store.get(SID)
    assert redis_client.mget.call_count == calls


def test_health_check_reports_outage(redis_store, redis_client):
    redis_client.ping.side_effect = ConnectionError("down")
    health = redis_store.health_check()
    assert health["status"] == "unhealthy"
    assert health["errors"]

    redis_client.ping.side_effect = None
    redis_client.ping.return_value = True
    assert redis_store.health_check()["status"] == "healthy"


def test_server_refusals_surface_without_retry(redis_store, redis_client):
    redis_client.mget.side_effect = ReadOnlyError("READONLY You can't write against a read only replica.")
    with pytest.raises(StoreUnavailable, match="READONLY"):
        redis_store.get(SID)
    assert redis_client.mget.call_count == 1
    assert redis_store.error_count == 1


def test_refused_write_surfaces_as_store_unavailable(redis_store, redis_client):
    redis_client.set.side_effect = ResponseError("ERR syntax error")
    with pytest.raises(StoreUnavailable):
        redis_store.put(SID, _record(), None, xx=True)


def test_refused_delete_is_logged_not_raised(redis_store, redis_client):
    pipe = redis_client.pipeline.return_value.__enter__.return_value
    pipe.execute.side_effect = ReadOnlyError("READONLY You can't write against a read only replica.")
    assert SessionLifecycle(redis_store).destroy_quietly(SID) is False


def test_circuit_counters_are_consistent_across_threads(redis_store):
    def _fail():
        for _ in range(100):
            redis_store._handle_error(ConnectionError("down"))

    workers = [threading.Thread(target=_fail) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert redis_store.error_count == 800
    assert redis_store.circuit_state is CircuitState.OPEN
