"""
Unit tests for the persistence backends.

The same behavioral contract runs against the memory, Redis and Upstash
REST backends.
"""

import asyncio
import json

import fakeredis
import httpx
import pytest
from unittest.mock import AsyncMock, Mock
from redis.exceptions import ConnectionError as RedisConnectionError

from integrity_gate.services.attestation.cache import MemoryBackend
from integrity_gate.services.attestation.config import AttestationConfig
from integrity_gate.services.attestation.persistence import (
    PersistenceError,
    RedisBackend,
    UpstashRestBackend,
    create_backend,
    whole_seconds,
)

from conftest import FakeClock


class FakeUpstash:
    """In-memory stand-in for the Upstash REST endpoint."""

    def __init__(self):
        self.data = {}
        self.commands = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer upstash-token"
        command = json.loads(request.content)
        self.commands.append(command)
        name = command[0].upper()
        if name == "GET":
            return httpx.Response(200, json={"result": self.data.get(command[1])})
        if name == "SET":
            self.data[command[1]] = command[2]
            return httpx.Response(200, json={"result": "OK"})
        if name == "DEL":
            removed = 1 if self.data.pop(command[1], None) is not None else 0
            return httpx.Response(200, json={"result": removed})
        if name == "PING":
            return httpx.Response(200, json={"result": "PONG"})
        return httpx.Response(400, json={"error": f"ERR unknown command '{name}'"})


def upstash_backend(handler, timeout: float = 3.0) -> UpstashRestBackend:
    return UpstashRestBackend("https://example.upstash.io/", "upstash-token",
                              timeout=timeout, transport=httpx.MockTransport(handler))


@pytest.fixture(params=["memory", "redis", "upstash"])
async def backend(request):
    """Each backend implementation in turn."""
    if request.param == "memory":
        instance = MemoryBackend(maxsize=100)
    elif request.param == "redis":
        instance = RedisBackend(client=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(),
                                                                decode_responses=True))
    else:
        instance = upstash_backend(FakeUpstash())
    yield instance
    await instance.close()


class TestBackendContract:
    """Behavior every backend must share."""

    async def test_get_absent(self, backend):
        """Test a missing key reads as None."""
        assert await backend.get("integrity:challenge:missing") is None

    async def test_set_then_get(self, backend):
        """Test a stored value is read back unchanged."""
        await backend.set("integrity:challenge:a", '{"platform":"android"}', ttl_seconds=300)

        assert await backend.get("integrity:challenge:a") == '{"platform":"android"}'

    async def test_set_without_ttl(self, backend):
        """Test values can be stored without expiry."""
        await backend.set("integrity:ioskey:k", '{"signCount":0}')

        assert await backend.get("integrity:ioskey:k") == '{"signCount":0}'

    async def test_overwrite_is_last_write_wins(self, backend):
        """Test a second set replaces the first."""
        await backend.set("k", "first")
        await backend.set("k", "second")

        assert await backend.get("k") == "second"

    async def test_delete(self, backend):
        """Test a deleted key reads as None."""
        await backend.set("k", "v", ttl_seconds=60)
        await backend.delete("k")

        assert await backend.get("k") is None

    async def test_delete_missing_key(self, backend):
        """Test deleting an unknown key is not an error."""
        await backend.delete("never-set")

    async def test_ping(self, backend):
        """Test a reachable backend answers ping."""
        assert await backend.ping() is True


class TestWholeSeconds:
    """Test cases for durable TTL rounding."""

    def test_rounds_up(self):
        assert whole_seconds(1.2) == 2
        assert whole_seconds(300) == 300

    def test_minimum_one_second(self):
        assert whole_seconds(0.001) == 1
        assert whole_seconds(0) == 1

    def test_none(self):
        assert whole_seconds(None) is None


class TestMemoryBackend:
    """Test cases for MemoryBackend expiry."""

    @pytest.fixture
    def clock(self):
        return FakeClock(0.0)

    @pytest.fixture
    def backend(self, clock):
        return MemoryBackend(maxsize=100, timer=clock)

    async def test_entry_expires_after_ttl(self, backend, clock):
        """Test an entry is gone once its TTL elapses."""
        await backend.set("k", "v", ttl_seconds=0.5)

        clock.advance(0.4)
        assert await backend.get("k") == "v"

        clock.advance(0.2)
        assert await backend.get("k") is None

    async def test_entry_without_ttl_never_expires(self, backend, clock):
        """Test entries stored without TTL survive any clock advance."""
        await backend.set("k", "v")

        clock.advance(10 ** 9)

        assert await backend.get("k") == "v"

    async def test_sweep_removes_only_expired(self, backend, clock):
        """Test sweep_expired drops expired entries and reports the count."""
        await backend.set("short-1", "v", ttl_seconds=1)
        await backend.set("short-2", "v", ttl_seconds=1)
        await backend.set("long", "v", ttl_seconds=100)
        await backend.set("forever", "v")

        clock.advance(2)
        removed = await backend.sweep_expired()

        assert removed == 2
        assert await backend.get("long") == "v"
        assert await backend.get("forever") == "v"
        assert backend.get_stats()["expired"] == 2

    async def test_stats(self, backend):
        """Test operation counters."""
        await backend.set("k", "v")
        await backend.get("k")
        await backend.delete("k")

        stats = backend.get_stats()
        assert stats["sets"] == 1
        assert stats["gets"] == 1
        assert stats["deletes"] == 1
        assert stats["size"] == 0
        assert stats["maxsize"] == 100


class TestMemoryBackendCapacity:
    """Test cases for MemoryBackend capacity limits."""

    @pytest.fixture
    def clock(self):
        return FakeClock(0.0)

    @pytest.fixture
    def backend(self, clock):
        return MemoryBackend(maxsize=3, timer=clock)

    async def test_entries_without_ttl_are_never_evicted(self, backend):
        """Test a flood of expiring entries cannot push out persistent ones."""
        await backend.set("integrity:ioskey:enrolled", "key")

        for i in range(3):
            await backend.set(f"integrity:challenge:{i}", "c", ttl_seconds=300)
        with pytest.raises(PersistenceError):
            await backend.set("integrity:challenge:overflow", "c", ttl_seconds=300)

        assert await backend.get("integrity:ioskey:enrolled") == "key"

    async def test_full_store_refuses_instead_of_evicting(self, backend):
        """Test live expiring entries stay loadable when the store is full."""
        for i in range(3):
            await backend.set(f"c{i}", "v", ttl_seconds=300)

        with pytest.raises(PersistenceError) as exc_info:
            await backend.set("c3", "v", ttl_seconds=300)

        assert exc_info.value.operation == "SET"
        assert [await backend.get(f"c{i}") for i in range(3)] == ["v", "v", "v"]
        assert await backend.get("c3") is None
        assert backend.get_stats()["refused"] == 1

    async def test_overwrite_when_full_is_allowed(self, backend):
        """Test an existing key can be rewritten at capacity."""
        for i in range(3):
            await backend.set(f"c{i}", "v", ttl_seconds=300)

        await backend.set("c0", "new", ttl_seconds=300)

        assert await backend.get("c0") == "new"

    async def test_expired_entries_free_capacity(self, backend, clock):
        """Test room is reclaimed once entries expire."""
        for i in range(3):
            await backend.set(f"c{i}", "v", ttl_seconds=1)
        clock.advance(2)

        await backend.set("c3", "v", ttl_seconds=1)

        assert await backend.get("c3") == "v"

    async def test_persistent_keys_do_not_count_against_capacity(self, backend):
        """Test device keys never use up challenge capacity."""
        for i in range(10):
            await backend.set(f"integrity:ioskey:{i}", "key")

        await backend.set("c0", "v", ttl_seconds=300)

        assert backend.get_stats()["persistent"] == 10

    async def test_expiry_on_read_is_counted(self, backend, clock):
        """Test entries dropped during a read still show up in the expired count."""
        await backend.set("c0", "v", ttl_seconds=1)
        await backend.set("c1", "v", ttl_seconds=1)
        clock.advance(2)

        assert await backend.get("c0") is None
        assert await backend.sweep_expired() == 0
        assert backend.get_stats()["expired"] == 2
        assert backend.get_stats()["expiring"] == 1


class TestRedisBackend:
    """Test cases for RedisBackend."""

    @pytest.fixture
    def client(self):
        return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)

    async def test_ttl_is_whole_seconds(self, client):
        """Test challenge TTLs are rounded up to native whole seconds."""
        backend = RedisBackend(client=client)

        await backend.set("k", "v", ttl_seconds=1.5)

        assert await client.ttl("k") == 2

    async def test_no_ttl_means_persistent(self, client):
        """Test keys stored without TTL have no expiry."""
        backend = RedisBackend(client=client)

        await backend.set("k", "v")

        assert await client.ttl("k") == -1

    async def test_connection_error_is_persistence_error(self):
        """Test transport failures are distinguishable from a missing key."""
        client = Mock()
        client.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        backend = RedisBackend(client=client)

        with pytest.raises(PersistenceError) as exc_info:
            await backend.get("integrity:challenge:r1")

        assert exc_info.value.backend == "redis"
        assert exc_info.value.operation == "GET"
        assert exc_info.value.key == "integrity:challenge:r1"

    async def test_timeout_is_persistence_error(self):
        """Test a command exceeding the timeout fails instead of hanging."""
        async def never_answers(*args, **kwargs):
            await asyncio.sleep(10)

        client = Mock()
        client.set = never_answers
        backend = RedisBackend(client=client, timeout=0.01)

        with pytest.raises(PersistenceError):
            await backend.set("k", "v", ttl_seconds=1)

    def test_requires_url_or_client(self):
        """Test construction without a target is rejected."""
        with pytest.raises(ValueError):
            RedisBackend()


class TestUpstashRestBackend:
    """Test cases for UpstashRestBackend."""

    async def test_set_sends_expiry_in_whole_seconds(self):
        """Test SET carries EX with the rounded TTL."""
        upstash = FakeUpstash()
        backend = upstash_backend(upstash)

        await backend.set("integrity:challenge:r1", "value", ttl_seconds=0.25)
        await backend.close()

        assert upstash.commands == [["SET", "integrity:challenge:r1", "value", "EX", "1"]]

    async def test_transport_error(self):
        """Test an unreachable endpoint raises PersistenceError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = upstash_backend(handler)

        with pytest.raises(PersistenceError):
            await backend.get("k")
        await backend.close()

    async def test_timeout(self):
        """Test a timed out request raises PersistenceError."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        backend = upstash_backend(handler, timeout=0.01)

        with pytest.raises(PersistenceError):
            await backend.get("k")
        await backend.close()

    async def test_http_error_status(self):
        """Test an HTTP error status raises PersistenceError."""
        backend = upstash_backend(lambda request: httpx.Response(401, json={"error": "Unauthorized"}))

        with pytest.raises(PersistenceError):
            await backend.set("k", "v")
        await backend.close()

    async def test_error_body(self):
        """Test an error body with 200 status raises PersistenceError."""
        backend = upstash_backend(lambda request: httpx.Response(200, json={"error": "WRONGTYPE"}))

        with pytest.raises(PersistenceError):
            await backend.get("k")
        await backend.close()

    async def test_non_json_body(self):
        """Test an unparseable body raises PersistenceError."""
        backend = upstash_backend(lambda request: httpx.Response(200, text="<html>bad gateway</html>"))

        with pytest.raises(PersistenceError):
            await backend.get("k")
        await backend.close()


class TestCreateBackend:
    """Test cases for backend selection."""

    async def test_memory_when_nothing_configured(self):
        """Test the in-process backend is the fallback."""
        backend = create_backend(AttestationConfig(memory_store_size=10))

        assert isinstance(backend, MemoryBackend)
        assert backend.durable is False
        assert backend.get_stats()["maxsize"] == 10

    async def test_upstash_preferred(self):
        """Test Upstash REST wins over REDIS_URL."""
        backend = create_backend(AttestationConfig(
            upstash_rest_url="https://example.upstash.io",
            upstash_rest_token="token",
            redis_url="redis://localhost:6379/0",
        ))

        assert isinstance(backend, UpstashRestBackend)
        assert backend.durable is True
        await backend.close()

    async def test_redis_url(self):
        """Test REDIS_URL selects the Redis backend."""
        backend = create_backend(AttestationConfig(redis_url="redis://localhost:6379/0", store_timeout=1.5))

        assert isinstance(backend, RedisBackend)
        assert backend.timeout == 1.5
        await backend.close()

    async def test_partial_upstash_is_ignored(self, caplog):
        """Test a URL without token falls back and warns."""
        backend = create_backend(AttestationConfig(upstash_rest_url="https://example.upstash.io"))

        assert isinstance(backend, MemoryBackend)
        assert "partial" in caplog.text

    async def test_upstash_aliases_from_environment(self, monkeypatch):
        """Test KV_REST_API_* environment names select Upstash."""
        monkeypatch.setenv("KV_REST_API_URL", "https://example.upstash.io")
        monkeypatch.setenv("KV_REST_API_TOKEN", "token")

        backend = create_backend(AttestationConfig())

        assert isinstance(backend, UpstashRestBackend)
        await backend.close()
