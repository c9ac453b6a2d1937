"""
Persistence adapter for challenges and device keys.

One async get/set/delete contract with three implementations:

- MemoryBackend (cache.py): process-local, selected when no durable
  backend is configured
- RedisBackend: redis.asyncio against a Redis server (REDIS_URL)
- UpstashRestBackend: Upstash Redis over its REST API (httpx)

The backend is chosen once at process start by create_backend().
Transport failures and timeouts raise PersistenceError; they are never
reported as a missing key.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """The persistence backend could not complete an operation."""

    def __init__(self, backend: str, operation: str, key: Optional[str] = None):
        self.backend = backend
        self.operation = operation
        self.key = key
        super().__init__(f"{backend} {operation} failed" + (f" for key {key}" if key else ""))


def whole_seconds(ttl_seconds: Optional[float]) -> Optional[int]:
    """Native key expiry only accepts whole seconds, at least one."""
    if ttl_seconds is None:
        return None
    return max(1, math.ceil(ttl_seconds))


class PersistenceBackend(ABC):
    """Uniform async key-value contract used by the stores."""

    name = "abstract"
    durable = False

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Store a value, expiring after ttl_seconds when given."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; deleting a missing key is not an error."""

    async def sweep_expired(self) -> int:
        """Remove expired entries. Backends with native expiry have nothing to do."""
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisBackend(PersistenceBackend):
    """
    Redis server backend using redis.asyncio.

    Every call is bounded by the configured timeout, both at the socket
    level and around the awaited command.
    """

    name = "redis"
    durable = True

    def __init__(self, url: Optional[str] = None, timeout: float = 3.0,
                 client: Optional[redis.Redis] = None):
        """
        Args:
            url: Redis connection URL
            timeout: Seconds before a command is treated as failed
            client: Pre-built client, used instead of url
        """
        if client is None and not url:
            raise ValueError("RedisBackend needs a url or a client")
        self.timeout = timeout
        self.client = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    async def _call(self, operation: str, key: Optional[str], awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"[RedisBackend] {operation} failed for key={key}: {e}")
            raise PersistenceError(self.name, operation, key) from e

    async def get(self, key: str) -> Optional[str]:
        value = await self._call("GET", key, self.client.get(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        await self._call("SET", key, self.client.set(key, value, ex=whole_seconds(ttl_seconds)))
        logger.debug(f"[RedisBackend] SET key={key}, ttl={whole_seconds(ttl_seconds)}s")

    async def delete(self, key: str) -> None:
        await self._call("DEL", key, self.client.delete(key))

    async def ping(self) -> bool:
        return bool(await self._call("PING", None, self.client.ping()))

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("[RedisBackend] Disconnected from Redis")


class UpstashRestBackend(PersistenceBackend):
    """
    Upstash Redis backend over the REST API.

    Each command is a single POST of a JSON array; the response carries
    either "result" or "error".
    """

    name = "upstash"
    durable = True

    def __init__(self, url: str, token: str, timeout: float = 3.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def _command(self, *args: Any) -> Any:
        operation = str(args[0])
        key = str(args[1]) if len(args) > 1 else None
        try:
            response = await self.client.post("/", json=[str(a) for a in args])
        except httpx.HTTPError as e:
            logger.error(f"[UpstashRestBackend] {operation} failed for key={key}: {e}")
            raise PersistenceError(self.name, operation, key) from e

        if response.status_code >= 400:
            logger.error(f"[UpstashRestBackend] {operation} returned HTTP {response.status_code}")
            raise PersistenceError(self.name, operation, key)

        try:
            body = response.json()
        except ValueError as e:
            raise PersistenceError(self.name, operation, key) from e

        if not isinstance(body, dict) or "error" in body:
            error = body.get("error") if isinstance(body, dict) else body
            logger.error(f"[UpstashRestBackend] {operation} error: {error}")
            raise PersistenceError(self.name, operation, key)
        return body.get("result")

    async def get(self, key: str) -> Optional[str]:
        return await self._command("GET", key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        ttl = whole_seconds(ttl_seconds)
        if ttl is None:
            await self._command("SET", key, value)
        else:
            await self._command("SET", key, value, "EX", ttl)

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

    async def ping(self) -> bool:
        return await self._command("PING") == "PONG"

    async def close(self) -> None:
        await self.client.aclose()


def create_backend(config: 'AttestationConfig') -> PersistenceBackend:
    """
    Select the persistence backend from configuration.

    Called once per process; the returned backend is shared by the
    challenge store and the device key registry.
    """
    from .cache import MemoryBackend

    if bool(config.upstash_rest_url) != bool(config.upstash_rest_token):
        logger.warning("Upstash REST configuration is partial (URL and token are both required); ignoring it")

    selected = config.durable_backend()
    if selected == "upstash":
        logger.info("Using Upstash REST backend for integrity state")
        return UpstashRestBackend(
            config.upstash_rest_url,
            config.upstash_rest_token,
            timeout=config.store_timeout,
        )
    if selected == "redis":
        logger.info("Using Redis backend for integrity state")
        return RedisBackend(config.redis_url, timeout=config.store_timeout)

    logger.warning("No durable backend configured - integrity state is process-local "
                   "and will not be shared between instances")
    return MemoryBackend(maxsize=config.memory_store_size)
