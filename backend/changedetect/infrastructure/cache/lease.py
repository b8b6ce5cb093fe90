"""
Redis Lease

Single-runner lock with an owner token. Acquire is SET NX PX; release
and renew only touch the key while it still holds our token.
"""

import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from redis.connection import ConnectionPool

from changedetect.core.config import settings
from changedetect.core.exceptions import LeaseError
from changedetect.core.logging_config import get_logger

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

def create_redis_client(redis_url: Optional[str] = None) -> redis.Redis:
    """Redis client on a pooled connection."""
    pool = ConnectionPool.from_url(
        redis_url or settings.redis.redis_url,
        max_connections=settings.redis.max_connections,
        socket_keepalive=settings.redis.socket_keepalive,
        socket_connect_timeout=settings.redis.socket_connect_timeout,
        decode_responses=True,
    )
    return redis.Redis(connection_pool=pool)

class RedisLease:
    """Time-bounded exclusive lease on a Redis key."""

    def __init__(self, client: redis.Redis, key: str, ttl_seconds: int):
        self.client = client
        self.key = key
        self.ttl_ms = int(ttl_seconds * 1000)
        self.token: Optional[str] = None
        self.logger = get_logger("cache.lease")
        self._release = client.register_script(_RELEASE_SCRIPT)
        self._renew = client.register_script(_RENEW_SCRIPT)

    @property
    def is_held(self) -> bool:
        return self.token is not None

    def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if not self.client.set(self.key, token, nx=True, px=self.ttl_ms):
            self.logger.info(f"Lease busy: {self.key}", extra={"lease_key": self.key})
            return False
        self.token = token
        self.logger.debug(f"Lease acquired: {self.key}", extra={"lease_key": self.key})
        return True

    def renew(self) -> bool:
        """Push the expiry out again. False means the lease was lost."""
        if self.token is None:
            return False
        renewed = bool(self._renew(keys=[self.key], args=[self.token, self.ttl_ms]))
        if not renewed:
            self.logger.warning(f"Lease lost before renewal: {self.key}", extra={"lease_key": self.key})
            self.token = None
        return renewed

    def release(self) -> bool:
        if self.token is None:
            return False
        released = bool(self._release(keys=[self.key], args=[self.token]))
        self.token = None
        if not released:
            self.logger.warning(f"Lease expired before release: {self.key}", extra={"lease_key": self.key})
        return released

    @contextmanager
    def held(self) -> Iterator["RedisLease"]:
        """Hold the lease for a block; raises LeaseError when it is taken."""
        if not self.acquire():
            raise LeaseError(self.key)
        try:
            yield self
        finally:
            self.release()

__all__ = ['RedisLease', 'create_redis_client']
