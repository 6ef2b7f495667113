import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

import redis
from redis import Redis

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
JOB_LOCK_TTL_SECONDS = int(os.getenv("JOB_LOCK_TTL_SECONDS", "300"))

_client: Optional["Redis[str]"] = None


def get_redis_client() -> "Redis[str]":
    """
    Lazily build the shared client; the first call pings the server so a bad
    REDIS_URL fails loudly instead of on the first lock.
    """
    global _client
    if _client is None:
        # decode_responses=True 讓拿出來的資料直接是字串
        client = redis.from_url(REDIS_URL, decode_responses=True)
        if not client.ping():
            raise redis.ConnectionError("Ping failed")
        _client = client
    return _client


@contextmanager
def job_lock(
    name: str,
    ttl: int = JOB_LOCK_TTL_SECONDS,
    client: Optional["Redis[str]"] = None,
) -> Iterator[bool]:
    """
    SET NX EX lock around a job run.
    Yields True when this caller owns the lock, False when another run holds it.
    """
    client = client or get_redis_client()
    lock_key = f"lock:job:{name}"
    acquired = bool(client.set(lock_key, "1", nx=True, ex=ttl))
    if not acquired:
        logger.info(f" ♻️ [Redis] Job '{name}' already running. Skipping.")
    try:
        yield acquired
    finally:
        if acquired:
            client.delete(lock_key)
