"""
ratelimit/store.py -- Counter storage for the rate limiter.

Counters live in a `limits` storage backend, the same library slowapi builds
on. The backend is chosen at startup from REDIS_URL:

  memory://  -- one process. Correct only when a single worker serves all
                traffic (dev, tests). limits expires its own keys.
  redis://   -- shared by every worker and instance. limits increments and
                sets the window expiry atomically on the server.

Errors raised by a storage backend (StorageError, or a RedisError the backend
let through) are listed in STORAGE_ERRORS so the limiter can fail closed.
"""

from __future__ import annotations

import logging

import redis
from limits.errors import StorageError
from limits.storage import Storage, storage_from_string

logger = logging.getLogger("campusguard.ratelimit")

MEMORY_URI = "memory://"

STORAGE_ERRORS: tuple[type[Exception], ...] = (StorageError, redis.RedisError)


def build_counter_store(redis_url: str = "", *, socket_timeout: float = 2.0) -> Storage:
    """Return a Redis-backed storage when redis_url is set, else in-process memory."""
    if redis_url:
        logger.info("Rate limit counters backed by Redis")
        return storage_from_string(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
    logger.warning("Rate limit counters are in-process; limits are per worker")
    return storage_from_string(MEMORY_URI)
