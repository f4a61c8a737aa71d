# common/cache.py
import json
import logging
import os
from datetime import date
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None

SCHEDULE_PREFIX = "rooms:schedule:"
SCHEDULE_TTL_SECONDS = 120


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.
    Fails gracefully (no caching) if Redis is not reachable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.RedisError as exc:
        logger.warning(f"Redis unavailable at {redis_url}, running without cache: {exc}")
        return None

    _redis_client = client
    return _redis_client


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        logger.warning(f"Cache read failed for {key}: {exc}")
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning(f"Cache write failed for {key}: {exc}")


def delete_prefix(prefix: str) -> None:
    """
    Delete all keys starting with prefix, e.g. 'rooms:schedule:7:'.
    """
    client = get_redis_client()
    if client is None:
        return

    try:
        for k in client.scan_iter(prefix + "*"):
            client.delete(k)
    except redis.RedisError as exc:
        logger.warning(f"Cache invalidation failed for {prefix}*: {exc}")


def schedule_key(room_id: int, day: date) -> str:
    return f"{SCHEDULE_PREFIX}{room_id}:{day.isoformat()}"


def invalidate_room_schedule(room_id: int) -> None:
    """Drop every cached day schedule of one room."""
    delete_prefix(f"{SCHEDULE_PREFIX}{room_id}:")
