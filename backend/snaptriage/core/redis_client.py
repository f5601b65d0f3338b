from __future__ import annotations

import inspect
import logging
from typing import Awaitable, TypeVar, cast

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_redis(url: str | None) -> Redis | None:
    """Return a Redis client when a URL is configured, otherwise ``None`` (in-process mode)."""
    url = (url or "").strip()
    if not url:
        return None
    return Redis.from_url(url, encoding="utf-8", decode_responses=True)


async def close_redis(client: Redis | None) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("Failed to close Redis client")


async def await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)
