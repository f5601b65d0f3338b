from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from snaptriage.core import metrics
from snaptriage.core.redis_client import await_if_needed
from snaptriage.schemas.relocation import RelocationPayload

logger = logging.getLogger(__name__)

RelocationHandler = Callable[[RelocationPayload], Awaitable[Any]]


class RelocationDispatcher(Protocol):
    async def dispatch(self, payload: RelocationPayload) -> None: ...


class RedisRelocationDispatcher:
    """Pushes payloads onto a Redis list consumed by ``snaptriage worker``."""

    def __init__(self, redis: Redis, queue_key: str) -> None:
        self.redis = redis
        self.queue_key = queue_key

    async def dispatch(self, payload: RelocationPayload) -> None:
        await await_if_needed(self.redis.rpush(self.queue_key, payload.to_wire()))
        metrics.record_relocation_dispatched()
        logger.info(
            "relocation_dispatched",
            extra={"image_id": str(payload.image_id), "queue": self.queue_key, "target_status": payload.target_status},
        )


class InProcessRelocationDispatcher:
    """Runs the handler as a task on the current event loop.

    Used when no Redis is configured. Delivery is best effort: tasks still pending
    when the process stops are lost, and the stale sweep later marks those records
    failed.
    """

    def __init__(self, handler: RelocationHandler) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task[None]] = set()

    async def dispatch(self, payload: RelocationPayload) -> None:
        task = asyncio.get_running_loop().create_task(self._run(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        metrics.record_relocation_dispatched()
        logger.info("relocation_dispatched", extra={"image_id": str(payload.image_id), "queue": "in_process"})

    async def _run(self, payload: RelocationPayload) -> None:
        try:
            await self._handler(payload)
        except Exception:
            logger.exception("relocation_task_crashed", extra={"image_id": str(payload.image_id)})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
