from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
from uuid import uuid4

from pydantic import ValidationError

from snaptriage.core.config import get_settings
from snaptriage.core.context import TriageContext, build_context, close_context
from snaptriage.core.logging_config import configure_logging
from snaptriage.core.sentry import init_sentry
from snaptriage.core.redis_client import await_if_needed
from snaptriage.schemas.relocation import RelocationPayload
from snaptriage.services.relocation_tasks import process_relocation, sweep_stale_relocations

logger = logging.getLogger(__name__)


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def decode_payload(raw: object) -> RelocationPayload | None:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = str(raw or "").strip()
    try:
        return RelocationPayload.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("relocation_worker_invalid_payload", extra={"raw_repr": text[:500], "error": str(exc)})
        return None


async def requeue_inflight(ctx: TriageContext) -> int:
    """Put payloads left in the processing list by a dead worker back on the queue."""
    settings = ctx.settings
    moved = 0
    while True:
        item = await await_if_needed(
            ctx.redis.lmove(settings.relocation_processing_key, settings.relocation_queue_key, "RIGHT", "LEFT")
        )
        if item is None:
            break
        moved += 1
    if moved:
        logger.warning("relocation_worker_requeued_inflight", extra={"count": moved})
    return moved


async def process_next(ctx: TriageContext, *, timeout: int = 1) -> bool:
    """Take one payload off the queue and run it; returns False when the queue stayed empty."""
    settings = ctx.settings
    raw = await await_if_needed(
        ctx.redis.blmove(settings.relocation_queue_key, settings.relocation_processing_key, timeout, "LEFT", "RIGHT")
    )
    if raw is None:
        return False
    try:
        payload = decode_payload(raw)
        if payload is not None:
            await process_relocation(ctx, payload)
    finally:
        await await_if_needed(ctx.redis.lrem(settings.relocation_processing_key, 1, raw))
    return True


async def _sweep_once(ctx: TriageContext) -> int:
    try:
        return await sweep_stale_relocations(ctx)
    except Exception:
        logger.exception("relocation_worker_sweep_failed")
        return 0


def _stopped(stop: asyncio.Event | None) -> bool:
    return stop is not None and stop.is_set()


async def _run_redis_worker_loop(
    ctx: TriageContext, *, worker_id: str, poll_interval_seconds: float, stop: asyncio.Event | None
) -> None:
    logger.info("relocation_worker_started", extra={"worker_id": worker_id, "queue": ctx.settings.relocation_queue_key})
    await requeue_inflight(ctx)
    sweep_interval = float(ctx.settings.relocation_sweep_interval_seconds)
    last_sweep = 0.0
    while not _stopped(stop):
        try:
            now = time.monotonic()
            if now - last_sweep >= sweep_interval:
                await _sweep_once(ctx)
                last_sweep = now
            await process_next(ctx, timeout=max(1, int(poll_interval_seconds)))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("relocation_worker_loop_error", extra={"worker_id": worker_id})
            await asyncio.sleep(max(0.5, poll_interval_seconds))


async def _run_degraded_worker_loop(
    ctx: TriageContext, *, worker_id: str, poll_interval_seconds: float, stop: asyncio.Event | None
) -> None:
    logger.warning(
        "relocation_worker_degraded_mode_started",
        extra={"worker_id": worker_id, "sweep_interval_seconds": ctx.settings.relocation_sweep_interval_seconds},
    )
    while not _stopped(stop):
        swept = await _sweep_once(ctx)
        if swept:
            logger.warning("relocation_worker_degraded_mode_stats", extra={"worker_id": worker_id, "swept": swept})
        try:
            await asyncio.wait_for(
                stop.wait() if stop is not None else asyncio.sleep(ctx.settings.relocation_sweep_interval_seconds),
                timeout=max(poll_interval_seconds, float(ctx.settings.relocation_sweep_interval_seconds)),
            )
        except asyncio.TimeoutError:
            continue


async def run_relocation_worker(
    ctx: TriageContext,
    *,
    poll_interval_seconds: float = 2.0,
    stop: asyncio.Event | None = None,
) -> None:
    """Consume relocation payloads from Redis; without Redis only sweep stale relocations."""
    worker_id = _worker_id()
    if ctx.redis is None:
        await _run_degraded_worker_loop(ctx, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds, stop=stop)
        return
    await _run_redis_worker_loop(ctx, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds, stop=stop)


async def _main(poll_interval_seconds: float) -> None:
    settings = get_settings()
    configure_logging(settings.log_json)
    init_sentry(settings, component="worker")
    ctx = build_context(settings)
    try:
        await run_relocation_worker(ctx, poll_interval_seconds=poll_interval_seconds)
    finally:
        await close_context(ctx)


def main(poll_interval_seconds: float = 2.0) -> None:  # pragma: no cover
    asyncio.run(_main(poll_interval_seconds))


if __name__ == "__main__":  # pragma: no cover
    main()
