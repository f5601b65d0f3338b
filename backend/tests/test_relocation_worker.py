import asyncio
import logging
from collections import defaultdict

import pytest

from snaptriage.core import metrics
from snaptriage.models.image import ImageStatus, RelocationState
from snaptriage.schemas.image import ImageUpdateRequest
from snaptriage.schemas.relocation import RelocationPayload
from snaptriage.services import images
from snaptriage.services.dispatcher import InProcessRelocationDispatcher, RedisRelocationDispatcher
from snaptriage.services.lifecycle import ConcurrentTransitionError
from snaptriage.services.relocation_tasks import process_relocation
from snaptriage.workers import relocation_worker

from conftest import load_image, seed_image


class _RedisListStub:
    """Enough of the Redis list API for the queue/processing-list handoff."""

    def __init__(self) -> None:
        self.lists: dict[str, list] = defaultdict(list)

    async def rpush(self, key, *values):
        self.lists[key].extend(values)
        return len(self.lists[key])

    def _pop(self, key, side):
        items = self.lists[key]
        if not items:
            return None
        return items.pop(0) if side == "LEFT" else items.pop()

    def _push(self, key, side, value):
        if side == "LEFT":
            self.lists[key].insert(0, value)
        else:
            self.lists[key].append(value)

    async def lmove(self, source, destination, src="LEFT", dest="RIGHT"):
        value = self._pop(source, src)
        if value is not None:
            self._push(destination, dest, value)
        return value

    async def blmove(self, source, destination, timeout, src="LEFT", dest="RIGHT"):
        return await self.lmove(source, destination, src, dest)

    async def lrem(self, key, count, value):
        items = self.lists[key]
        if value in items:
            items.remove(value)
            return 1
        return 0


@pytest.mark.anyio("asyncio")
async def test_redis_dispatch_then_worker_processes_payload(ctx) -> None:
    redis = _RedisListStub()
    ctx.redis = redis
    ctx.dispatcher = RedisRelocationDispatcher(redis, ctx.settings.relocation_queue_key)
    record = await seed_image(ctx, color_group=1)

    await images.update_image(ctx, record.id, ImageUpdateRequest(reviewed="true"))
    assert len(redis.lists[ctx.settings.relocation_queue_key]) == 1
    assert '"targetStatus":"approved"' in redis.lists[ctx.settings.relocation_queue_key][0]

    assert await relocation_worker.process_next(ctx) is True
    assert redis.lists[ctx.settings.relocation_queue_key] == []
    assert redis.lists[ctx.settings.relocation_processing_key] == []

    done = await load_image(ctx, record.id)
    assert done.status == ImageStatus.approved
    assert done.relocation_state == RelocationState.complete

    assert await relocation_worker.process_next(ctx) is False


@pytest.mark.anyio("asyncio")
async def test_invalid_payload_is_dropped(ctx, caplog: pytest.LogCaptureFixture) -> None:
    redis = _RedisListStub()
    ctx.redis = redis
    await redis.rpush(ctx.settings.relocation_queue_key, "{not json")

    with caplog.at_level(logging.WARNING):
        assert await relocation_worker.process_next(ctx) is True

    assert redis.lists[ctx.settings.relocation_processing_key] == []
    assert "relocation_worker_invalid_payload" in caplog.text


def test_decode_payload_accepts_bytes_and_rejects_unknown_actions() -> None:
    raw = (
        b'{"action": "move_files", "imageId": "6f1c1a3e-6a4b-4d8e-9a55-1f2b3c4d5e6f", '
        b'"destinationPrefix": "deleted/2024/03/02", "targetStatus": "deleted", "storeLocation": "local"}'
    )
    payload = relocation_worker.decode_payload(raw)
    assert payload is not None
    assert payload.target_status == "deleted"
    assert payload.project_id is None

    assert relocation_worker.decode_payload(raw.replace(b"move_files", b"copy_files")) is None


@pytest.mark.anyio("asyncio")
async def test_inflight_payloads_are_requeued_on_startup(ctx) -> None:
    redis = _RedisListStub()
    ctx.redis = redis
    await redis.rpush(ctx.settings.relocation_processing_key, "a", "b")
    await redis.rpush(ctx.settings.relocation_queue_key, "c")

    assert await relocation_worker.requeue_inflight(ctx) == 2
    assert redis.lists[ctx.settings.relocation_queue_key] == ["a", "b", "c"]
    assert redis.lists[ctx.settings.relocation_processing_key] == []


@pytest.mark.anyio("asyncio")
async def test_degraded_worker_sweeps_until_stopped(ctx, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"sweep": 0}
    stop = asyncio.Event()

    async def _fake_sweep(_ctx) -> int:
        calls["sweep"] += 1
        stop.set()
        return 0

    monkeypatch.setattr(relocation_worker, "sweep_stale_relocations", _fake_sweep)
    await asyncio.wait_for(relocation_worker.run_relocation_worker(ctx, poll_interval_seconds=0.01, stop=stop), 5)

    assert calls["sweep"] == 1


@pytest.mark.anyio("asyncio")
async def test_redis_worker_loop_survives_errors(ctx, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    ctx.redis = _RedisListStub()
    stop = asyncio.Event()
    calls = {"n": 0}

    async def _flaky_next(_ctx, *, timeout: int = 1) -> bool:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("redis hiccup")
        stop.set()
        return False

    async def _no_sleep(_seconds: float) -> None:
        return None

    monkeypatch.setattr(relocation_worker, "process_next", _flaky_next)
    monkeypatch.setattr(relocation_worker.asyncio, "sleep", _no_sleep)
    with caplog.at_level(logging.ERROR):
        await relocation_worker.run_relocation_worker(ctx, poll_interval_seconds=0.01, stop=stop)

    assert calls["n"] == 2
    assert "relocation_worker_loop_error" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_in_process_dispatcher_runs_handler_and_drains(ctx) -> None:
    metrics.reset()
    ctx.dispatcher = InProcessRelocationDispatcher(lambda payload: process_relocation(ctx, payload))
    record = await seed_image(ctx, color_group=0)

    await images.update_image(ctx, record.id, ImageUpdateRequest(reviewed="true"))
    await ctx.dispatcher.drain()

    assert ctx.dispatcher.pending == 0
    done = await load_image(ctx, record.id)
    assert done.status == ImageStatus.rejected
    assert metrics.snapshot()["relocations_dispatched"] == 1
    assert metrics.snapshot()["relocations_completed"] == 1


@pytest.mark.anyio("asyncio")
async def test_in_process_dispatcher_logs_handler_crashes(caplog: pytest.LogCaptureFixture) -> None:
    async def _crash(_payload: RelocationPayload) -> None:
        raise RuntimeError("boom")

    dispatcher = InProcessRelocationDispatcher(_crash)
    payload = RelocationPayload(
        image_id="6f1c1a3e-6a4b-4d8e-9a55-1f2b3c4d5e6f",
        destination_prefix="deleted/2024/03/02",
        target_status="deleted",
        store_location="local",
    )
    with caplog.at_level(logging.ERROR):
        await dispatcher.dispatch(payload)
        await dispatcher.drain()

    assert "relocation_task_crashed" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_in_process_race_keeps_first_transition(ctx) -> None:
    gate = asyncio.Event()

    async def _gated(payload: RelocationPayload) -> None:
        await gate.wait()
        await process_relocation(ctx, payload)

    ctx.dispatcher = InProcessRelocationDispatcher(_gated)
    record = await seed_image(ctx, color_group=2)

    await images.update_image(ctx, record.id, ImageUpdateRequest(reviewed="true"))
    with pytest.raises(ConcurrentTransitionError):
        await images.delete_image(ctx, record.id)
    gate.set()
    await ctx.dispatcher.drain()

    done = await load_image(ctx, record.id)
    assert done.status == ImageStatus.approved
    assert done.relocation_state == RelocationState.complete
    assert done.original_path == "approved/blue/2024/03/02/IMG_0001.jpg"


@pytest.mark.anyio("asyncio")
async def test_requeued_payload_does_not_undo_a_later_transition(ctx) -> None:
    redis = _RedisListStub()
    ctx.redis = redis
    ctx.dispatcher = RedisRelocationDispatcher(redis, ctx.settings.relocation_queue_key)
    record = await seed_image(ctx, color_group=1)

    await images.update_image(ctx, record.id, ImageUpdateRequest(reviewed="true"))
    [approve_raw] = list(redis.lists[ctx.settings.relocation_queue_key])
    assert await relocation_worker.process_next(ctx) is True
    await images.delete_image(ctx, record.id)
    assert await relocation_worker.process_next(ctx) is True
    deleted = await load_image(ctx, record.id)
    assert deleted.status == ImageStatus.deleted

    # A worker died holding the approve; the next one requeues it on start-up.
    await redis.rpush(ctx.settings.relocation_processing_key, approve_raw)
    assert await relocation_worker.requeue_inflight(ctx) == 1
    assert await relocation_worker.process_next(ctx) is True

    after = await load_image(ctx, record.id)
    assert after.status == ImageStatus.deleted
    assert after.original_path == "deleted/2024/03/02/IMG_0001.jpg"
    assert after.revision == deleted.revision
    assert redis.lists[ctx.settings.relocation_processing_key] == []
