"""Background side of a status transition.

``process_relocation`` is what the worker (or the in-process dispatcher) runs for
each :class:`RelocationPayload`. Delivery is at-least-once, so the handler is safe
to run again for the same payload: a record already at its target with a complete
relocation is left untouched, and the engine skips files that already sit at the
destination. A payload is only acted on while it still matches the intent stamped
on the record (target status and destination); anything older is dropped as
superseded, so a late duplicate never undoes a newer transition.

There is no transaction spanning the content store and the database. Files move
first, then one UPDATE publishes the new paths, status and ``complete`` together. If
the process dies between the two, the record still shows the old paths until a
retry; the engine then finds the files already moved and the retry converges.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import delete, select, update

from snaptriage.core import metrics
from snaptriage.models.image import ImageRecord, ImageStatus, RelocationState
from snaptriage.models.project import Project
from snaptriage.schemas.relocation import RelocationPayload
from snaptriage.services import enrichment
from snaptriage.services.relocation import (
    FileSet,
    RelocationResult,
    SourceMissingError,
    destination_for,
    relocate_files,
)

if TYPE_CHECKING:
    from snaptriage.core.context import TriageContext

logger = logging.getLogger(__name__)


class RelocationOutcome(str, enum.Enum):
    completed = "completed"
    noop = "noop"
    self_healed = "self_healed"
    failed = "failed"
    missing_record = "missing_record"
    superseded = "superseded"


CLAIMABLE_STATES = (RelocationState.pending, RelocationState.failed)
ACTIVE_STATES = (RelocationState.pending, RelocationState.moving, RelocationState.failed)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _already_applied(record: ImageRecord, payload: RelocationPayload) -> bool:
    if record.status.value != payload.target_status or record.relocation_state != RelocationState.complete:
        return False
    return record.original_path == destination_for(record.original_path, payload.destination_prefix)


def _matches_intent(record: ImageRecord, payload: RelocationPayload) -> bool:
    return (
        record.relocation_state in ACTIVE_STATES
        and record.relocation_target == payload.target_status
        and record.relocation_destination == payload.destination_prefix
    )


async def _load(ctx: "TriageContext", image_id: UUID) -> ImageRecord | None:
    async def _get() -> ImageRecord | None:
        async with ctx.session_factory() as session:
            return await session.get(ImageRecord, image_id)

    return await ctx.metadata_policy.run(_get, label="load_image")


async def _write(
    ctx: "TriageContext",
    image_id: UUID,
    values: dict[str, Any],
    *,
    from_states: tuple[RelocationState, ...] | None = None,
) -> bool:
    """Update one record; with ``from_states`` only while its relocation state is one of them."""

    async def _update() -> bool:
        async with ctx.session_factory() as session:
            stmt = update(ImageRecord).where(ImageRecord.id == image_id)
            if from_states is not None:
                stmt = stmt.where(ImageRecord.relocation_state.in_(from_states))
            result = await session.execute(
                stmt.values(**values, revision=ImageRecord.revision + 1, updated_at=_now())
            )
            await session.commit()
            return result.rowcount == 1

    return await ctx.metadata_policy.run(_update, label="update_image")


async def adjust_project_count(ctx: "TriageContext", project_id: UUID, delta: int) -> None:
    async def _adjust() -> None:
        async with ctx.session_factory() as session:
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(image_count=Project.image_count + delta, updated_at=_now())
            )
            await session.commit()

    await ctx.metadata_policy.run(_adjust, label="adjust_project_count")


async def _self_heal(ctx: "TriageContext", record: ImageRecord, exc: SourceMissingError) -> None:
    async def _delete() -> None:
        async with ctx.session_factory() as session:
            await session.execute(delete(ImageRecord).where(ImageRecord.id == record.id))
            await session.commit()

    await ctx.metadata_policy.run(_delete, label="delete_image")
    if record.project_id is not None:
        await adjust_project_count(ctx, record.project_id, -1)
    logger.warning(
        "relocation_self_healed",
        extra={"image_id": str(record.id), "missing_key": exc.key, "project_id": str(record.project_id or "")},
    )


async def _mark_failed(ctx: "TriageContext", image_id: UUID, error: str) -> None:
    try:
        await _write(ctx, image_id, {"relocation_state": RelocationState.failed, "relocation_error": error[:2000]})
    except Exception:
        logger.exception("relocation_failure_not_recorded", extra={"image_id": str(image_id)})


def _completion_values(record: ImageRecord, payload: RelocationPayload, result: RelocationResult) -> dict[str, Any]:
    target = ImageStatus(payload.target_status)
    values: dict[str, Any] = {
        "original_path": result.original_path,
        "thumb_small_path": result.thumb_small_path,
        "thumb_large_path": result.thumb_large_path,
        "raw_sidecar_path": result.raw_sidecar_path,
        "related_paths": result.related_paths,
        "status": target,
        "relocation_state": RelocationState.complete,
        "relocation_error": None,
    }
    if target == ImageStatus.new:
        values["reviewed"] = "false"
    if target == ImageStatus.project_assigned:
        values["project_id"] = payload.project_id
    if target == ImageStatus.deleted:
        values["project_id"] = None
    return values


def _superseded(record: ImageRecord, log_extra: dict[str, Any], stage: str) -> RelocationOutcome:
    logger.info(
        "relocation_payload_superseded",
        extra={
            **log_extra,
            "stage": stage,
            "relocation_state": record.relocation_state.value,
            "current_target": record.relocation_target,
            "current_destination": record.relocation_destination,
        },
    )
    metrics.record_relocation_outcome(RelocationOutcome.superseded.value)
    return RelocationOutcome.superseded


async def process_relocation(ctx: "TriageContext", payload: RelocationPayload) -> RelocationOutcome:
    """Move the files of one image and publish the transition.

    Never raises for store or database failures; the outcome is recorded on the
    record (``failed``) or, for a vanished original, by deleting the record.
    Payloads that no longer match the record's pending intent are dropped.
    """
    log_extra = {
        "image_id": str(payload.image_id),
        "target_status": payload.target_status,
        "destination_prefix": payload.destination_prefix,
    }
    try:
        record = await _load(ctx, payload.image_id)
    except Exception as exc:
        logger.exception("relocation_load_failed", extra=log_extra)
        await _mark_failed(ctx, payload.image_id, f"load failed: {exc}")
        metrics.record_relocation_outcome(RelocationOutcome.failed.value)
        return RelocationOutcome.failed

    if record is None:
        logger.warning("relocation_record_missing", extra=log_extra)
        metrics.record_relocation_outcome(RelocationOutcome.missing_record.value)
        return RelocationOutcome.missing_record

    if _already_applied(record, payload):
        logger.info("relocation_already_applied", extra=log_extra)
        metrics.record_relocation_outcome(RelocationOutcome.noop.value)
        return RelocationOutcome.noop

    if not _matches_intent(record, payload):
        return _superseded(record, log_extra, "load")

    try:
        claimed = await _write(
            ctx,
            record.id,
            {"relocation_state": RelocationState.moving, "relocation_started_at": _now()},
            from_states=CLAIMABLE_STATES,
        )
    except Exception as exc:
        logger.error("relocation_failed", extra={**log_extra, "error": str(exc)})
        await _mark_failed(ctx, record.id, str(exc) or exc.__class__.__name__)
        metrics.record_relocation_outcome(RelocationOutcome.failed.value)
        return RelocationOutcome.failed
    if not claimed:
        return _superseded(record, log_extra, "claim")

    try:
        result = await relocate_files(
            ctx.content_store, FileSet.from_record(record), payload.destination_prefix, ctx.content_policy
        )
    except SourceMissingError as exc:
        try:
            await _self_heal(ctx, record, exc)
        except Exception as heal_exc:
            logger.exception("relocation_self_heal_failed", extra=log_extra)
            await _mark_failed(ctx, record.id, f"self-heal failed: {heal_exc}")
            metrics.record_relocation_outcome(RelocationOutcome.failed.value)
            return RelocationOutcome.failed
        metrics.record_relocation_outcome(RelocationOutcome.self_healed.value)
        return RelocationOutcome.self_healed
    except Exception as exc:
        logger.error("relocation_failed", extra={**log_extra, "error": str(exc)})
        await _mark_failed(ctx, record.id, str(exc) or exc.__class__.__name__)
        metrics.record_relocation_outcome(RelocationOutcome.failed.value)
        return RelocationOutcome.failed

    try:
        published = await _write(
            ctx, record.id, _completion_values(record, payload, result), from_states=(RelocationState.moving,)
        )
        if not published:
            # Swept as stale while moving; a retry adopts the moved files.
            return _superseded(record, log_extra, "publish")
        if payload.target_status == ImageStatus.project_assigned.value and payload.project_id is not None:
            await adjust_project_count(ctx, payload.project_id, 1)
        elif payload.target_status == ImageStatus.deleted.value and record.project_id is not None:
            await adjust_project_count(ctx, record.project_id, -1)
    except Exception as exc:
        logger.exception("relocation_publish_failed", extra=log_extra)
        await _mark_failed(ctx, record.id, f"files moved but record not updated: {exc}")
        metrics.record_relocation_outcome(RelocationOutcome.failed.value)
        return RelocationOutcome.failed

    logger.info(
        "relocation_completed",
        extra={**log_extra, "moved_files": len(result.moved), "skipped_files": len(result.skipped)},
    )
    metrics.record_relocation_outcome(RelocationOutcome.completed.value)

    if payload.target_status == ImageStatus.approved.value:
        await enrichment.enrich_image(ctx, record.id)
    return RelocationOutcome.completed


async def sweep_stale_relocations(ctx: "TriageContext", *, now: datetime | None = None) -> int:
    """Mark relocations stuck in pending/moving past the configured age as failed."""
    cutoff = (now or _now()) - timedelta(seconds=ctx.settings.relocation_stale_after_seconds)
    async with ctx.session_factory() as session:
        stale_ids = (
            await session.execute(
                select(ImageRecord.id).where(
                    ImageRecord.relocation_state.in_([RelocationState.pending, RelocationState.moving]),
                    ImageRecord.updated_at < cutoff,
                )
            )
        ).scalars().all()
        if not stale_ids:
            return 0
        await session.execute(
            update(ImageRecord)
            .where(
                ImageRecord.id.in_(stale_ids),
                ImageRecord.relocation_state.in_([RelocationState.pending, RelocationState.moving]),
            )
            .values(
                relocation_state=RelocationState.failed,
                relocation_error="stale",
                revision=ImageRecord.revision + 1,
                updated_at=_now(),
            )
        )
        await session.commit()
    logger.warning("relocation_stale_swept", extra={"count": len(stale_ids)})
    return len(stale_ids)
