"""Synchronous transition handlers.

Each handler validates the move, stamps the record ``pending`` with a
compare-and-swap on ``revision`` and hands a :class:`RelocationPayload` to the
dispatcher. A record whose previous relocation is still ``pending`` or ``moving``
accepts no new transition until it settles. None of them touch the content store;
the caller polls ``relocation_state`` for the result.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from snaptriage.models.image import ImageRecord, ImageStatus, RelocationState
from snaptriage.schemas.image import ImageUpdateRequest, TransitionAck
from snaptriage.schemas.project import AssignToProjectRequest, AssignToProjectResponse
from snaptriage.schemas.relocation import RelocationPayload
from snaptriage.services import lifecycle
from snaptriage.services.enrichment import merge_keywords
from snaptriage.services.lifecycle import (
    ConcurrentTransitionError,
    RelocationInProgressError,
    TransitionError,
    TransitionPlan,
)
from snaptriage.services.projects import ProjectArchivedError, get_project

if TYPE_CHECKING:
    from snaptriage.core.context import TriageContext

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES = (RelocationState.pending, RelocationState.moving)


class ImageNotFoundError(LookupError):
    pass


class RelocationNotRetryableError(TransitionError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_image(session: AsyncSession, image_id: UUID) -> ImageRecord:
    record = await session.get(ImageRecord, image_id)
    if record is None:
        raise ImageNotFoundError("Image not found")
    return record


async def _compare_and_swap(
    session: AsyncSession, record: ImageRecord, values: dict[str, Any], *, require_idle: bool = False
) -> int:
    """Write ``values`` only if nobody touched the row since ``record`` was read.

    With ``require_idle`` the write also refuses a row whose relocation is still
    queued or moving, so two transitions never run against the same files.
    """
    new_revision = record.revision + 1
    stmt = update(ImageRecord).where(ImageRecord.id == record.id, ImageRecord.revision == record.revision)
    if require_idle:
        stmt = stmt.where(ImageRecord.relocation_state.not_in(IN_FLIGHT_STATES))
    result = await session.execute(
        stmt
        .values(**values, revision=new_revision, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentTransitionError(record.id)
    await session.commit()
    return new_revision


def _ensure_idle(record: ImageRecord) -> None:
    if record.relocation_state in IN_FLIGHT_STATES:
        raise RelocationInProgressError(record.id)


def _pending_values(plan: TransitionPlan) -> dict[str, Any]:
    return {
        "relocation_state": RelocationState.pending,
        "relocation_error": None,
        "relocation_started_at": None,
        "relocation_target": plan.target_status.value,
        "relocation_destination": plan.destination_prefix,
        "relocation_project_id": plan.project_id,
    }


async def _dispatch(ctx: "TriageContext", image_id: UUID, plan: TransitionPlan) -> RelocationState:
    payload = RelocationPayload(
        image_id=image_id,
        destination_prefix=plan.destination_prefix,
        target_status=plan.target_status.value,
        store_location=ctx.store_location,
        project_id=plan.project_id,
    )
    try:
        await ctx.dispatcher.dispatch(payload)
    except Exception:
        logger.exception("relocation_dispatch_failed", extra={"image_id": str(image_id)})
        async with ctx.session_factory() as session:
            await session.execute(
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .values(
                    relocation_state=RelocationState.failed,
                    relocation_error="dispatch_failed",
                    revision=ImageRecord.revision + 1,
                    updated_at=_now(),
                )
            )
            await session.commit()
        return RelocationState.failed
    return RelocationState.pending


async def _commit_transition(
    ctx: "TriageContext",
    session: AsyncSession,
    record: ImageRecord,
    values: dict[str, Any],
    plan: TransitionPlan | None,
) -> TransitionAck:
    if plan is not None:
        values = {**values, **_pending_values(plan)}
    revision = (
        await _compare_and_swap(session, record, values, require_idle=plan is not None) if values else record.revision
    )
    state = record.relocation_state
    if plan is not None:
        state = await _dispatch(ctx, record.id, plan)
        if state == RelocationState.failed:
            revision += 1
        logger.info(
            "transition_accepted",
            extra={
                "image_id": str(record.id),
                "from_status": record.status.value,
                "target_status": plan.target_status.value,
                "destination_prefix": plan.destination_prefix,
            },
        )
    return TransitionAck(
        success=True,
        image_id=record.id,
        status=record.status.value,
        relocation_state=state.value,
        target_status=plan.target_status.value if plan else None,
        destination_prefix=plan.destination_prefix if plan else None,
        revision=revision,
    )


async def update_image(ctx: "TriageContext", image_id: UUID, payload: ImageUpdateRequest) -> TransitionAck:
    """Apply user edits; flipping ``reviewed`` to true also approves or rejects the photo."""
    async with ctx.session_factory() as session:
        record = await get_image(session, image_id)
        if payload.expected_revision is not None and payload.expected_revision != record.revision:
            raise ConcurrentTransitionError(record.id)

        values: dict[str, Any] = {}
        if payload.color_group is not None:
            values["color_group"] = payload.color_group
        if payload.rating is not None:
            values["rating"] = payload.rating
        if payload.promoted is not None:
            values["promoted"] = payload.promoted
        if payload.keywords is not None:
            values["keywords"] = merge_keywords(payload.keywords, [])
        if payload.reviewed is not None and payload.reviewed != record.reviewed:
            values["reviewed"] = payload.reviewed

        plan = None
        if payload.reviewed == "true" and record.reviewed != "true":
            _ensure_idle(record)
            color_group = payload.color_group if payload.color_group is not None else record.color_group
            plan = lifecycle.plan_review(record, color_group, ctx.settings.color_labels)
        return await _commit_transition(ctx, session, record, values, plan)


async def delete_image(ctx: "TriageContext", image_id: UUID) -> TransitionAck:
    async with ctx.session_factory() as session:
        record = await get_image(session, image_id)
        _ensure_idle(record)
        if record.status == ImageStatus.deleted:
            ack = await _commit_transition(ctx, session, record, {}, None)
            ack.message = "already deleted"
            return ack
        plan = lifecycle.plan_delete(record)
        return await _commit_transition(ctx, session, record, {}, plan)


async def undelete_image(ctx: "TriageContext", image_id: UUID) -> TransitionAck:
    async with ctx.session_factory() as session:
        record = await get_image(session, image_id)
        _ensure_idle(record)
        plan = lifecycle.plan_undelete(record)
        return await _commit_transition(ctx, session, record, {}, plan)


async def assign_to_project(
    ctx: "TriageContext", project_id: UUID, payload: AssignToProjectRequest
) -> AssignToProjectResponse:
    """Queue one approved image, or all approved images of a color group, for a project."""
    async with ctx.session_factory() as session:
        project = await get_project(session, project_id)
        if project.archived:
            raise ProjectArchivedError(project.id)

        if payload.image_id is not None:
            records = [await get_image(session, payload.image_id)]
        else:
            stmt = select(ImageRecord).where(ImageRecord.status == ImageStatus.approved)
            if payload.color_group:
                stmt = stmt.where(ImageRecord.color_group == payload.color_group)
            records = list((await session.execute(stmt.order_by(ImageRecord.inserted_at))).scalars().all())

        response = AssignToProjectResponse(project_id=project.id)
        for record in records:
            try:
                _ensure_idle(record)
                plan = lifecycle.plan_project_assignment(record, project)
                await _commit_transition(ctx, session, record, {}, plan)
            except ConcurrentTransitionError:
                if payload.image_id is not None:
                    raise
                response.conflicts.append(record.id)
                continue
            response.queued.append(record.id)
        logger.info(
            "project_assignment_queued",
            extra={"project_id": str(project.id), "queued": len(response.queued), "conflicts": len(response.conflicts)},
        )
        return response


async def retry_relocation(ctx: "TriageContext", image_id: UUID) -> TransitionAck:
    """Re-dispatch the last intended move of a record whose relocation failed."""
    async with ctx.session_factory() as session:
        record = await get_image(session, image_id)
        if record.relocation_state != RelocationState.failed or not (
            record.relocation_target and record.relocation_destination
        ):
            raise RelocationNotRetryableError(f"Image {image_id} has no failed relocation to retry")
        plan = TransitionPlan(
            target_status=ImageStatus(record.relocation_target),
            destination_prefix=record.relocation_destination,
            project_id=record.relocation_project_id,
        )
        return await _commit_transition(ctx, session, record, {}, plan)
