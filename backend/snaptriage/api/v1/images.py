from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, status

from snaptriage.core.context import TriageContext
from snaptriage.core.dependencies import get_context
from snaptriage.schemas.image import EnrichmentRead, ImageRead, ImageUpdateRequest, TransitionAck
from snaptriage.services import enrichment, images
from snaptriage.services.content_store import StoreError
from snaptriage.services.lifecycle import TransitionError

router = APIRouter(prefix="/images", tags=["images"])


def _transition_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc) or "Image not found")
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("/{image_id}", response_model=ImageRead)
async def read_image(image_id: UUID, ctx: TriageContext = Depends(get_context)) -> ImageRead:
    async with ctx.session_factory() as session:
        try:
            record = await images.get_image(session, image_id)
        except LookupError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return ImageRead.model_validate(record)


@router.patch("/{image_id}", response_model=TransitionAck)
async def update_image(
    image_id: UUID,
    payload: ImageUpdateRequest,
    ctx: TriageContext = Depends(get_context),
) -> TransitionAck:
    try:
        return await images.update_image(ctx, image_id, payload)
    except (LookupError, TransitionError) as exc:
        raise _transition_http_error(exc)


@router.delete("/{image_id}", response_model=TransitionAck)
async def delete_image(image_id: UUID, ctx: TriageContext = Depends(get_context)) -> TransitionAck:
    try:
        return await images.delete_image(ctx, image_id)
    except (LookupError, TransitionError) as exc:
        raise _transition_http_error(exc)


@router.post("/{image_id}/undelete", response_model=TransitionAck)
async def undelete_image(image_id: UUID, ctx: TriageContext = Depends(get_context)) -> TransitionAck:
    try:
        return await images.undelete_image(ctx, image_id)
    except (LookupError, TransitionError) as exc:
        raise _transition_http_error(exc)


@router.post("/{image_id}/relocation/retry", response_model=TransitionAck)
async def retry_relocation(image_id: UUID, ctx: TriageContext = Depends(get_context)) -> TransitionAck:
    try:
        return await images.retry_relocation(ctx, image_id)
    except (LookupError, TransitionError) as exc:
        raise _transition_http_error(exc)


@router.post("/{image_id}/enrichment", response_model=EnrichmentRead)
async def regenerate_enrichment(image_id: UUID, ctx: TriageContext = Depends(get_context)) -> EnrichmentRead:
    try:
        record = await enrichment.regenerate_enrichment(ctx, image_id)
    except enrichment.EnrichmentDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    except TransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except (enrichment.AnalysisError, httpx.HTTPError, StoreError) as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Analysis failed: {exc}")
    return EnrichmentRead(image_id=record.id, keywords=list(record.keywords or []), description=record.description)
