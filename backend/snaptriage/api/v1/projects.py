from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from snaptriage.core.context import TriageContext
from snaptriage.core.dependencies import get_context, get_session
from snaptriage.schemas.image import ImageRead
from snaptriage.schemas.project import (
    AssignToProjectRequest,
    AssignToProjectResponse,
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
)
from snaptriage.services import images, projects
from snaptriage.services.lifecycle import TransitionError

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("", response_model=list[ProjectRead])
async def list_projects(
    include_archived: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
) -> list[ProjectRead]:
    rows = await projects.list_projects(session, include_archived=include_archived)
    return [ProjectRead.model_validate(row) for row in rows]


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(payload: ProjectCreate, session: AsyncSession = Depends(get_session)) -> ProjectRead:
    project = await projects.create_project(session, payload)
    return ProjectRead.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectRead)
async def update_project(
    project_id: UUID,
    payload: ProjectUpdate,
    session: AsyncSession = Depends(get_session),
) -> ProjectRead:
    try:
        project = await projects.update_project(session, project_id, payload)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return ProjectRead.model_validate(project)


@router.get("/{project_id}/images", response_model=list[ImageRead])
async def list_project_images(project_id: UUID, session: AsyncSession = Depends(get_session)) -> list[ImageRead]:
    try:
        rows = await projects.list_project_images(session, project_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return [ImageRead.model_validate(row) for row in rows]


@router.post("/{project_id}/images", response_model=AssignToProjectResponse)
async def assign_images(
    project_id: UUID,
    payload: AssignToProjectRequest,
    ctx: TriageContext = Depends(get_context),
) -> AssignToProjectResponse:
    try:
        return await images.assign_to_project(ctx, project_id, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except TransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
