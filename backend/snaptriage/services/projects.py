from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from snaptriage.core import metrics
from snaptriage.models.image import ImageRecord
from snaptriage.models.project import Project
from snaptriage.schemas.project import ProjectCreate, ProjectUpdate
from snaptriage.services.enrichment import merge_keywords
from snaptriage.services.lifecycle import TransitionError, sanitize_storage_prefix

logger = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    pass


class ProjectArchivedError(TransitionError):
    def __init__(self, project_id: UUID) -> None:
        super().__init__(f"Project {project_id} is archived")
        self.project_id = project_id


@dataclass(frozen=True)
class CountCorrection:
    project_id: UUID
    name: str
    stored: int
    actual: int

    @property
    def drifted(self) -> bool:
        return self.stored != self.actual


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_project(session: AsyncSession, project_id: UUID) -> Project:
    project = await session.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError("Project not found")
    return project


async def create_project(session: AsyncSession, payload: ProjectCreate) -> Project:
    project = Project(
        name=payload.name.strip(),
        storage_prefix=sanitize_storage_prefix(payload.name),
        keywords=merge_keywords(payload.keywords, []),
        image_count=0,
        archived=False,
    )
    session.add(project)
    await session.commit()
    await session.refresh(project)
    logger.info("project_created", extra={"project_id": str(project.id), "storage_prefix": project.storage_prefix})
    return project


async def update_project(session: AsyncSession, project_id: UUID, payload: ProjectUpdate) -> Project:
    """Rename, re-keyword or (un)archive; the storage prefix chosen at creation never changes."""
    project = await get_project(session, project_id)
    if payload.name is not None:
        project.name = payload.name.strip()
    if payload.keywords is not None:
        project.keywords = merge_keywords(payload.keywords, [])
    if payload.archived is not None:
        project.archived = payload.archived
    project.updated_at = _now()
    session.add(project)
    await session.commit()
    await session.refresh(project)
    return project


async def count_project_images(session: AsyncSession, project_id: UUID) -> int:
    stmt = select(func.count()).select_from(ImageRecord).where(ImageRecord.project_id == project_id)
    return int((await session.execute(stmt)).scalar_one())


async def reconcile_project_count(session: AsyncSession, project: Project, *, apply: bool = True) -> CountCorrection:
    actual = await count_project_images(session, project.id)
    correction = CountCorrection(project_id=project.id, name=project.name, stored=project.image_count, actual=actual)
    if correction.drifted and apply:
        project.image_count = actual
        session.add(project)
        metrics.record_project_count_corrected()
        logger.info(
            "project_count_corrected",
            extra={"project_id": str(project.id), "stored_count": correction.stored, "actual_count": actual},
        )
    return correction


async def reconcile_all_projects(session: AsyncSession, *, apply: bool = True) -> list[CountCorrection]:
    projects = (await session.execute(select(Project))).scalars().all()
    corrections = [await reconcile_project_count(session, project, apply=apply) for project in projects]
    if apply:
        await session.commit()
    return sorted(corrections, key=lambda item: item.name.casefold())


async def list_projects(session: AsyncSession, *, include_archived: bool = False) -> list[Project]:
    """Projects sorted by name, with their image counts reconciled on the way out."""
    stmt = select(Project)
    if not include_archived:
        stmt = stmt.where(Project.archived.is_(False))
    projects = list((await session.execute(stmt)).scalars().all())
    drifted = False
    for project in projects:
        correction = await reconcile_project_count(session, project)
        drifted = drifted or correction.drifted
    if drifted:
        await session.commit()
    return sorted(projects, key=lambda item: item.name.casefold())


async def list_project_images(session: AsyncSession, project_id: UUID) -> list[ImageRecord]:
    await get_project(session, project_id)
    stmt = select(ImageRecord).where(ImageRecord.project_id == project_id).order_by(ImageRecord.inserted_at)
    return list((await session.execute(stmt)).scalars().all())
