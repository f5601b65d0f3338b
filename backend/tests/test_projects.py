import pytest
from sqlalchemy import update

from snaptriage.core import metrics
from snaptriage.models.image import ImageRecord, ImageStatus
from snaptriage.schemas.project import ProjectCreate, ProjectUpdate
from snaptriage.services import projects

from conftest import seed_image, seed_project


async def _attach(ctx, project_id, *image_ids) -> None:
    async with ctx.session_factory() as session:
        await session.execute(
            update(ImageRecord)
            .where(ImageRecord.id.in_(image_ids))
            .values(project_id=project_id, status=ImageStatus.project_assigned)
        )
        await session.commit()


@pytest.mark.anyio("asyncio")
async def test_listing_corrects_drifted_counts(ctx) -> None:
    metrics.reset()
    project = await seed_project(ctx, name="Drifted", image_count=5)
    seeded = [await seed_image(ctx, name=f"IMG_{i}", write_files=False) for i in range(3)]
    await _attach(ctx, project.id, *[record.id for record in seeded])

    async with ctx.session_factory() as session:
        listed = await projects.list_projects(session)
    assert [(item.name, item.image_count) for item in listed] == [("Drifted", 3)]

    async with ctx.session_factory() as session:
        listed_again = await projects.list_projects(session)
    assert listed_again[0].image_count == 3
    assert metrics.snapshot()["project_counts_corrected"] == 1


@pytest.mark.anyio("asyncio")
async def test_listing_sorts_by_name_and_hides_archived(ctx) -> None:
    await seed_project(ctx, name="zebra")
    await seed_project(ctx, name="Alpha")
    await seed_project(ctx, name="mid")
    await seed_project(ctx, name="Old", archived=True)

    async with ctx.session_factory() as session:
        active = await projects.list_projects(session)
        everything = await projects.list_projects(session, include_archived=True)

    assert [item.name for item in active] == ["Alpha", "mid", "zebra"]
    assert [item.name for item in everything] == ["Alpha", "mid", "Old", "zebra"]


@pytest.mark.anyio("asyncio")
async def test_storage_prefix_is_fixed_at_creation(ctx) -> None:
    async with ctx.session_factory() as session:
        created = await projects.create_project(session, ProjectCreate(name="Summer Wedding 2024", keywords=["a", "A", "b"]))
    assert created.storage_prefix == "summer_wedding_2024"
    assert created.keywords == ["a", "b"]

    async with ctx.session_factory() as session:
        renamed = await projects.update_project(session, created.id, ProjectUpdate(name="Autumn Shoot", archived=True))
    assert renamed.name == "Autumn Shoot"
    assert renamed.archived is True
    assert renamed.storage_prefix == "summer_wedding_2024"


@pytest.mark.anyio("asyncio")
async def test_reconcile_dry_run_reports_without_writing(ctx) -> None:
    project = await seed_project(ctx, name="Dry", image_count=2)

    async with ctx.session_factory() as session:
        corrections = await projects.reconcile_all_projects(session, apply=False)
    assert [(c.stored, c.actual, c.drifted) for c in corrections] == [(2, 0, True)]

    async with ctx.session_factory() as session:
        assert (await projects.get_project(session, project.id)).image_count == 2
        corrections = await projects.reconcile_all_projects(session, apply=True)
    async with ctx.session_factory() as session:
        assert (await projects.get_project(session, project.id)).image_count == 0


@pytest.mark.anyio("asyncio")
async def test_project_images_and_missing_project(ctx) -> None:
    project = await seed_project(ctx)
    record = await seed_image(ctx, write_files=False)
    await _attach(ctx, project.id, record.id)

    async with ctx.session_factory() as session:
        rows = await projects.list_project_images(session, project.id)
        assert [row.id for row in rows] == [record.id]
        with pytest.raises(projects.ProjectNotFoundError):
            await projects.list_project_images(session, record.id)
