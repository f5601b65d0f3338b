import io
import os
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from snaptriage.core.config import Settings
from snaptriage.core.context import TriageContext
from snaptriage.db.base import Base
from snaptriage.db.session import build_session_factory
from snaptriage.models.image import ImageRecord, ImageStatus
from snaptriage.models.project import Project
from snaptriage.services.content_store import LocalContentStore, is_retryable_store_error
from snaptriage.services.retry import analysis_policy, content_store_policy, metadata_store_policy


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.payloads: list = []

    async def dispatch(self, payload) -> None:
        self.payloads.append(payload)


async def no_sleep(_seconds: float) -> None:
    return None


def jpeg_bytes(color: str = "red") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=color).save(buf, format="JPEG")
    return buf.getvalue()


def make_context(store_root: Path, engine: AsyncEngine, **overrides: Any) -> TriageContext:
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        content_store_root=str(store_root),
        redis_url=None,
        analysis_api_key=None,
        sentry_dsn=None,
    )
    ctx = TriageContext(
        settings=settings,
        session_factory=build_session_factory(engine),
        content_store=LocalContentStore(store_root),
        content_policy=replace(content_store_policy(is_retryable_store_error), sleep=no_sleep),
        metadata_policy=replace(metadata_store_policy(), sleep=no_sleep),
        analysis_policy=replace(analysis_policy(30.0), sleep=no_sleep),
        dispatcher=RecordingDispatcher(),
        engine=engine,
    )
    for key, value in overrides.items():
        setattr(ctx, key, value)
    return ctx


@pytest.fixture
async def ctx(tmp_path: Path) -> AsyncIterator[TriageContext]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    context = make_context(tmp_path / "store", engine)
    yield context
    await engine.dispose()


def write_photo_files(root: Path, folder: str, name: str, *, raw_ext: str | None = ".CR2") -> dict[str, str]:
    keys = {
        "original_path": f"{folder}/{name}.jpg",
        "thumb_small_path": f"{folder}/{name}.50.jpg",
        "thumb_large_path": f"{folder}/{name}.400.jpg",
    }
    for field_name, key in keys.items():
        path = root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(jpeg_bytes() if field_name == "thumb_large_path" else f"{field_name}:{name}".encode())
    if raw_ext:
        (root / f"{folder}/{name}{raw_ext}").write_bytes(b"raw-bytes")
    return keys


async def seed_image(
    ctx: TriageContext,
    *,
    name: str = "IMG_0001",
    folder: str = "inbox/2024/03/02",
    status: ImageStatus = ImageStatus.new,
    reviewed: str = "false",
    color_group: int = 0,
    exif: dict[str, Any] | None = None,
    inserted_at: datetime | None = None,
    project_id: UUID | None = None,
    keywords: list[str] | None = None,
    description: str | None = None,
    raw_ext: str | None = ".CR2",
    write_files: bool = True,
) -> ImageRecord:
    root = Path(ctx.content_store.root)
    if write_files:
        keys = write_photo_files(root, folder, name, raw_ext=raw_ext)
    else:
        keys = {
            "original_path": f"{folder}/{name}.jpg",
            "thumb_small_path": f"{folder}/{name}.50.jpg",
            "thumb_large_path": f"{folder}/{name}.400.jpg",
        }
    record = ImageRecord(
        **keys,
        status=status,
        reviewed=reviewed,
        color_group=color_group,
        exif_data=exif if exif is not None else {"DateTimeOriginal": "2024:03:02 09:15:00"},
        project_id=project_id,
        keywords=keywords or [],
        description=description,
    )
    if inserted_at is not None:
        record.inserted_at = inserted_at
    async with ctx.session_factory() as session:
        session.add(record)
        await session.commit()
        await session.refresh(record)
    return record


async def seed_project(ctx: TriageContext, *, name: str = "Summer Wedding", image_count: int = 0, archived: bool = False) -> Project:
    from snaptriage.services.lifecycle import sanitize_storage_prefix

    project = Project(name=name, storage_prefix=sanitize_storage_prefix(name), image_count=image_count, archived=archived)
    async with ctx.session_factory() as session:
        session.add(project)
        await session.commit()
        await session.refresh(project)
    return project


async def load_image(ctx: TriageContext, image_id: UUID) -> ImageRecord | None:
    async with ctx.session_factory() as session:
        return await session.get(ImageRecord, image_id)
