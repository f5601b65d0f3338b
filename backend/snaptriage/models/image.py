from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from snaptriage.core.config import settings
from snaptriage.db.base import Base


class ImageStatus(str, enum.Enum):
    new = "new"
    approved = "approved"
    rejected = "rejected"
    deleted = "deleted"
    project_assigned = "project-assigned"


class RelocationState(str, enum.Enum):
    none = "none"
    pending = "pending"
    moving = "moving"
    complete = "complete"
    failed = "failed"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ImageRecord(Base):
    __tablename__ = settings.images_table

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    original_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumb_small_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumb_large_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    raw_sidecar_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    related_paths: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    store_location: Mapped[str] = mapped_column(String(120), nullable=False, default="local")

    status: Mapped[ImageStatus] = mapped_column(
        Enum(ImageStatus, name="image_status", values_callable=_enum_values),
        nullable=False,
        default=ImageStatus.new,
        index=True,
    )
    relocation_state: Mapped[RelocationState] = mapped_column(
        Enum(RelocationState, name="relocation_state", values_callable=_enum_values),
        nullable=False,
        default=RelocationState.none,
        index=True,
    )
    # Last intended move, kept so a failed relocation can be retried as-is.
    relocation_target: Mapped[str | None] = mapped_column(String(32), nullable=True)
    relocation_destination: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    relocation_project_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    relocation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    relocation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    reviewed: Mapped[str] = mapped_column(String(5), nullable=False, default="false")
    color_group: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(f"{settings.projects_table}.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    promoted: Mapped[bool] = mapped_column(default=False, nullable=False)
    keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    exif_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
