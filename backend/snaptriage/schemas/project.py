from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    keywords: list[str] = Field(default_factory=list)


class ProjectUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    keywords: list[str] | None = None
    archived: bool | None = None


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    storage_prefix: str
    image_count: int
    keywords: list[str] = Field(default_factory=list)
    archived: bool
    created_at: datetime
    updated_at: datetime


class AssignToProjectRequest(BaseModel):
    """Either one image, or every approved image of a color group (0 means all groups)."""

    image_id: UUID | None = None
    color_group: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_selector(self) -> "AssignToProjectRequest":
        if (self.image_id is None) == (self.color_group is None):
            raise ValueError("Provide exactly one of image_id or color_group")
        return self


class AssignToProjectResponse(BaseModel):
    success: bool = True
    project_id: UUID
    queued: list[UUID] = Field(default_factory=list)
    conflicts: list[UUID] = Field(default_factory=list)
