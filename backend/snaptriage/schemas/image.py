from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

ImageStatusLiteral = Literal["new", "approved", "rejected", "deleted", "project-assigned"]
RelocationStateLiteral = Literal["none", "pending", "moving", "complete", "failed"]
ReviewedLiteral = Literal["true", "false"]


class ImageRead(BaseModel):
    """Record as seen by a polling client; paths are only final once relocation_state is complete."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: ImageStatusLiteral
    relocation_state: RelocationStateLiteral
    relocation_error: str | None = None
    original_path: str
    thumb_small_path: str
    thumb_large_path: str
    raw_sidecar_path: str | None = None
    related_paths: list[str] = Field(default_factory=list)
    reviewed: ReviewedLiteral
    color_group: int
    project_id: UUID | None = None
    rating: int
    promoted: bool
    keywords: list[str] = Field(default_factory=list)
    description: str | None = None
    revision: int
    inserted_at: datetime
    updated_at: datetime


class ImageUpdateRequest(BaseModel):
    color_group: int | None = Field(default=None, ge=0, le=32)
    reviewed: ReviewedLiteral | None = None
    rating: int | None = Field(default=None, ge=0, le=5)
    promoted: bool | None = None
    keywords: list[str] | None = Field(default=None, max_length=200)
    expected_revision: int | None = Field(default=None, ge=0)

    @field_validator("keywords")
    @classmethod
    def _strip_keywords(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [item.strip() for item in value if item and item.strip()]


class TransitionAck(BaseModel):
    success: bool = True
    image_id: UUID
    status: ImageStatusLiteral
    relocation_state: RelocationStateLiteral
    target_status: ImageStatusLiteral | None = None
    destination_prefix: str | None = None
    revision: int
    message: str | None = None


class EnrichmentRead(BaseModel):
    image_id: UUID
    keywords: list[str]
    description: str | None = None
