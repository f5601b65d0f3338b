"""Lifecycle rules: legal status moves and the folder each move lands in.

Every destination ends in a ``YYYY/MM/DD`` segment taken from the best capture
timestamp of the photo, in this order: EXIF ``DateTimeOriginal``, EXIF ``DateTime``,
the record's ``inserted_at``, the current time. Operators browse the store by
these folders, so the order is fixed.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Final, Mapping, Sequence

from snaptriage.models.image import ImageRecord, ImageStatus
from snaptriage.models.project import Project

CAPTURE_DATE_FIELDS: Final[tuple[str, ...]] = ("DateTimeOriginal", "DateTime")
_EXIF_FORMATS: Final[tuple[str, ...]] = ("%Y:%m:%d %H:%M:%S", "%Y:%m:%d")
STORAGE_PREFIX_MAX_LENGTH: Final[int] = 63
DEFAULT_STORAGE_PREFIX: Final[str] = "project"

ALLOWED_TRANSITIONS: Final[dict[ImageStatus, frozenset[ImageStatus]]] = {
    ImageStatus.new: frozenset({ImageStatus.approved, ImageStatus.rejected, ImageStatus.deleted}),
    ImageStatus.approved: frozenset({ImageStatus.deleted, ImageStatus.project_assigned}),
    ImageStatus.rejected: frozenset({ImageStatus.deleted}),
    ImageStatus.deleted: frozenset({ImageStatus.new}),
    ImageStatus.project_assigned: frozenset({ImageStatus.deleted}),
}


class TransitionError(Exception):
    pass


class InvalidTransitionError(TransitionError):
    def __init__(self, current: ImageStatus, target: ImageStatus) -> None:
        super().__init__(f"Cannot move image from {current.value} to {target.value}")
        self.current = current
        self.target = target


class ConcurrentTransitionError(TransitionError):
    def __init__(self, image_id: uuid.UUID, message: str | None = None) -> None:
        super().__init__(message or f"Image {image_id} was modified concurrently; reload and retry")
        self.image_id = image_id


class RelocationInProgressError(ConcurrentTransitionError):
    """A new transition was requested while the previous relocation is still queued or moving."""

    def __init__(self, image_id: uuid.UUID) -> None:
        super().__init__(image_id, f"Image {image_id} has a relocation in progress; wait for it to finish")


@dataclass(frozen=True)
class TransitionPlan:
    target_status: ImageStatus
    destination_prefix: str
    project_id: uuid.UUID | None = None


def ensure_transition(current: ImageStatus, target: ImageStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current, target)


def color_label(color_group: int, labels: Sequence[str]) -> str:
    if 0 < color_group <= len(labels):
        return labels[color_group - 1]
    return f"group{color_group}"


def _parse_exif_datetime(raw: Any) -> datetime | None:
    text = str(raw or "").strip().strip('"').strip()
    if not text:
        return None
    for fmt in _EXIF_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def capture_date(
    exif_data: Mapping[str, Any] | None,
    inserted_at: datetime | None,
    now: datetime | None = None,
) -> datetime:
    for field_name in CAPTURE_DATE_FIELDS:
        parsed = _parse_exif_datetime((exif_data or {}).get(field_name))
        if parsed is not None:
            return parsed
    if inserted_at is not None:
        if inserted_at.tzinfo is None:
            return inserted_at.replace(tzinfo=timezone.utc)
        return inserted_at.astimezone(timezone.utc)
    return now or datetime.now(timezone.utc)


def date_path(value: datetime) -> str:
    return f"{value.year:04d}/{value.month:02d}/{value.day:02d}"


def _record_date_path(record: ImageRecord, now: datetime | None) -> str:
    return date_path(capture_date(record.exif_data, record.inserted_at, now))


def plan_review(
    record: ImageRecord,
    color_group: int,
    labels: Sequence[str],
    now: datetime | None = None,
) -> TransitionPlan:
    """Approve into the color folder, or reject when no group was picked."""
    dated = _record_date_path(record, now)
    if color_group > 0:
        target = ImageStatus.approved
        prefix = f"approved/{color_label(color_group, labels)}/{dated}"
    else:
        target = ImageStatus.rejected
        prefix = f"rejected/{dated}"
    ensure_transition(record.status, target)
    return TransitionPlan(target_status=target, destination_prefix=prefix)


def plan_delete(record: ImageRecord, now: datetime | None = None) -> TransitionPlan:
    ensure_transition(record.status, ImageStatus.deleted)
    return TransitionPlan(ImageStatus.deleted, f"deleted/{_record_date_path(record, now)}")


def plan_undelete(record: ImageRecord, now: datetime | None = None) -> TransitionPlan:
    ensure_transition(record.status, ImageStatus.new)
    return TransitionPlan(ImageStatus.new, f"new/{_record_date_path(record, now)}")


def plan_project_assignment(record: ImageRecord, project: Project, now: datetime | None = None) -> TransitionPlan:
    ensure_transition(record.status, ImageStatus.project_assigned)
    prefix = f"projects/{project_storage_prefix(project)}/{_record_date_path(record, now)}"
    return TransitionPlan(ImageStatus.project_assigned, prefix, project_id=project.id)


def sanitize_storage_prefix(name: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_]", "_", (name or "").lower())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    cleaned = cleaned[:STORAGE_PREFIX_MAX_LENGTH].rstrip("_")
    return cleaned or DEFAULT_STORAGE_PREFIX


def project_storage_prefix(project: Project) -> str:
    return project.storage_prefix or str(project.id)
