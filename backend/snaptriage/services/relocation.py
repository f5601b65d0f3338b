from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final, Sequence

from snaptriage.core import metrics
from snaptriage.services.content_store import ContentStore, ObjectNotFoundError, StoreError, join_key, parent_folder
from snaptriage.services.retry import RetryPolicy

if TYPE_CHECKING:
    from snaptriage.models.image import ImageRecord

logger = logging.getLogger(__name__)

RAW_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {
        ".cr2", ".cr3", ".nef", ".arw", ".raf", ".orf", ".dng", ".rw2", ".pef", ".srw", ".3fr",
        ".raw", ".rwl", ".mrw", ".nrw", ".kdc", ".dcr", ".sr2", ".erf", ".mef", ".mos",
    }
)


class SourceMissingError(Exception):
    """The original photo is gone from both its recorded path and the destination."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Original file missing: {key}")
        self.key = key


@dataclass(frozen=True)
class FileSet:
    original_path: str
    thumb_small_path: str
    thumb_large_path: str
    raw_sidecar_path: str | None = None
    related_paths: tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: "ImageRecord") -> "FileSet":
        return cls(
            original_path=record.original_path,
            thumb_small_path=record.thumb_small_path,
            thumb_large_path=record.thumb_large_path,
            raw_sidecar_path=record.raw_sidecar_path,
            related_paths=tuple(record.related_paths or ()),
        )


@dataclass(frozen=True)
class RelocationResult:
    original_path: str
    thumb_small_path: str
    thumb_large_path: str
    raw_sidecar_path: str | None
    related_paths: list[str]
    moved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def destination_for(key: str, destination_prefix: str) -> str:
    return join_key(destination_prefix, PurePosixPath(key).name)


def _stem(key: str) -> str:
    return PurePosixPath(key).stem.lower()


async def find_raw_sidecars(store: ContentStore, original_path: str, policy: RetryPolicy) -> list[str]:
    """RAW files next to the original sharing its base name, compared case-insensitively."""
    folder = parent_folder(original_path)
    listing = await policy.run(lambda: store.list_folder(folder), label="list_folder")
    stem = _stem(original_path)
    found: list[str] = []
    for key in listing:
        if key == original_path:
            continue
        suffix = PurePosixPath(key).suffix.lower()
        if suffix in RAW_EXTENSIONS and _stem(key) == stem:
            found.append(key)
    return found


async def _move(store: ContentStore, source: str, destination: str, policy: RetryPolicy) -> None:
    await policy.run(lambda: store.copy(source, destination), label="copy")
    await policy.run(lambda: store.delete(source), label="delete")


async def _move_primary(
    store: ContentStore,
    source: str,
    destination_prefix: str,
    policy: RetryPolicy,
    result_moved: list[str],
    *,
    is_original: bool,
) -> str:
    destination = destination_for(source, destination_prefix)
    if source == destination:
        return destination
    try:
        await _move(store, source, destination, policy)
    except ObjectNotFoundError:
        # A previous run may have moved the file before its metadata write landed.
        if await policy.run(lambda: store.exists(destination), label="exists"):
            logger.info("relocation_file_already_moved", extra={"source": source, "destination": destination})
            return destination
        if is_original:
            raise SourceMissingError(source) from None
        raise StoreError(f"Preview missing at {source} and {destination}") from None
    result_moved.append(destination)
    return destination


async def _exists_quietly(store: ContentStore, key: str) -> bool:
    try:
        return await store.exists(key)
    except StoreError:
        return False


async def _move_sidecar(
    store: ContentStore,
    source: str,
    destination_prefix: str,
    policy: RetryPolicy,
    moved: list[str],
    skipped: list[str],
) -> str:
    destination = destination_for(source, destination_prefix)
    if source == destination:
        return destination
    try:
        await _move(store, source, destination, policy)
    except StoreError as exc:
        if isinstance(exc, ObjectNotFoundError) and await _exists_quietly(store, destination):
            return destination
        logger.warning("relocation_sidecar_skipped", extra={"source": source, "error": str(exc)})
        metrics.record_sidecar_skipped()
        skipped.append(source)
        return source
    moved.append(destination)
    return destination


async def relocate_files(
    store: ContentStore,
    files: FileSet,
    destination_prefix: str,
    policy: RetryPolicy,
) -> RelocationResult:
    """Move every file of one photo under ``destination_prefix``.

    Each file is copied, then its old copy deleted; the old copy is never removed
    before the new one exists. Files already at the destination are left alone, so
    running this again after success touches nothing.

    The original and both previews must move; any error for them propagates
    (``SourceMissingError`` when the original cannot be found anywhere). RAW and
    related sidecars are best effort: a failure is logged and the sidecar keeps its
    old path.
    """
    moved: list[str] = []
    skipped: list[str] = []

    raw_candidates: list[str] = []
    if files.raw_sidecar_path:
        raw_candidates.append(files.raw_sidecar_path)
    try:
        for key in await find_raw_sidecars(store, files.original_path, policy):
            if key not in raw_candidates:
                raw_candidates.append(key)
    except StoreError as exc:
        logger.warning("relocation_raw_discovery_failed", extra={"original": files.original_path, "error": str(exc)})

    original = await _move_primary(store, files.original_path, destination_prefix, policy, moved, is_original=True)
    thumb_small = await _move_primary(store, files.thumb_small_path, destination_prefix, policy, moved, is_original=False)
    thumb_large = await _move_primary(store, files.thumb_large_path, destination_prefix, policy, moved, is_original=False)

    raw_paths = [await _move_sidecar(store, key, destination_prefix, policy, moved, skipped) for key in raw_candidates]
    related = [
        await _move_sidecar(store, key, destination_prefix, policy, moved, skipped)
        for key in _unique(files.related_paths)
        if key not in raw_candidates
    ]

    return RelocationResult(
        original_path=original,
        thumb_small_path=thumb_small,
        thumb_large_path=thumb_large,
        raw_sidecar_path=raw_paths[0] if raw_paths else None,
        related_paths=related + raw_paths[1:],
        moved=moved,
        skipped=skipped,
    )


def _unique(keys: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for key in keys:
        if key and key not in seen:
            seen.add(key)
            out.append(key)
    return out
