from __future__ import annotations

import errno
import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol, TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.ETIMEDOUT, errno.EINTR, errno.ENOLCK}


class StoreError(Exception):
    """A content store operation failed for a reason that retrying will not fix."""


class TransientStoreError(StoreError):
    """Throttled, busy or timed out; worth another attempt."""


class ObjectNotFoundError(StoreError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class ContentStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def copy(self, source: str, destination: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_folder(self, folder: str) -> list[str]: ...

    async def read_bytes(self, key: str) -> bytes: ...

    async def write_bytes(self, key: str, data: bytes) -> None: ...


def is_retryable_store_error(exc: BaseException) -> bool:
    return isinstance(exc, TransientStoreError)


def parent_folder(key: str) -> str:
    parent = str(PurePosixPath(key).parent)
    return "" if parent == "." else parent


def join_key(prefix: str, name: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/{name}" if prefix else name


class LocalContentStore:
    """Filesystem-backed store addressing objects by POSIX keys relative to ``root``."""

    def __init__(self, root: str | Path, location: str = "local") -> None:
        self.root = Path(root).resolve()
        self.location = location

    def _path(self, key: str) -> Path:
        cleaned = str(key or "").strip().lstrip("/")
        if not cleaned:
            raise StoreError("Empty object key")
        path = (self.root / cleaned).resolve()
        if path != self.root and self.root not in path.parents:
            raise StoreError(f"Key escapes store root: {key}")
        return path

    def _key(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    async def _call(self, key: str, func: Callable[[], T]) -> T:
        try:
            return await anyio.to_thread.run_sync(func)
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(key) from exc
        except OSError as exc:
            if exc.errno in _TRANSIENT_ERRNOS:
                raise TransientStoreError(f"{key}: {exc}") from exc
            raise StoreError(f"{key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        path = self._path(key)
        return await self._call(key, path.is_file)

    async def copy(self, source: str, destination: str) -> None:
        src = self._path(source)
        dst = self._path(destination)

        def _copy() -> None:
            if not src.is_file():
                raise FileNotFoundError(source)
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)

        await self._call(source, _copy)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        # Deleting a missing object succeeds, like object-store semantics.
        await self._call(key, lambda: path.unlink(missing_ok=True))

    async def list_folder(self, folder: str) -> list[str]:
        cleaned = folder.strip("/")
        path = self._path(cleaned) if cleaned else self.root

        def _list() -> list[str]:
            if not path.is_dir():
                return []
            return sorted(self._key(child) for child in path.iterdir() if child.is_file())

        return await self._call(folder, _list)

    async def read_bytes(self, key: str) -> bytes:
        path = self._path(key)
        return await self._call(key, path.read_bytes)

    async def write_bytes(self, key: str, data: bytes) -> None:
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await self._call(key, _write)
