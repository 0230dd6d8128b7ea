from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Protocol

from errors import DataError

logger = logging.getLogger(__name__)

AVATAR_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp"})
MAX_AVATAR_BYTES = 2 * 1024 * 1024


@dataclass(frozen=True)
class BlobObject:
    name: str
    updated_at: datetime


class BlobStorage(Protocol):
    async def list_objects(self, prefix: str) -> list[BlobObject]: ...

    async def upload(self, path: str, data: bytes) -> None: ...

    def get_public_url(self, path: str) -> str: ...

    async def remove(self, paths: Iterable[str]) -> None: ...


class LocalBlobStorage:
    """Blob bucket kept in a directory and served under ``url_prefix``."""

    def __init__(self, root: Path, url_prefix: str = "/avatars") -> None:
        self.root = Path(root).resolve()
        self.url_prefix = url_prefix.rstrip("/")

    def _resolve(self, path: str) -> Path:
        parts = PurePosixPath(path.strip("/")).parts
        if not parts or any(part in ("..", ".") for part in parts):
            raise DataError.constraint(f"Invalid storage path: {path!r}")
        target = self.root.joinpath(*parts).resolve()
        if self.root not in target.parents:
            raise DataError.constraint(f"Invalid storage path: {path!r}")
        return target

    async def list_objects(self, prefix: str) -> list[BlobObject]:
        folder = self._resolve(prefix)
        if not folder.is_dir():
            return []
        objects = []
        for entry in folder.iterdir():
            if not entry.is_file():
                continue
            mtime = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
            objects.append(BlobObject(name=entry.name, updated_at=mtime))
        return objects

    async def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info(f"blob_uploaded: path={path} size_bytes={len(data)}")

    def get_public_url(self, path: str) -> str:
        self._resolve(path)
        return f"{self.url_prefix}/{path.strip('/')}"

    async def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            target = self._resolve(path)
            if target.is_file():
                target.unlink()
                logger.info(f"blob_removed: path={path}")


async def latest_avatar_url(storage: BlobStorage, user_id: str) -> Optional[str]:
    objects = await storage.list_objects(user_id)
    if not objects:
        return None
    newest = max(objects, key=lambda o: o.updated_at)
    return storage.get_public_url(f"{user_id}/{newest.name}")


async def upload_avatar(
    storage: BlobStorage, user_id: str, filename: str, data: bytes
) -> str:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if extension not in AVATAR_EXTENSIONS:
        raise ValueError("Avatar must be a PNG, JPEG, GIF or WebP image")
    if not data:
        raise ValueError("Avatar file is empty")
    if len(data) > MAX_AVATAR_BYTES:
        raise ValueError("Avatar must be at most 2 MB")

    previous = [f"{user_id}/{o.name}" for o in await storage.list_objects(user_id)]
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    path = f"{user_id}/avatar-{stamp}.{extension}"
    await storage.upload(path, data)
    stale = [p for p in previous if p != path]
    if stale:
        await storage.remove(stale)
    return storage.get_public_url(path)
