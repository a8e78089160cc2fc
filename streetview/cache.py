"""Filesystem-backed binary cache for captured street view images.

One entry per target id, named ``streetview_<target_id>.png`` so that existence
can be checked by name alone. Each image has a JSON sidecar holding its
:class:`~streetview.schemas.CachedImageMetadata`.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

from streetview.schemas import CachedImageMetadata

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "streetview_"
DEFAULT_EXTENSION = ".png"
METADATA_SUFFIX = ".json"
DEFAULT_CHUNK_SIZE = 64 * 1024

_TARGET_ID = re.compile(r"[A-Za-z0-9_-]+")
_VALID_KEY = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9]+$")


def cache_key(target_id: str, extension: str = DEFAULT_EXTENSION) -> str:
    """Return the deterministic cache filename for ``target_id``.

    The id is used verbatim after trimming outer whitespace. Ids holding any
    character outside ``[A-Za-z0-9_-]`` are rejected rather than rewritten, so
    two distinct ids never share a file.
    """

    slug = str(target_id).strip()
    if not _TARGET_ID.fullmatch(slug):
        raise ValueError(f"target_id {slug!r} may only contain letters, digits, '-' and '_'")
    return f"{KEY_PREFIX}{slug}{extension}"


@dataclass(frozen=True)
class CachedImage:
    """A cache entry as returned by :meth:`ContentStore.write`."""

    key: str
    path: Path
    content_type: str
    metadata: CachedImageMetadata


class ContentStore:
    """Binary object store addressed by deterministic filename."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def cache_key(self, target_id: str) -> str:
        return cache_key(target_id)

    def path_for(self, key: str) -> Path:
        """Resolve ``key`` to a path inside the cache root.

        Raises:
            ValueError: when ``key`` is not a plain cache filename.
        """

        if not _VALID_KEY.match(key or ""):
            raise ValueError(f"Invalid cache key {key!r}")
        return self.root / key

    def metadata_path_for(self, key: str) -> Path:
        return self.path_for(key).with_name(key + METADATA_SUFFIX)

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except (OSError, ValueError) as exc:
            LOGGER.warning("Cache existence check failed for %s: %s", key, exc)
            return False

    def write(
        self,
        key: str,
        data: bytes,
        metadata: CachedImageMetadata | Mapping[str, Any],
    ) -> CachedImage:
        """Store ``data`` under ``key``, overwriting any existing entry.

        The sidecar is committed before the image so an image that is visible
        by name always has metadata next to it; both use write-then-rename, so
        readers never see a partially written file.
        """

        if not data:
            raise ValueError("Refusing to cache an empty image")
        path = self.path_for(key)
        model = _coerce_metadata(metadata)
        model = model.model_copy(
            update={"content_type": self.content_type(key), "size_bytes": len(data)}
        )
        if path.exists():
            LOGGER.info("Overwriting existing cache entry %s", key)
        _atomic_write(self.metadata_path_for(key), model.model_dump_json(indent=2).encode("utf-8"))
        _atomic_write(path, data)
        return CachedImage(key=key, path=path, content_type=model.content_type, metadata=model)

    def read(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Return an iterator streaming the cached bytes in ``chunk_size`` pieces.

        Raises:
            FileNotFoundError: when no entry exists for ``key``.
        """

        path = self.path_for(key)
        if not path.is_file():
            raise FileNotFoundError(path)
        return _iter_file(path, chunk_size)

    def read_bytes(self, key: str) -> bytes:
        path = self.path_for(key)
        if not path.is_file():
            raise FileNotFoundError(path)
        return path.read_bytes()

    def read_metadata(self, key: str) -> CachedImageMetadata | None:
        meta_path = self.metadata_path_for(key)
        if not meta_path.is_file():
            return None
        try:
            return CachedImageMetadata.model_validate_json(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Unreadable cache metadata for %s: %s", key, exc)
            return None

    def delete(self, key: str) -> bool:
        """Remove the entry and its sidecar; returns False when nothing existed."""

        path = self.path_for(key)
        existed = path.exists()
        path.unlink(missing_ok=True)
        self.metadata_path_for(key).unlink(missing_ok=True)
        return existed

    def content_type(self, key: str) -> str:
        guessed, _ = mimetypes.guess_type(key)
        return guessed or "application/octet-stream"

    def keys(self) -> list[str]:
        return sorted(
            entry.name
            for entry in self.root.glob(f"{KEY_PREFIX}*")
            if entry.is_file() and not entry.name.endswith(METADATA_SUFFIX)
        )

    def stats(self) -> Dict[str, Any]:
        """Return entry count and total image bytes."""

        keys = self.keys()
        total_size = sum((self.root / key).stat().st_size for key in keys)
        return {
            "total_entries": len(keys),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024**2), 2),
        }


def _coerce_metadata(metadata: CachedImageMetadata | Mapping[str, Any]) -> CachedImageMetadata:
    if isinstance(metadata, CachedImageMetadata):
        return metadata
    return CachedImageMetadata.model_validate(dict(metadata))


def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _iter_file(path: Path, chunk_size: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


__all__ = [
    "KEY_PREFIX",
    "CachedImage",
    "ContentStore",
    "cache_key",
]
