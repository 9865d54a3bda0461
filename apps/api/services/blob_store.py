"""Filesystem-backed blob store for generated assets."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from config import settings


def _safe_relative(path: str) -> Path:
    parts = [part for part in Path(path).parts if part not in {"", ".", "..", "/"}]
    if not parts:
        raise ValueError("Blob path must not be empty")
    cleaned = ["".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in part) for part in parts]
    return Path(*cleaned)


class LocalBlobStore:
    """Stores blobs under ``<root>/<bucket>/<path>`` and returns the stable path."""

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or settings.BLOB_STORAGE_DIR)

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    async def put(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        relative = _safe_relative(path)
        target = self.root / _safe_relative(bucket) / relative
        await asyncio.to_thread(self._write, target, data)
        return relative.as_posix()

    def resolve(self, bucket: str, path: str) -> Path:
        return self.root / _safe_relative(bucket) / _safe_relative(path)
