"""Content-addressed on-disk store for narinfo documents and nar archives."""

from __future__ import annotations

import asyncio
import enum
import os
import re
from pathlib import Path
from typing import AsyncIterator, BinaryIO
from uuid import uuid4

import structlog


LOGGER = structlog.get_logger("nixlru.cache_proxy.store")

CHUNK_SIZE = 1024 * 1024
NARINFO_HASH_PATTERN = re.compile(r"[a-z0-9]{32}")
NAR_KEY_PATTERN = re.compile(r"[a-z0-9]{52}\.nar(?:\.[a-z0-9]+)?")


class Category(str, enum.Enum):
    NARINFO = "narinfo"
    NAR = "nar"

    def filename(self, key: str) -> str:
        if self is Category.NARINFO:
            return f"{key}.narinfo"
        return key

    def upstream_path(self, key: str) -> str:
        if self is Category.NARINFO:
            return f"{key}.narinfo"
        return f"nar/{key}"

    def is_valid_key(self, key: str) -> bool:
        pattern = NARINFO_HASH_PATTERN if self is Category.NARINFO else NAR_KEY_PATTERN
        return pattern.fullmatch(key) is not None


class CacheStore:
    """Maps ``(category, key)`` to files under a state directory.

    The filesystem is the only index: an entry is cached when its canonical
    file exists. Entries only ever appear through :meth:`publish`, which
    renames a fully written scratch file into place.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    @property
    def narinfo_dir(self) -> Path:
        return self.root / "narinfo"

    @property
    def nar_dir(self) -> Path:
        return self.root / "nar"

    @property
    def scratch_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def directories(self) -> tuple[Path, Path, Path]:
        return self.narinfo_dir, self.nar_dir, self.scratch_dir

    def prepare(self) -> None:
        for directory in self.directories:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.purge_scratch()

    def purge_scratch(self) -> int:
        removed = 0
        if not self.scratch_dir.exists():
            return removed
        for leftover in self.scratch_dir.iterdir():
            if leftover.is_file():
                leftover.unlink(missing_ok=True)
                removed += 1
        if removed:
            LOGGER.info("scratch_purged", files=removed)
        return removed

    def locate(self, category: Category, key: str) -> Path:
        directory = self.narinfo_dir if category is Category.NARINFO else self.nar_dir
        return directory / category.filename(key)

    def exists(self, category: Category, key: str) -> bool:
        return self.locate(category, key).is_file()

    def scratch_path(self) -> Path:
        return self.scratch_dir / uuid4().hex

    def publish(self, scratch: Path, category: Category, key: str) -> Path:
        target = self.locate(category, key)
        os.replace(scratch, target)
        return target

    def open(self, path: Path) -> BinaryIO:
        return path.open("rb")

    def status(self) -> dict[str, object]:
        return {
            "root": str(self.root),
            "directories": {directory.name: str(directory) for directory in self.directories},
            "writable": all(directory.is_dir() and os.access(directory, os.W_OK) for directory in self.directories),
        }


async def iter_file(handle: BinaryIO) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    try:
        while True:
            data = await loop.run_in_executor(None, handle.read, CHUNK_SIZE)
            if not data:
                break
            yield data
    finally:
        handle.close()
