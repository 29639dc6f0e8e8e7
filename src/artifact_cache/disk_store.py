from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List

from artifact_cache.codec import encode_record
from artifact_cache.errors import RecordNotFoundError
from artifact_cache.models import CacheRecord

logger = logging.getLogger(__name__)

KEY_SEPARATOR_SUBSTITUTE = "\x1d"
_PATH_SEPARATORS = {sep for sep in ("/", os.sep, os.altsep) if sep}
# Half-written records; list_keys skips them.
TEMP_FILE_PREFIX = ".artifact-cache-tmp-"


def key_to_file_name(key: str) -> str:
    """Map a cache key to a flat file name so keys never create subdirectories."""
    name = key
    for sep in _PATH_SEPARATORS:
        name = name.replace(sep, KEY_SEPARATOR_SUBSTITUTE)
    return name


def file_name_to_key(name: str) -> str:
    return name.replace(KEY_SEPARATOR_SUBSTITUTE, "/")


class DiskStore:
    def __init__(self, cache_dir: str | os.PathLike[str]) -> None:
        self.cache_dir = Path(cache_dir)

    def path_for(self, key: str) -> Path:
        return self.cache_dir / key_to_file_name(key)

    async def read(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise RecordNotFoundError(key) from e

    async def write(self, key: str, record: CacheRecord) -> None:
        data = encode_record(record)
        await asyncio.to_thread(self._write_sync, key, data)

    def _write_sync(self, key: str, data: bytes) -> None:
        tmp_path = self.cache_dir / f"{TEMP_FILE_PREFIX}{uuid.uuid4().hex}"
        try:
            handle = tmp_path.open("xb")
        except FileNotFoundError:
            logger.debug("Creating cache dir. path=%s", self.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            handle = tmp_path.open("xb")

        try:
            with handle:
                handle.write(data)
            target = self.path_for(key)
            tmp_path.replace(target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("Cache record written. key=%s path=%s bytes=%d", key, target, len(data))

    async def remove_all(self) -> None:
        """Delete the whole cache directory; a missing directory is not an error."""
        try:
            await asyncio.to_thread(shutil.rmtree, self.cache_dir)
        except FileNotFoundError:
            return
        logger.debug("Cache dir removed. path=%s", self.cache_dir)

    def list_keys(self) -> List[str]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            file_name_to_key(entry.name)
            for entry in self.cache_dir.iterdir()
            if entry.is_file() and not entry.name.startswith(TEMP_FILE_PREFIX)
        )


__all__ = ["TEMP_FILE_PREFIX", "DiskStore", "file_name_to_key", "key_to_file_name"]
