"""
Precision Search - Blob Storage

Stores document bytes and returns a stable reference. Dedup is decided by
the caller's content hash, not by the storage layer.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_filename(filename: str) -> str:
    return _UNSAFE_NAME.sub("_", filename or "file")


def build_storage_path(owner_id: str, filename: str, timestamp_ms: int) -> str:
    """files/{owner}/{epoch ms}_{sanitized name}"""
    return f"files/{owner_id}/{timestamp_ms}_{sanitize_filename(filename)}"


class BlobStorage:
    """Interface for document blob uploads."""

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    """Writes blobs below a local directory; references use `ref_base`."""

    def __init__(self, base_dir: str = "uploads", ref_base: str = "local://uploads"):
        self.base_dir = Path(base_dir)
        self.ref_base = ref_base.rstrip("/")

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        target = self.base_dir / path
        await asyncio.to_thread(self._write, target, content)
        logger.debug(f"Stored {len(content)} bytes ({content_type}) at {path}")
        return f"{self.ref_base}/{path}"

    @staticmethod
    def _write(target: Path, content: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


class InMemoryBlobStorage(BlobStorage):
    """Keeps blobs in a dict; used by tests and dry runs."""

    def __init__(self, ref_base: str = "memory://"):
        self.ref_base = ref_base
        self.blobs: Dict[str, bytes] = {}

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        self.blobs[path] = content
        return f"{self.ref_base}{path}"
