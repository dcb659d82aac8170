"""
Content hashing.

A document's identity for deduplication is the SHA-256 of its bytes,
read in chunks so large files never sit in memory.
"""

import asyncio
import hashlib
from pathlib import Path
from typing import Union

import aiofiles

CHUNK_SIZE = 64 * 1024


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file_sync(path: Union[str, Path]) -> str:
    """Blocking variant for callers already running in a worker thread."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


async def hash_file(path: Union[str, Path]) -> str:
    """Stream a file through SHA-256 without blocking the event loop."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            # Give other workers a turn on very large files
            await asyncio.sleep(0)
    return digest.hexdigest()
