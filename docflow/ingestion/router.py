"""
File router.

Moves a source file into its terminal folder:

    {processed}/{YYYY-MM-DD}/{name}
    {processed}/duplicates/{YYYY-MM-DD}/{name}
    {failed}/{YYYY-MM-DD}/{name}   (+ {name}.error.txt sidecar)

An existing file is never overwritten: a collision gets a millisecond
timestamp suffix before the extension.
"""

import asyncio
import os
import shutil
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import aiofiles

from docflow.models import DocumentRecord, utc_now
from docflow.utils.errors import SourceError
from docflow.utils.logger import get_logger
from docflow.utils.storage import DocumentRepository

logger = get_logger(__name__)


class TerminalState(str, Enum):
    """Where a file ends up."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


def dated_folder(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def collision_free_path(directory: Path, name: str, now: datetime) -> Path:
    """``directory/name``, or ``name-{epoch_ms}{ext}`` when taken."""
    target = directory / name
    if not target.exists():
        return target
    stem, ext = os.path.splitext(name)
    stamp = int(now.timestamp() * 1000)
    candidate = directory / f"{stem}-{stamp}{ext}"
    while candidate.exists():
        stamp += 1
        candidate = directory / f"{stem}-{stamp}{ext}"
    return candidate


class FileRouter:
    """Date-partitioned, collision-safe moves between source folders."""

    def __init__(
        self,
        processed_path: Path,
        failed_path: Path,
        documents: Optional[DocumentRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.processed_path = Path(processed_path)
        self.failed_path = Path(failed_path)
        self.documents = documents
        self.clock = clock

    def base_folder(self, state: TerminalState) -> Path:
        if state == TerminalState.PROCESSED:
            return self.processed_path
        if state == TerminalState.DUPLICATE:
            return self.processed_path / "duplicates"
        return self.failed_path

    async def route(
        self,
        file_path: str,
        state: TerminalState,
        error: Optional[str] = None,
        record: Optional[DocumentRecord] = None,
    ) -> str:
        """
        Move ``file_path`` to the folder for ``state`` and return the new path.

        A failed file also gets a ``.error.txt`` sidecar with the failure
        timestamp and message.
        """
        source = Path(file_path)
        if not source.exists():
            raise SourceError(f"Cannot route missing file: {file_path}")

        now = self.clock()
        directory = self.base_folder(state) / dated_folder(now)
        directory.mkdir(parents=True, exist_ok=True)
        target = collision_free_path(directory, source.name, now)

        try:
            await asyncio.to_thread(shutil.move, str(source), str(target))
        except OSError as e:
            raise SourceError(f"Failed to move {source} to {target}: {e}") from e

        if state == TerminalState.FAILED:
            await self._write_sidecar(target, now, error or "Unknown error")

        logger.info("file_routed", state=state.value, source=str(source), target=str(target))
        if record is not None and self.documents is not None:
            record.physical_location = str(target)
            await self.documents.update(record)
        return str(target)

    async def _write_sidecar(self, target: Path, now: datetime, message: str) -> None:
        sidecar = target.with_name(target.name + ".error.txt")
        async with aiofiles.open(sidecar, "w") as f:
            await f.write(f"Failed at: {now.isoformat()}\nError: {message}\n")
