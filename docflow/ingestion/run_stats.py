"""
Scan run statistics.

The last scan result and a bounded history are kept in one JSON file
for operators and the health report.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from docflow.models import utc_now
from docflow.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ScanResult:
    """Outcome of one scan of a source."""
    source: str = "local"
    scanned: int = 0
    queued: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> int:
        end = self.finished_at or utc_now()
        return int((end - self.started_at).total_seconds() * 1000)

    def add_error(self, file_name: str, error: str) -> None:
        self.errors.append({"file": file_name, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "scanned": self.scanned,
            "queued": self.queued,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
        }


class RunStatsStore:
    """JSON file with ``last_run`` and the most recent ``history``."""

    def __init__(self, path: Path, history_size: int = 50):
        self.path = Path(path)
        self.history_size = history_size
        self._lock = asyncio.Lock()

    async def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"last_run": None, "history": []}
        async with aiofiles.open(self.path, "r") as f:
            content = await f.read()
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("run_stats_corrupt", path=str(self.path), error=str(e))
            return {"last_run": None, "history": []}

    async def record(self, result: ScanResult) -> Dict[str, Any]:
        entry = result.to_dict()
        async with self._lock:
            data = await self.load()
            history = [entry] + list(data.get("history", []))
            data = {
                "last_run": entry["finished_at"] or entry["started_at"],
                "last_result": entry,
                "history": history[: self.history_size],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            async with aiofiles.open(tmp, "w") as f:
                await f.write(json.dumps(data, indent=2))
            os.replace(tmp, self.path)

        logger.info("scan_stats_recorded", **{k: v for k, v in entry.items() if k != "errors"},
                    errors=len(entry["errors"]))
        return data

    async def last(self) -> Optional[Dict[str, Any]]:
        return (await self.load()).get("last_result")
