"""
Queue health monitoring.

Three background loops share one shape: ``start()`` spawns a task that
runs ``tick()`` every interval until ``stop()`` cancels it.

- ``HealthMonitor`` samples per-queue counts and raises alerts when the
  backlog passes a threshold or failures jump between samples.
- ``Heartbeat`` writes a liveness file with an expiry for external health checks.
- ``StatsLogger`` logs per-queue counts.
"""

import asyncio
import json
import os
import time
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

import aiofiles

from docflow.models import utc_now
from docflow.queue.job_queue import JobQueue
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

AlertHandler = Callable[[Dict[str, Any]], Any]

# Alerts kept for health reports
MAX_ALERT_HISTORY = 100


class PeriodicTask:
    """Base for background loops."""

    name = "periodic"

    def __init__(self, interval: float):
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            "ticks": 0,
            "last_tick": None,
            "started_at": None,
        }

    async def start(self):
        if self._running:
            logger.warning("periodic_already_running", task=self.name)
            return
        self._running = True
        self.stats["started_at"] = utc_now().isoformat()
        self._task = asyncio.create_task(self._loop())
        logger.info("periodic_started", task=self.name, interval=self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("periodic_stopped", task=self.name)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
                self.stats["ticks"] += 1
                self.stats["last_tick"] = utc_now().isoformat()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("periodic_error", task=self.name, error=str(e), exc_info=True)
                await asyncio.sleep(self.interval)

    async def tick(self):
        raise NotImplementedError


class HealthMonitor(PeriodicTask):
    """
    Alerts on queue backlog and failure spikes.

    A backlog alert fires once when ``waiting`` first exceeds
    ``queue_threshold`` and not again until the queue has drained back to
    the threshold. A failure alert fires when ``failed`` grew by more than
    ``failed_threshold`` since the previous sample.
    """

    name = "health_monitor"

    def __init__(
        self,
        queues: Mapping[str, JobQueue],
        interval: float = 60.0,
        queue_threshold: int = 100,
        failed_threshold: int = 10,
        max_alerts: int = MAX_ALERT_HISTORY,
    ):
        super().__init__(interval)
        self.queues = queues
        self.queue_threshold = queue_threshold
        self.failed_threshold = failed_threshold
        self._last_failed: Dict[str, int] = {}
        self._backlogged: Set[str] = set()
        self._handlers: List[AlertHandler] = []
        self.alerts: Deque[Dict[str, Any]] = deque(maxlen=max_alerts)

    def on_alert(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    async def tick(self):
        await self.sample()

    async def sample(self) -> List[Dict[str, Any]]:
        """Take one sample of every queue. Returns the alerts it raised."""
        raised = []
        for name, queue in self.queues.items():
            counts = queue.counts()
            if counts["waiting"] <= self.queue_threshold:
                if name in self._backlogged:
                    self._backlogged.discard(name)
                    logger.info("queue_backlog_cleared", queue=name, waiting=counts["waiting"])
            elif name not in self._backlogged:
                self._backlogged.add(name)
                raised.append({
                    "type": "backlog",
                    "queue": name,
                    "waiting": counts["waiting"],
                    "threshold": self.queue_threshold,
                })

            last_failed = self._last_failed.get(name, 0)
            if counts["failed"] > last_failed + self.failed_threshold:
                raised.append({
                    "type": "failure_spike",
                    "queue": name,
                    "new_failures": counts["failed"] - last_failed,
                    "threshold": self.failed_threshold,
                })
            self._last_failed[name] = counts["failed"]

        for alert in raised:
            alert["timestamp"] = utc_now().isoformat()
            logger.warning("queue_alert", **alert)
            self.alerts.append(alert)
            for handler in self._handlers:
                try:
                    result = handler(alert)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error("alert_handler_failed", error=str(e))
        return raised


class Heartbeat(PeriodicTask):
    """
    Liveness record for external health checks.

    The file holds the time it was written, the process id, uptime, the
    number of workers and an ``expires_at`` ``ttl`` seconds later. A reader
    treats a missing or expired record as a dead worker process.
    """

    name = "heartbeat"

    def __init__(
        self,
        path: Path,
        worker_count: Callable[[], int],
        interval: float = 30.0,
        ttl: float = 60.0,
    ):
        super().__init__(interval)
        self.path = Path(path)
        self.worker_count = worker_count
        self.ttl = ttl
        self._started = time.monotonic()

    def payload(self) -> Dict[str, Any]:
        now = utc_now()
        return {
            "timestamp": now.isoformat(),
            "pid": os.getpid(),
            "uptime": round(time.monotonic() - self._started, 3),
            "workers": self.worker_count(),
            "expires_at": (now + timedelta(seconds=self.ttl)).isoformat(),
        }

    async def tick(self):
        await self.write()

    async def write(self) -> Dict[str, Any]:
        data = self.payload()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        async with aiofiles.open(tmp, "w") as f:
            await f.write(json.dumps(data))
        os.replace(tmp, self.path)
        return data

    @staticmethod
    async def read(path: Path, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """The current heartbeat, or None when missing or expired."""
        path = Path(path)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r") as f:
            data = json.loads(await f.read())
        now = now or utc_now()
        if datetime.fromisoformat(data["expires_at"]) <= now:
            return None
        return data


class StatsLogger(PeriodicTask):
    """Logs per-queue job counts."""

    name = "stats_logger"

    def __init__(self, queues: Mapping[str, JobQueue], interval: float = 60.0):
        super().__init__(interval)
        self.queues = queues

    async def tick(self):
        for name, queue in self.queues.items():
            counts = queue.counts()
            logger.info(
                "queue_stats",
                queue=name,
                waiting=counts["waiting"],
                active=counts["active"],
                delayed=counts["delayed"],
                completed=counts["completed"],
                failed=counts["failed"],
            )
