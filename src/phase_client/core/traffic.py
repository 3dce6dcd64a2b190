"""Periodic traffic sampling bound to the engine's running lifetime."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable, Final

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S: Final[float] = 1.0
MAX_HISTORY_POINTS: Final[int] = 60


@dataclass(frozen=True, slots=True)
class TrafficSample:
    timestamp: datetime
    upload_bytes: int
    download_bytes: int


@dataclass(frozen=True, slots=True)
class TrafficTotals:
    upload_bytes: int = 0
    download_bytes: int = 0


# Returns (uploaded, downloaded) bytes since the previous call.
TrafficSource = Callable[[], Awaitable["tuple[int, int]"]]


async def idle_source() -> tuple[int, int]:
    """Placeholder feed until the engine exposes real counters."""
    return 0, 0


class TrafficSampler:
    def __init__(
        self,
        source: TrafficSource | None = None,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        max_history: int = MAX_HISTORY_POINTS,
        on_sample: Callable[[TrafficSample], None] | None = None,
    ) -> None:
        self._source = source or idle_source
        self._interval_s = interval_s
        self._history: deque[TrafficSample] = deque(maxlen=max_history)
        self._totals = TrafficTotals()
        self._on_sample = on_sample
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def history(self) -> list[TrafficSample]:
        return list(self._history)

    @property
    def totals(self) -> TrafficTotals:
        return self._totals

    def start(self) -> None:
        if self.running:
            return
        self._history.clear()
        self._task = asyncio.create_task(self._run(), name="traffic-sampler")

    async def stop(self) -> None:
        """Cancel sampling and wait until the task has actually finished."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._history.clear()

    def cancel(self) -> None:
        """Request cancellation without waiting, for use where awaiting is not possible."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        self._history.clear()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                upload, download = await self._source()
            except (OSError, ValueError) as exc:
                logger.warning("Traffic sample failed: %s", exc)
                continue
            sample = TrafficSample(
                timestamp=datetime.now(timezone.utc),
                upload_bytes=int(upload),
                download_bytes=int(download),
            )
            self._history.append(sample)
            self._totals = TrafficTotals(
                upload_bytes=self._totals.upload_bytes + sample.upload_bytes,
                download_bytes=self._totals.download_bytes + sample.download_bytes,
            )
            if self._on_sample is not None:
                self._on_sample(sample)
