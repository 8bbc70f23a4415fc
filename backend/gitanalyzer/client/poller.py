"""Client-side progress polling with stale detection.

``AnalysisPoller`` holds no timers; every decision is made in ``observe`` from
the injected clock, so the thresholds can be driven tick by tick. The async
``poll_analysis`` driver adds the real interval and, in queue mode, dispatches
one queue item at a time behind the poller's guard flag.
"""
import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

import httpx

from gitanalyzer.core.errors import AnalysisFailedError, PollTimeoutError
from gitanalyzer.models import ProjectStatus, QueueStatus
from gitanalyzer.schemas import ProjectStatusResponse
from gitanalyzer.services.analysis_types import step_label

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

POLL_INTERVAL_SECONDS = 2.0
STALE_AFTER_SECONDS = 30.0
GUARD_RESET_TICKS = 3
TIMEOUT_SECONDS = 600.0

# Fetch and context steps counted ahead of the per-type steps
EXTRACTION_STEPS: tuple[tuple[str, str], ...] = (
    ("fetch", "Fetching repository data"),
    ("context", "Building project context"),
)

_PRE_GENERATION = {ProjectStatus.PENDING.value, ProjectStatus.EXTRACTING.value}


def progress_percent(completed: int, total: int, offset: int = len(EXTRACTION_STEPS)) -> int:
    """Round-half-up percentage of finished steps, extraction steps included."""
    if total + offset <= 0:
        return 0
    return int(math.floor((completed + offset) / (total + offset) * 100 + 0.5))


@dataclass
class StepState:
    key: str
    label: str
    status: str = "pending"  # pending | active | done | error


@dataclass
class PollSnapshot:
    analysis_status: str
    progress: int
    steps: list[StepState] = field(default_factory=list)
    done: bool = False
    next_item_id: uuid.UUID | None = None
    guard_reset: bool = False


class AnalysisPoller:
    def __init__(
        self,
        analysis_types: Sequence[str],
        clock: Clock = time.monotonic,
        stale_after: float = STALE_AFTER_SECONDS,
        guard_reset_ticks: int = GUARD_RESET_TICKS,
        timeout: float = TIMEOUT_SECONDS,
    ):
        self.analysis_types = list(analysis_types)
        self.clock = clock
        self.stale_after = stale_after
        self.guard_reset_ticks = guard_reset_ticks
        self.timeout = timeout

        self.started_at = clock()
        self.processing = False
        self._guard_token = 0
        self._guard_ticks = 0
        self._last_progress: int | None = None
        self._last_change_at = self.started_at

    def acquire_guard(self) -> int | None:
        """Take the processing flag; returns a token for ``release_guard`` or None if held."""
        if self.processing:
            return None
        self.processing = True
        self._guard_token += 1
        self._guard_ticks = 0
        return self._guard_token

    def release_guard(self, token: int) -> None:
        # A stale token belongs to a dispatch that was already force-reset
        if token == self._guard_token:
            self.processing = False
            self._guard_ticks = 0

    def _force_release(self, reason: str) -> None:
        logger.warning("Clearing processing flag: %s", reason)
        self.processing = False
        self._guard_ticks = 0

    def observe(self, status: ProjectStatusResponse) -> PollSnapshot:
        """Fold one status read into the poller state."""
        now = self.clock()
        elapsed = now - self.started_at
        if elapsed >= self.timeout:
            raise PollTimeoutError(elapsed)

        if status.analysis_status == ProjectStatus.ERROR.value:
            raise AnalysisFailedError(status.error_message or "Analysis failed")

        finished = set(status.completed_types)
        completed = sum(1 for t in self.analysis_types if t in finished)
        progress = progress_percent(completed, len(self.analysis_types))
        done = status.analysis_status == ProjectStatus.COMPLETED.value
        if done:
            progress = 100

        guard_reset = False
        if progress != self._last_progress:
            self._last_progress = progress
            self._last_change_at = now
        elif now - self._last_change_at > self.stale_after:
            self._last_change_at = now
            if self.processing:
                self._force_release(f"progress stuck at {progress}% for over {self.stale_after:.0f}s")
                guard_reset = True

        if self.processing:
            self._guard_ticks += 1
            if self._guard_ticks >= self.guard_reset_ticks:
                self._force_release(f"still held after {self._guard_ticks} ticks")
                guard_reset = True
        else:
            self._guard_ticks = 0

        return PollSnapshot(
            analysis_status=status.analysis_status,
            progress=progress,
            steps=self._steps(status, finished),
            done=done,
            next_item_id=None if done else self._next_item(status),
            guard_reset=guard_reset,
        )

    def _steps(self, status: ProjectStatusResponse, finished: set[str]) -> list[StepState]:
        current = status.analysis_status
        if current == ProjectStatus.PENDING.value:
            extraction = ["active", "pending"]
        elif current == ProjectStatus.EXTRACTING.value:
            extraction = ["done", "active"]
        else:
            extraction = ["done", "done"]
        steps = [
            StepState(key, label, state)
            for (key, label), state in zip(EXTRACTION_STEPS, extraction)
        ]

        queue = {item.analysis_type: item.status for item in status.queue}
        for analysis_type in self.analysis_types:
            if analysis_type in finished:
                state = "done"
            elif current == ProjectStatus.generating(analysis_type):
                state = "active"
            elif queue.get(analysis_type) == QueueStatus.PROCESSING.value:
                state = "active"
            elif queue.get(analysis_type) == QueueStatus.ERROR.value:
                state = "error"
            else:
                state = "pending"
            steps.append(StepState(analysis_type, step_label(analysis_type), state))
        return steps

    def _next_item(self, status: ProjectStatusResponse) -> uuid.UUID | None:
        if status.analysis_status in _PRE_GENERATION:
            return None
        if any(item.status == QueueStatus.PROCESSING.value for item in status.queue):
            return None
        for item in status.queue:
            if item.status == QueueStatus.PENDING.value:
                return item.id
        return None


async def poll_analysis(
    client,
    project_id: uuid.UUID,
    analysis_types: Sequence[str],
    queue_mode: bool = False,
    interval: float = POLL_INTERVAL_SECONDS,
    clock: Clock = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_update: Callable[[PollSnapshot], Awaitable[None]] | None = None,
) -> PollSnapshot:
    """Poll until the project completes.

    ``client`` is an ``AnalysisAPIClient`` or anything with the same
    ``get_status`` and ``process_queue_item`` coroutines. Raises
    ``AnalysisFailedError`` or ``PollTimeoutError``.
    """
    poller = AnalysisPoller(analysis_types, clock=clock)
    dispatched: set[asyncio.Task] = set()

    async def _process(item_id: uuid.UUID, token: int) -> None:
        try:
            await client.process_queue_item(item_id)
        except httpx.HTTPError as e:
            # The item stays pending and is dispatched again on a later tick
            logger.warning("Processing queue item %s failed: %s", item_id, e)
        finally:
            poller.release_guard(token)

    try:
        while True:
            status = await client.get_status(project_id)
            snapshot = poller.observe(status)
            if on_update is not None:
                await on_update(snapshot)
            if snapshot.done:
                return snapshot

            if queue_mode and snapshot.next_item_id is not None:
                token = poller.acquire_guard()
                if token is not None:
                    task = asyncio.create_task(_process(snapshot.next_item_id, token))
                    dispatched.add(task)
                    task.add_done_callback(dispatched.discard)

            await sleep(interval)
    finally:
        for task in dispatched:
            task.cancel()
