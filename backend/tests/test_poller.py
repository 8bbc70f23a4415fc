"""Tests for the client poll loop and its stale detection."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from gitanalyzer.client.poller import AnalysisPoller, poll_analysis, progress_percent
from gitanalyzer.core.errors import AnalysisFailedError, PollTimeoutError
from gitanalyzer.schemas import ProjectStatusResponse, QueueItemResponse

PROJECT_ID = uuid.uuid4()
TYPES = ["prd", "marketing", "funding"]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        # Let dispatched queue tasks run
        await asyncio.sleep(0)


def _status(analysis_status="generating_prd", completed=(), queue=(), error=None) -> ProjectStatusResponse:
    return ProjectStatusResponse(
        project_id=PROJECT_ID,
        name="demo",
        github_url="https://github.com/acme/demo",
        analysis_status=analysis_status,
        error_message=error,
        has_snapshot=True,
        completed_types=list(completed),
        queue=list(queue),
    )


def _item(analysis_type, status="pending") -> QueueItemResponse:
    return QueueItemResponse(
        id=uuid.uuid4(),
        analysis_type=analysis_type,
        depth_level="balanced",
        status=status,
        error_message=None,
        retry_count=0,
        started_at=None,
        completed_at=None,
    )


# ── Tests: progress ───────────────────────────────────────────────────────


class TestProgress:

    @pytest.mark.parametrize("completed, total, expected", [
        (0, 3, 40),
        (1, 3, 60),
        (3, 3, 100),
        (0, 0, 100),
        (1, 6, 38),   # 37.5 rounds half up
    ])
    def test_percent(self, completed, total, expected):
        assert progress_percent(completed, total) == expected

    def test_steps_follow_status(self):
        poller = AnalysisPoller(TYPES, clock=FakeClock())
        snapshot = poller.observe(_status("generating_marketing", completed=["prd"]))

        assert [(s.key, s.status) for s in snapshot.steps] == [
            ("fetch", "done"),
            ("context", "done"),
            ("prd", "done"),
            ("marketing", "active"),
            ("funding", "pending"),
        ]
        assert snapshot.progress == 60

    def test_ui_theme_uses_short_status_key(self):
        poller = AnalysisPoller(["prd", "ui_theme"], clock=FakeClock())
        snapshot = poller.observe(_status("generating_ui", completed=["prd"]))

        assert [(s.key, s.status) for s in snapshot.steps[2:]] == [
            ("prd", "done"),
            ("ui_theme", "active"),
        ]

    def test_extracting_steps(self):
        snapshot = AnalysisPoller(TYPES, clock=FakeClock()).observe(_status("extracting"))
        assert [s.status for s in snapshot.steps[:2]] == ["done", "active"]


# ── Tests: guard and stale detection ─────────────────────────────────────


class TestStaleDetection:

    def test_stale_progress_clears_guard(self):
        clock = FakeClock()
        poller = AnalysisPoller(TYPES, clock=clock, guard_reset_ticks=1000)
        poller.observe(_status())
        assert poller.acquire_guard() is not None

        cleared_at = None
        for _ in range(20):
            clock.advance(2)
            snapshot = poller.observe(_status())
            if snapshot.guard_reset:
                cleared_at = clock.now
                break

        assert not poller.processing
        assert cleared_at is not None and cleared_at > 30

    def test_guard_not_cleared_while_progress_moves(self):
        clock = FakeClock()
        poller = AnalysisPoller(TYPES, clock=clock, guard_reset_ticks=1000)
        poller.acquire_guard()
        for completed in ([], ["prd"], ["prd", "marketing"]):
            clock.advance(20)
            poller.observe(_status(completed=completed))
        assert poller.processing

    def test_guard_force_reset_after_three_held_ticks(self):
        clock = FakeClock()
        poller = AnalysisPoller(TYPES, clock=clock)
        poller.acquire_guard()

        results = []
        for _ in range(3):
            clock.advance(2)
            results.append(poller.observe(_status()).guard_reset)

        assert results == [False, False, True]
        assert not poller.processing

    def test_stale_release_token_is_ignored(self):
        poller = AnalysisPoller(TYPES, clock=FakeClock())
        first = poller.acquire_guard()
        poller._force_release("test")
        second = poller.acquire_guard()

        poller.release_guard(first)
        assert poller.processing
        poller.release_guard(second)
        assert not poller.processing


# ── Tests: terminal states ───────────────────────────────────────────────


class TestTerminal:

    def test_timeout(self):
        clock = FakeClock()
        poller = AnalysisPoller(TYPES, clock=clock)
        clock.advance(600)
        with pytest.raises(PollTimeoutError):
            poller.observe(_status())

    def test_error_status(self):
        poller = AnalysisPoller(TYPES, clock=FakeClock())
        with pytest.raises(AnalysisFailedError, match="Repository not found"):
            poller.observe(_status("error", error="Repository not found"))

    def test_completed(self):
        snapshot = AnalysisPoller(TYPES, clock=FakeClock()).observe(_status("completed", completed=["prd"]))
        assert snapshot.done
        assert snapshot.progress == 100
        assert snapshot.next_item_id is None


# ── Tests: queue dispatch ────────────────────────────────────────────────


class TestNextItem:

    def test_first_pending_item(self):
        items = [_item("prd", "completed"), _item("marketing"), _item("funding")]
        snapshot = AnalysisPoller(TYPES, clock=FakeClock()).observe(_status("generating_prd", queue=items))
        assert snapshot.next_item_id == items[1].id

    def test_nothing_while_an_item_is_processing(self):
        items = [_item("prd", "processing"), _item("marketing")]
        snapshot = AnalysisPoller(TYPES, clock=FakeClock()).observe(_status("queue_ready", queue=items))
        assert snapshot.next_item_id is None

    def test_nothing_before_queue_is_ready(self):
        snapshot = AnalysisPoller(TYPES, clock=FakeClock()).observe(_status("extracting", queue=[_item("prd")]))
        assert snapshot.next_item_id is None


# ── Tests: async driver ──────────────────────────────────────────────────


class TestPollAnalysis:

    async def test_polls_until_completed(self):
        clock = FakeClock()

        client = AsyncMock()
        client.get_status.side_effect = [
            _status("pending"),
            _status("generating_prd"),
            _status("generating_marketing", completed=["prd"]),
            _status("completed", completed=TYPES),
        ]
        updates = []

        async def on_update(snapshot):
            updates.append(snapshot.progress)

        result = await poll_analysis(client, PROJECT_ID, TYPES, clock=clock, sleep=clock.sleep, on_update=on_update)

        assert result.done
        assert updates == [40, 40, 60, 100]
        assert clock.now == 6.0
        client.process_queue_item.assert_not_awaited()

    async def test_queue_mode_dispatches_pending_items(self):
        clock = FakeClock()
        item = _item("prd")

        client = AsyncMock()
        client.get_status.side_effect = [
            _status("queue_ready", queue=[item]),
            _status("completed", completed=["prd"], queue=[_item("prd", "completed")]),
        ]

        await poll_analysis(client, PROJECT_ID, ["prd"], queue_mode=True, clock=clock, sleep=clock.sleep)

        client.process_queue_item.assert_awaited_once_with(item.id)

    async def test_gives_up_after_ten_minutes(self):
        clock = FakeClock()

        client = AsyncMock()
        client.get_status.return_value = _status("generating_prd")

        with pytest.raises(PollTimeoutError):
            await poll_analysis(client, PROJECT_ID, TYPES, clock=clock, sleep=clock.sleep)
        assert client.get_status.await_count == 301
