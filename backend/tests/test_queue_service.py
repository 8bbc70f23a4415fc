"""Tests for queue item processing and cancellation."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from openai import APIStatusError
from sqlalchemy import select

from conftest import make_completion, make_openai_client, status_response
from gitanalyzer.core.config import Settings
from gitanalyzer.core.errors import ProjectNotFoundError, QueueItemNotFoundError
from gitanalyzer.models import Analysis, AnalysisQueueItem, AnalysisUsage, Project
from gitanalyzer.schemas import Snapshot
from gitanalyzer.services.lease_service import acquire_lease, get_lease
from gitanalyzer.services.llm_invoker import LLMInvoker
from gitanalyzer.services.queue_service import (
    ALREADY_COMPLETED,
    ALREADY_PROCESSING,
    cancel_analysis,
    finished_types,
    process_queue_item,
)

TYPES = ["prd", "marketing", "funding", "security", "features"]


async def _queued_project(db, types=TYPES, snapshot=True, depth="balanced"):
    project = Project(
        user_id=uuid.uuid4(),
        name="demo",
        github_url="https://github.com/acme/demo",
        github_data=Snapshot(readme="# Demo").model_dump() if snapshot else None,
        analysis_status="queue_ready",
        run_started_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
    db.add(project)
    await db.commit()
    items = [
        AnalysisQueueItem(
            project_id=project.id,
            user_id=project.user_id,
            analysis_type=analysis_type,
            depth_level=depth,
            position=position,
        )
        for position, analysis_type in enumerate(types)
    ]
    db.add_all(items)
    await db.commit()
    await acquire_lease(db, project.id)
    return project, items


def _llm(*responses) -> LLMInvoker:
    return LLMInvoker(client=make_openai_client(*responses), settings=Settings(openai_api_key="test-key"))


# ── Tests: processing ─────────────────────────────────────────────────────


class TestProcessQueueItem:

    async def test_completes_item_and_records_usage(self, db):
        project, items = await _queued_project(db, ["prd", "marketing"], depth="critical")

        response = await process_queue_item(db, items[0].id, llm=_llm(make_completion("# prd")))

        assert response.status == "completed"
        await db.refresh(items[0])
        assert items[0].started_at is not None
        assert items[0].completed_at is not None
        usage = (await db.execute(select(AnalysisUsage))).scalar_one()
        assert usage.depth_level == "critical"
        assert usage.analysis_type == "prd"
        # marketing is still pending, so the run stays open
        await db.refresh(project)
        assert project.analysis_status == "generating_prd"
        assert await get_lease(db, project.id) is not None

    async def test_last_item_completes_project_and_releases_lease(self, db):
        project, items = await _queued_project(db, ["prd"])

        await process_queue_item(db, items[0].id, llm=_llm(make_completion()))

        await db.refresh(project)
        assert project.analysis_status == "completed"
        assert await get_lease(db, project.id) is None

    async def test_short_circuits(self, db):
        _, items = await _queued_project(db, ["prd", "marketing"])
        items[0].status = "completed"
        items[1].status = "processing"
        await db.commit()
        llm = _llm()

        assert (await process_queue_item(db, items[0].id, llm=llm)).status == ALREADY_COMPLETED
        assert (await process_queue_item(db, items[1].id, llm=llm)).status == ALREADY_PROCESSING
        llm.client.chat.completions.create.assert_not_awaited()

    async def test_llm_failure_marks_item_error(self, db):
        _, items = await _queued_project(db, ["prd", "marketing"])
        error = APIStatusError("bad request", response=status_response(400), body=None)

        response = await process_queue_item(db, items[0].id, llm=_llm(error))

        assert response.status == "error"
        assert "400" in response.error
        await db.refresh(items[0])
        assert items[0].retry_count == 1
        assert items[0].error_message

    async def test_errored_item_can_be_retried(self, db):
        _, items = await _queued_project(db, ["prd", "marketing"])
        items[0].status = "error"
        items[0].retry_count = 1
        await db.commit()

        response = await process_queue_item(db, items[0].id, llm=_llm(make_completion()))

        assert response.status == "completed"
        await db.refresh(items[0])
        assert items[0].retry_count == 1
        assert items[0].error_message is None

    async def test_missing_snapshot_fails_item(self, db):
        _, items = await _queued_project(db, ["prd"], snapshot=False)
        llm = _llm()

        response = await process_queue_item(db, items[0].id, llm=llm)

        assert response.status == "error"
        llm.client.chat.completions.create.assert_not_awaited()

    async def test_unexpected_error_does_not_leave_item_processing(self, db):
        project, items = await _queued_project(db, ["prd"])

        with pytest.raises(RuntimeError):
            await process_queue_item(db, items[0].id, llm=_llm(RuntimeError("boom")))

        await db.refresh(items[0])
        assert items[0].status == "error"
        assert items[0].error_message == "boom"
        assert items[0].retry_count == 1
        # The only item ended, so the run is over
        await db.refresh(project)
        assert project.analysis_status == "completed"
        assert await get_lease(db, project.id) is None

    async def test_unknown_item(self, db):
        with pytest.raises(QueueItemNotFoundError):
            await process_queue_item(db, uuid.uuid4(), llm=_llm())


# ── Tests: cancellation ───────────────────────────────────────────────────


class TestCancelAnalysis:

    async def test_cancel_after_two_of_five(self, db):
        project, items = await _queued_project(db)
        for item in items[:2]:
            await process_queue_item(db, item.id, llm=_llm(make_completion(f"# {item.analysis_type}")))

        response = await cancel_analysis(db, project.id)

        assert response.removed_items == 3
        assert response.analysis_status == "completed"
        assert response.completed_types == ["prd", "marketing"]
        remaining = (await db.execute(select(AnalysisQueueItem.status))).scalars().all()
        assert remaining == ["completed", "completed"]
        analyses = (await db.execute(select(Analysis.type).order_by(Analysis.created_at))).scalars().all()
        assert analyses == ["prd", "marketing"]
        await db.refresh(project)
        assert project.analysis_status == "completed"
        assert await get_lease(db, project.id) is None

    async def test_cancel_before_anything_finished(self, db):
        project, _ = await _queued_project(db)

        response = await cancel_analysis(db, project.id)

        assert response.removed_items == 5
        assert response.analysis_status == "queue_ready"
        assert response.completed_types == []
        assert await get_lease(db, project.id) is None

    async def test_analyses_from_earlier_runs_do_not_count(self, db):
        project, _ = await _queued_project(db, ["prd"])
        db.add(Analysis(
            project_id=project.id,
            type="prd",
            content="old",
            created_at=project.run_started_at - timedelta(days=1),
        ))
        await db.commit()

        assert await finished_types(db, project) == []

    async def test_queue_items_from_earlier_runs_do_not_count(self, db):
        project, items = await _queued_project(db, ["prd", "marketing"])
        items[0].status = "completed"
        items[0].completed_at = project.run_started_at - timedelta(days=1)
        await db.commit()

        response = await cancel_analysis(db, project.id)

        assert response.completed_types == []
        assert response.analysis_status == "queue_ready"

    async def test_unknown_project(self, db):
        with pytest.raises(ProjectNotFoundError):
            await cancel_analysis(db, uuid.uuid4())
