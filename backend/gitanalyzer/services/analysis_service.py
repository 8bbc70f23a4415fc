import uuid
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.core.database import async_session_maker
from gitanalyzer.core.errors import (
    ExhaustedRetriesError,
    LLMRequestError,
    InvalidRepositoryURLError,
    MissingCredentialsError,
    ProjectNotFoundError,
    RepositoryNotFoundError,
)
from gitanalyzer.models import (
    Analysis,
    AnalysisQueueItem,
    AnalysisUsage,
    DepthLevel,
    Project,
    ProjectStatus,
    QueueStatus,
)
from gitanalyzer.schemas import AnalysisStartRequest, Snapshot
from gitanalyzer.services.analysis_types import step_label
from gitanalyzer.services.depth_config import DepthConfig, load_depth_config
from gitanalyzer.services.github_extractor import GitHubExtractor, parse_github_url
from gitanalyzer.services.lease_service import acquire_lease, release_lease, renew_lease
from gitanalyzer.services.llm_invoker import LLMInvoker
from gitanalyzer.services.model_costs import estimate_cost
from gitanalyzer.services.prompt_resolver import (
    PromptTemplate,
    build_prompts,
    load_prompt_templates,
    prompt_variables,
)
from gitanalyzer.services.snapshot_cache import (
    build_project_context,
    read_snapshot,
    truncate_context,
    write_snapshot,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Errors that end a run; anything raised per type is logged and skipped
FATAL_ERRORS = (RepositoryNotFoundError, MissingCredentialsError, InvalidRepositoryURLError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisOrchestrator:
    """Drive one analysis run: snapshot, then one LLM call per requested type."""

    def __init__(
        self,
        db: AsyncSession,
        llm: LLMInvoker | None = None,
        extractor: GitHubExtractor | None = None,
        sleep: Sleep = asyncio.sleep,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._llm = llm
        self.extractor = extractor or GitHubExtractor(self.settings)
        self._sleep = sleep

    def ensure_llm(self) -> LLMInvoker:
        # Built on first use so a missing key surfaces as a fatal run error
        if self._llm is None:
            self._llm = LLMInvoker(settings=self.settings)
        return self._llm

    async def _set_status(self, project: Project, status: str, error: str | None = None) -> None:
        project.analysis_status = status
        project.error_message = error
        await self.db.commit()
        logger.info("Project %s -> %s", project.id, status)

    async def prepare_snapshot(self, project: Project, use_cache: bool) -> Snapshot:
        """Return the cached snapshot, or extract and store a fresh one."""
        if use_cache:
            cached = read_snapshot(project)
            if cached is not None:
                logger.info("Using cached snapshot for project %s", project.id)
                return cached

        await self._set_status(project, ProjectStatus.EXTRACTING.value)
        owner, repo, _ = parse_github_url(project.github_url)
        snapshot = await self.extractor.extract(owner, repo)
        await write_snapshot(self.db, project, snapshot)
        return snapshot

    async def generate_analysis_type(
        self,
        project: Project,
        analysis_type: str,
        depth: str,
        depth_config: DepthConfig,
        context: str,
        snapshot: Snapshot | None,
        templates: dict[str, PromptTemplate],
        user_id: uuid.UUID | None = None,
    ) -> Analysis:
        """Generate, store and account for one analysis type."""
        await self._set_status(project, ProjectStatus.generating(analysis_type))
        logger.info("%s for project %s with %s", step_label(analysis_type), project.id, depth_config.model)

        system_prompt, user_prompt = build_prompts(
            analysis_type,
            templates,
            prompt_variables(project.name, project.github_url, snapshot),
            context,
            depth_config.prompt_style,
        )
        result = await self.ensure_llm().invoke(system_prompt, user_prompt, depth_config.model)

        analysis = Analysis(project_id=project.id, type=analysis_type, content=result.content)
        self.db.add(analysis)
        self.db.add(AnalysisUsage(
            project_id=project.id,
            user_id=user_id or project.user_id,
            analysis_type=analysis_type,
            tokens_estimated=result.tokens_used,
            cost_estimated=estimate_cost(result.model, result.input_tokens, result.output_tokens),
            model_used=result.model,
            depth_level=depth,
        ))
        await self.db.commit()
        logger.info(
            "Saved %s for project %s (%d tokens)", analysis_type, project.id, result.tokens_used,
        )
        return analysis

    async def _fail(self, project: Project, lease_token: uuid.UUID, error: Exception) -> None:
        logger.error("Analysis run for project %s failed: %s", project.id, error)
        await self._set_status(project, ProjectStatus.ERROR.value, str(error))
        await release_lease(self.db, project.id, lease_token)

    async def run(
        self,
        project_id: uuid.UUID,
        analysis_types: Sequence[str],
        depth: str,
        use_cache: bool,
        lease_token: uuid.UUID,
    ) -> None:
        project = await self.db.get(Project, project_id)
        if not project:
            logger.warning("Project %s disappeared before its run started", project_id)
            await release_lease(self.db, project_id, lease_token)
            return

        depth_config = await load_depth_config(self.db, depth)
        logger.info(
            "Starting run for project %s: types=%s depth=%s model=%s max_context=%d",
            project.id, list(analysis_types), depth, depth_config.model, depth_config.max_context_chars,
        )

        try:
            snapshot = await self.prepare_snapshot(project, use_cache)
            self.ensure_llm()
        except FATAL_ERRORS as e:
            await self._fail(project, lease_token, e)
            return

        context = build_project_context(project.name, project.github_url, snapshot)
        context = truncate_context(context, depth_config.max_context_chars)
        templates = await load_prompt_templates(self.db)

        for index, analysis_type in enumerate(analysis_types):
            if index > 0:
                await self._sleep(self.settings.inter_call_delay_seconds)
            if not await renew_lease(self.db, project.id, lease_token):
                logger.info("Run for project %s was cancelled before %s", project.id, analysis_type)
                return
            try:
                await self.generate_analysis_type(
                    project, analysis_type, depth, depth_config, context, snapshot, templates,
                )
            except (LLMRequestError, ExhaustedRetriesError) as e:
                logger.error("Failed to generate %s for project %s: %s", analysis_type, project.id, e)
            except SQLAlchemyError as e:
                logger.error("Failed to save %s for project %s: %s", analysis_type, project_id, e)
                await self.db.rollback()
                # Rollback expires the project row
                await self.db.refresh(project)

        if not await renew_lease(self.db, project.id, lease_token):
            logger.info("Run for project %s was cancelled before completion", project.id)
            return
        await self._set_status(project, ProjectStatus.COMPLETED.value)
        await release_lease(self.db, project.id, lease_token)
        logger.info("Run for project %s completed", project.id)

    async def prepare_queue(
        self,
        project_id: uuid.UUID,
        analysis_types: Sequence[str],
        depth: str,
        use_cache: bool,
        lease_token: uuid.UUID,
    ) -> list[AnalysisQueueItem]:
        """Queue mode: store the snapshot and one pending item per type."""
        project = await self.db.get(Project, project_id)
        if not project:
            logger.warning("Project %s disappeared before its queue was prepared", project_id)
            await release_lease(self.db, project_id, lease_token)
            return []

        try:
            await self.prepare_snapshot(project, use_cache)
        except FATAL_ERRORS as e:
            await self._fail(project, lease_token, e)
            return []

        # Items from earlier runs would be picked up by the client otherwise
        await self.db.execute(delete(AnalysisQueueItem).where(AnalysisQueueItem.project_id == project.id))
        items = [
            AnalysisQueueItem(
                project_id=project.id,
                user_id=project.user_id,
                analysis_type=analysis_type,
                depth_level=depth,
                status=QueueStatus.PENDING.value,
                position=position,
            )
            for position, analysis_type in enumerate(analysis_types)
        ]
        self.db.add_all(items)
        await self._set_status(project, ProjectStatus.QUEUE_READY.value)
        logger.info("Queued %d analyses for project %s", len(items), project.id)
        return items


async def _get_or_create_project(
    db: AsyncSession,
    user_id: uuid.UUID,
    github_url: str,
    name: str,
) -> Project:
    query = select(Project).where(Project.github_url == github_url, Project.user_id == user_id)
    project = (await db.execute(query)).scalar_one_or_none()
    if project:
        return project

    project = Project(user_id=user_id, name=name, github_url=github_url)
    db.add(project)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent request created the same (url, user) row first
        await db.rollback()
        project = (await db.execute(query)).scalar_one()
    return project


async def start_analysis(db: AsyncSession, request: AnalysisStartRequest) -> tuple[Project, uuid.UUID]:
    """Create or reuse the project, take its lease and reset it to ``pending``.

    The caller schedules ``run_analysis_task`` with the returned lease token.
    """
    _, repo, github_url = parse_github_url(request.github_url)

    if request.existing_project_id:
        project = await db.get(Project, request.existing_project_id)
        if not project or project.user_id != request.user_id:
            raise ProjectNotFoundError(f"Project {request.existing_project_id} not found")
    else:
        project = await _get_or_create_project(db, request.user_id, github_url, repo)

    lease_token = await acquire_lease(db, project.id)
    # A lost insert race rolls the session back and expires the project
    await db.refresh(project)

    # Queue items belong to a single run
    await db.execute(delete(AnalysisQueueItem).where(AnalysisQueueItem.project_id == project.id))
    project.analysis_status = ProjectStatus.PENDING.value
    project.error_message = None
    project.run_started_at = _utc_now()
    await db.commit()
    logger.info(
        "Analysis requested for %s (project %s, types=%s, depth=%s, mode=%s)",
        github_url, project.id, request.analysis_types, request.depth.value, request.mode.value,
    )
    return project, lease_token


async def run_analysis_task(
    project_id: uuid.UUID,
    lease_token: uuid.UUID,
    analysis_types: list[str],
    depth: str = DepthLevel.BALANCED.value,
    use_cache: bool = True,
    queue_mode: bool = False,
) -> None:
    async with async_session_maker() as db:
        orchestrator = AnalysisOrchestrator(db)
        try:
            if queue_mode:
                await orchestrator.prepare_queue(project_id, analysis_types, depth, use_cache, lease_token)
            else:
                await orchestrator.run(project_id, analysis_types, depth, use_cache, lease_token)
        except Exception as e:
            logger.exception("Analysis run failed", extra={"project_id": str(project_id)})
            await db.rollback()
            project = await db.get(Project, project_id)
            if project:
                project.analysis_status = ProjectStatus.ERROR.value
                project.error_message = str(e)
                await db.commit()
            await release_lease(db, project_id, lease_token)
            raise
