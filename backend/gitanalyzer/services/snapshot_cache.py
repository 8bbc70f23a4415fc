import logging
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.models import Project
from gitanalyzer.schemas import Snapshot

logger = logging.getLogger(__name__)


def build_project_context(project_name: str, github_url: str, snapshot: Snapshot) -> str:
    """Render a snapshot as the markdown context that prompts are built from.

    Fresh extractions and cached snapshots both go through here, so a cached
    re-run reproduces the original context exactly.
    """
    repo = snapshot.repo
    return f"""
# Project: {project_name}
URL: {github_url}

## Repository Information
- Description: {repo.description or "No description"}
- Primary language: {repo.language or "Not specified"}
- Stars: {repo.stars}
- Forks: {repo.forks}

## README
{snapshot.readme}

## File Structure
{snapshot.file_structure}

## package.json
{snapshot.package_summary}

## Source Code
{snapshot.source_code}

## Configuration
{snapshot.config_files}
"""


def truncate_context(context: str, max_chars: int) -> str:
    # Hard cut; this is cost control, not a content boundary
    if len(context) <= max_chars:
        return context
    return context[:max_chars]


def read_snapshot(project: Project) -> Snapshot | None:
    if not project.github_data:
        return None
    try:
        return Snapshot.model_validate(project.github_data)
    except ValidationError:
        logger.warning("Ignoring unreadable snapshot for project %s", project.id)
        return None


async def write_snapshot(db: AsyncSession, project: Project, snapshot: Snapshot) -> None:
    project.github_data = snapshot.model_dump()
    await db.commit()
