import uuid
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from gitanalyzer.models import AnalysisType, DepthLevel, RunMode


class RepoMetadata(BaseModel):
    description: str | None = None
    language: str | None = None
    stars: int = 0
    forks: int = 0


class Snapshot(BaseModel):
    """Cached extraction of a repository, stored in ``Project.github_data``."""

    repo: RepoMetadata = Field(default_factory=RepoMetadata)
    readme: str = ""
    file_structure: str = ""
    package_summary: str = ""
    source_code: str = ""
    config_files: str = ""


class AnalysisStartRequest(BaseModel):
    github_url: str = Field(min_length=1, max_length=500)
    user_id: uuid.UUID
    analysis_types: list[str] = Field(default=["prd", "marketing", "funding"], min_length=1)
    use_cache: bool = True
    depth: DepthLevel = DepthLevel.BALANCED
    existing_project_id: uuid.UUID | None = None
    mode: RunMode = RunMode.BACKGROUND

    @field_validator("analysis_types")
    @classmethod
    def _validate_types(cls, v: list[str]) -> list[str]:
        allowed = {t.value for t in AnalysisType}
        unknown = [t for t in v if t not in allowed]
        if unknown:
            raise ValueError(f"Unknown analysis types: {', '.join(unknown)}")
        # Keep caller order, drop repeats
        return list(dict.fromkeys(v))


class AnalysisStartResponse(BaseModel):
    project_id: uuid.UUID
    status: str
    mode: RunMode


class QueueItemResponse(BaseModel):
    id: uuid.UUID
    analysis_type: str
    depth_level: str
    status: str
    error_message: str | None
    retry_count: int
    started_at: datetime | None
    completed_at: datetime | None

    class Config:
        from_attributes = True


class ProjectStatusResponse(BaseModel):
    project_id: uuid.UUID
    name: str
    github_url: str
    analysis_status: str
    error_message: str | None
    has_snapshot: bool
    completed_types: list[str] = []
    queue: list[QueueItemResponse] = []


class AnalysisResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    type: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class ProcessQueueItemResponse(BaseModel):
    queue_item_id: uuid.UUID
    analysis_type: str
    status: str
    error: str | None = None


class CancelResponse(BaseModel):
    project_id: uuid.UUID
    analysis_status: str
    removed_items: int
    completed_types: list[str] = []
