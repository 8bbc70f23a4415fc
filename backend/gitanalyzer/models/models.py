import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    String, Text, Boolean, Integer, DateTime, ForeignKey,
    UniqueConstraint, Index, JSON, Numeric, CheckConstraint, Uuid
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gitanalyzer.core.database import Base


class AnalysisType(str, Enum):
    PRD = "prd"
    MARKETING = "marketing"
    FUNDING = "funding"
    SECURITY = "security"
    UI_THEME = "ui_theme"
    FEATURES = "features"
    DOCUMENTATION = "documentation"
    PROMPTS = "prompts"
    QUALITY = "quality"
    PERFORMANCE = "performance"


# Still readable and displayable, no longer accepted for new runs
LEGACY_ANALYSIS_TYPES: tuple[str, ...] = ("tools",)

# Types whose generating_* status uses a shorter key
STATUS_KEYS: dict[str, str] = {"ui_theme": "ui"}


class DepthLevel(str, Enum):
    CRITICAL = "critical"
    BALANCED = "balanced"
    COMPLETE = "complete"


class ProjectStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    QUEUE_READY = "queue_ready"
    COMPLETED = "completed"
    ERROR = "error"

    @staticmethod
    def generating(analysis_type: str) -> str:
        return f"generating_{STATUS_KEYS.get(analysis_type, analysis_type)}"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class RunMode(str, Enum):
    BACKGROUND = "background"
    QUEUE = "queue"


def _utc_now() -> datetime:
    """Return current UTC time with timezone info."""
    from datetime import timezone
    return datetime.now(timezone.utc)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    github_url: Mapped[str] = mapped_column(String(500), nullable=False)
    analysis_status: Mapped[str] = mapped_column(String(50), default=ProjectStatus.PENDING.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    github_data: Mapped[dict | None] = mapped_column(JSON)
    run_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )

    analyses: Mapped[list["Analysis"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    queue_items: Mapped[list["AnalysisQueueItem"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("github_url", "user_id", name="uq_projects_url_user"),
        Index("idx_projects_user", "user_id"),
    )


class Analysis(Base):
    __tablename__ = "analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    project: Mapped["Project"] = relationship(back_populates="analyses")

    # Several versions per (project, type) are kept on purpose
    __table_args__ = (Index("idx_analyses_project_type", "project_id", "type", "created_at"),)


class AnalysisUsage(Base):
    __tablename__ = "analysis_usage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="SET NULL")
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_type: Mapped[str] = mapped_column(String(50), nullable=False)
    tokens_estimated: Mapped[int | None] = mapped_column(Integer)
    cost_estimated: Mapped[float | None] = mapped_column(Numeric(12, 8))
    model_used: Mapped[str | None] = mapped_column(String(100))
    depth_level: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    __table_args__ = (
        Index("idx_usage_user", "user_id"),
        Index("idx_usage_project", "project_id"),
    )


class AnalysisQueueItem(Base):
    __tablename__ = "analysis_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_type: Mapped[str] = mapped_column(String(50), nullable=False)
    depth_level: Mapped[str] = mapped_column(String(20), default=DepthLevel.BALANCED.value)
    status: Mapped[str] = mapped_column(String(20), default=QueueStatus.PENDING.value, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    project: Mapped["Project"] = relationship(back_populates="queue_items")

    __table_args__ = (
        Index("idx_queue_project_status", "project_id", "status"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'error')", name="chk_queue_status"
        ),
    )


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class AnalysisPrompt(Base):
    __tablename__ = "analysis_prompts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    analysis_type: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    user_prompt_template: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )

    __table_args__ = (Index("idx_prompts_type_active", "analysis_type", "is_active"),)


class ProjectLease(Base):
    __tablename__ = "project_leases"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True
    )
    lease_token: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
