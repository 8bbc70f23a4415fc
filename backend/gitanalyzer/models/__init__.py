from gitanalyzer.models.models import (
    Project, Analysis, AnalysisUsage, AnalysisQueueItem,
    SystemSetting, AnalysisPrompt, ProjectLease,
    AnalysisType, DepthLevel, ProjectStatus, QueueStatus, RunMode,
    LEGACY_ANALYSIS_TYPES,
)

__all__ = [
    "Project", "Analysis", "AnalysisUsage", "AnalysisQueueItem",
    "SystemSetting", "AnalysisPrompt", "ProjectLease",
    "AnalysisType", "DepthLevel", "ProjectStatus", "QueueStatus", "RunMode",
    "LEGACY_ANALYSIS_TYPES",
]
