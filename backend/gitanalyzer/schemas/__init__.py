from gitanalyzer.schemas.schemas import (
    RepoMetadata, Snapshot,
    AnalysisStartRequest, AnalysisStartResponse,
    QueueItemResponse, ProjectStatusResponse, AnalysisResponse,
    ProcessQueueItemResponse, CancelResponse,
)

__all__ = [
    "RepoMetadata", "Snapshot",
    "AnalysisStartRequest", "AnalysisStartResponse",
    "QueueItemResponse", "ProjectStatusResponse", "AnalysisResponse",
    "ProcessQueueItemResponse", "CancelResponse",
]
