import uuid
import logging
import httpx
from gitanalyzer.core.errors import AnalysisInProgressError
from gitanalyzer.schemas import (
    AnalysisResponse,
    AnalysisStartRequest,
    AnalysisStartResponse,
    CancelResponse,
    ProcessQueueItemResponse,
    ProjectStatusResponse,
)

logger = logging.getLogger(__name__)


class AnalysisAPIClient:
    """Thin async client for the analysis HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_prefix: str = "/api/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}{api_prefix}",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "AnalysisAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_analysis(self, request: AnalysisStartRequest) -> AnalysisStartResponse:
        resp = await self._client.post("/analyses", json=request.model_dump(mode="json"))
        if resp.status_code == 409:
            raise AnalysisInProgressError(request.existing_project_id or request.github_url)
        resp.raise_for_status()
        return AnalysisStartResponse.model_validate(resp.json())

    async def get_status(self, project_id: uuid.UUID) -> ProjectStatusResponse:
        resp = await self._client.get(f"/projects/{project_id}/status")
        resp.raise_for_status()
        return ProjectStatusResponse.model_validate(resp.json())

    async def list_analyses(self, project_id: uuid.UUID, analysis_type: str | None = None) -> list[AnalysisResponse]:
        params = {"type": analysis_type} if analysis_type else None
        resp = await self._client.get(f"/projects/{project_id}/analyses", params=params)
        resp.raise_for_status()
        return [AnalysisResponse.model_validate(item) for item in resp.json()]

    async def cancel(self, project_id: uuid.UUID) -> CancelResponse:
        resp = await self._client.post(f"/projects/{project_id}/cancel")
        resp.raise_for_status()
        return CancelResponse.model_validate(resp.json())

    async def process_queue_item(self, item_id: uuid.UUID) -> ProcessQueueItemResponse:
        logger.debug("Dispatching queue item %s", item_id)
        resp = await self._client.post(f"/queue/{item_id}/process")
        resp.raise_for_status()
        return ProcessQueueItemResponse.model_validate(resp.json())
