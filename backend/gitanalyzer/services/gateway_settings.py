from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.core.errors import MissingCredentialsError

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def normalize_base_url(base_url: str | None) -> str:
    base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
    if not base_url.endswith("/v1") and "/v1/" not in base_url:
        base_url = f"{base_url}/v1"
    return base_url


def get_gateway_settings(settings: Settings | None = None) -> dict[str, str]:
    """Resolve the LLM gateway endpoint and key; a missing key is fatal for a run."""
    settings = settings or get_settings()
    if not settings.openai_api_key:
        raise MissingCredentialsError("OPENAI_API_KEY is not configured")
    return {
        "base_url": normalize_base_url(settings.openai_base_url),
        "api_key": settings.openai_api_key,
    }
