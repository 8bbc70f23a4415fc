import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from openai import AsyncOpenAI, APIConnectionError, RateLimitError, APIStatusError

from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.core.errors import ExhaustedRetriesError, LLMRequestError
from gitanalyzer.services.gateway_settings import get_gateway_settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class LLMResult:
    content: str
    tokens_used: int
    input_tokens: int
    output_tokens: int
    model: str


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def backoff_ms(attempt: int, base_ms: int = 1000, cap_ms: int = 30000) -> int:
    """Wait before retrying after the zero-based ``attempt`` failed."""
    return min(base_ms * 2 ** attempt, cap_ms)


def _extract_content(completion: Any) -> str:
    try:
        message = completion.choices[0].message
    except (AttributeError, IndexError, TypeError):
        return ""
    content = getattr(message, "content", None)
    if isinstance(content, list):
        parts = []
        for part in content:
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if text:
                parts.append(str(text))
        content = "".join(parts)
    return content.strip() if isinstance(content, str) else ""


class LLMInvoker:
    """One chat completion per call, retried on rate limits and transport errors."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        if client is None:
            gateway = get_gateway_settings(self.settings)
            # Retries are handled here so waits follow our own schedule
            client = AsyncOpenAI(base_url=gateway["base_url"], api_key=gateway["api_key"], max_retries=0)
        self.client = client
        self._sleep = sleep

    async def _wait(self, attempt: int, reason: str) -> None:
        wait = backoff_ms(attempt, self.settings.llm_backoff_base_ms, self.settings.llm_backoff_cap_ms)
        logger.warning(
            "LLM call failed (attempt %d/%d): %s. Retrying in %.1fs...",
            attempt + 1, self.settings.llm_max_attempts, reason, wait / 1000,
        )
        await self._sleep(wait / 1000)

    async def invoke(self, system_prompt: str, user_prompt: str, model: str) -> LLMResult:
        max_attempts = self.settings.llm_max_attempts
        last_error: Exception | None = None

        for attempt in range(max_attempts):
            try:
                logger.debug("Calling %s (attempt %d/%d)", model, attempt + 1, max_attempts)
                completion = await self.client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                )
            except RateLimitError as e:
                last_error = e
                if attempt < max_attempts - 1:
                    await self._wait(attempt, "rate limited")
                continue
            except APIConnectionError as e:
                # Also covers APITimeoutError
                last_error = e
                if attempt < max_attempts - 1:
                    await self._wait(attempt, type(e).__name__)
                continue
            except APIStatusError as e:
                logger.error("LLM gateway returned %s for %s", e.status_code, model)
                raise LLMRequestError(f"LLM gateway error: {e.status_code}", e.status_code) from e

            content = _extract_content(completion)
            if not content:
                raise LLMRequestError(f"Empty completion from {model}")

            usage = getattr(completion, "usage", None)
            # A reported count of 0 is estimated too
            input_tokens = getattr(usage, "prompt_tokens", None) or estimate_tokens(system_prompt + user_prompt)
            output_tokens = getattr(usage, "completion_tokens", None) or estimate_tokens(content)
            return LLMResult(
                content=content,
                tokens_used=input_tokens + output_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                model=model,
            )

        logger.error("LLM call failed after %d attempts: %s", max_attempts, last_error)
        raise ExhaustedRetriesError(max_attempts, last_error)
