"""Shared fixtures: in-memory SQLite sessions and a scripted LLM gateway."""

import os

# Engine and settings are created at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["OPENAI_API_KEY"] = "test-key"

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from gitanalyzer.core.database import Base
from gitanalyzer import models  # noqa: F401


# ── Database ──────────────────────────────────────────────────────────────


@pytest.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


# ── LLM gateway ───────────────────────────────────────────────────────────


def make_completion(content="# Report", prompt_tokens=120, completion_tokens=80):
    usage = None
    if prompt_tokens is not None:
        usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage,
    )


def gateway_request():
    return httpx.Request("POST", "https://gateway.test/v1/chat/completions")


def status_response(code):
    return httpx.Response(code, request=gateway_request())


def make_openai_client(*responses):
    """AsyncOpenAI stand-in whose ``create`` returns or raises ``responses`` in order."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=list(responses))
    return client


@pytest.fixture
def sleeps():
    """Recorded sleep calls, in seconds."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep
