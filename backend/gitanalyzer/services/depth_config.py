import logging
from dataclasses import dataclass
from typing import Mapping
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.models import DepthLevel, SystemSetting

logger = logging.getLogger(__name__)

PROMPT_STYLES: dict[str, str] = {
    DepthLevel.CRITICAL.value: "concise",
    DepthLevel.BALANCED.value: "moderate",
    DepthLevel.COMPLETE.value: "detailed",
}

DEFAULT_CONTEXT_CHARS: dict[str, int] = {
    DepthLevel.CRITICAL.value: 8000,
    DepthLevel.BALANCED.value: 20000,
    DepthLevel.COMPLETE.value: 40000,
}


@dataclass(frozen=True)
class DepthConfig:
    max_context_chars: int
    model: str
    prompt_style: str


def default_depth_config(depth: str, settings: Settings | None = None) -> DepthConfig:
    settings = settings or get_settings()
    model = settings.standard_model if depth == DepthLevel.COMPLETE.value else settings.economical_model
    return DepthConfig(
        max_context_chars=DEFAULT_CONTEXT_CHARS[depth],
        model=model,
        prompt_style=PROMPT_STYLES[depth],
    )


def resolve_depth_config(
    depth: str | DepthLevel,
    overrides: Mapping[str, str],
    settings: Settings | None = None,
) -> DepthConfig:
    """Apply ``depth_<level>_context`` / ``depth_<level>_model`` overrides to the defaults."""
    level = DepthLevel(depth).value
    defaults = default_depth_config(level, settings)

    max_context = defaults.max_context_chars
    raw_context = (overrides.get(f"depth_{level}_context") or "").strip()
    if raw_context:
        try:
            parsed = int(raw_context)
        except ValueError:
            logger.warning("Ignoring non-numeric depth_%s_context override: %r", level, raw_context)
        else:
            if parsed > 0:
                max_context = parsed
            else:
                logger.warning("Ignoring non-positive depth_%s_context override: %d", level, parsed)

    model = (overrides.get(f"depth_{level}_model") or "").strip() or defaults.model

    return DepthConfig(max_context_chars=max_context, model=model, prompt_style=defaults.prompt_style)


async def load_system_settings(db: AsyncSession, prefix: str = "") -> dict[str, str]:
    query = select(SystemSetting.key, SystemSetting.value)
    if prefix:
        query = query.where(SystemSetting.key.startswith(prefix))
    rows = await db.execute(query)
    return {key: value for key, value in rows.all()}


async def load_depth_config(db: AsyncSession, depth: str | DepthLevel) -> DepthConfig:
    """Resolve a depth tier; a config store outage falls back to defaults."""
    try:
        level = DepthLevel(depth).value
    except ValueError:
        logger.warning("Unknown depth %r, using balanced", depth)
        level = DepthLevel.BALANCED.value
    try:
        overrides = await load_system_settings(db, prefix=f"depth_{level}_")
    except SQLAlchemyError:
        logger.warning("Could not load depth overrides for %s, using defaults", level, exc_info=True)
        await _safe_rollback(db)
        overrides = {}
    return resolve_depth_config(level, overrides)


async def _safe_rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError:
        logger.debug("Rollback after config read failure also failed", exc_info=True)
