import logging
import re
from dataclasses import dataclass
from typing import Mapping
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from gitanalyzer.models import AnalysisPrompt
from gitanalyzer.schemas import Snapshot

logger = logging.getLogger(__name__)

# Built-in (system, user) pairs used when no operator template is active
DEFAULT_PROMPTS: dict[str, dict[str, str]] = {
    "prd": {
        "system": "You are a senior technical product analyst who writes software documentation.",
        "user": "Analyze the following GitHub project and write a complete Product Requirements Document.",
    },
    "marketing": {
        "system": "You are a digital marketing and growth specialist.",
        "user": "Analyze the project and write a marketing and launch plan.",
    },
    "funding": {
        "system": "You are a startup fundraising and investment specialist.",
        "user": "Analyze the project and write an investor pitch and fundraising plan.",
    },
    "security": {
        "system": "You are an information security specialist.",
        "user": "Review the project's code and identify vulnerabilities and security improvements.",
    },
    "ui_theme": {
        "system": "You are a UX/UI designer focused on modern, accessible interfaces.",
        "user": "Review the project's code and suggest visual and user experience improvements.",
    },
    "features": {
        "system": "You are a product manager focused on product innovation.",
        "user": "Analyze the project and suggest innovative new features.",
    },
    "documentation": {
        "system": "You are a senior technical writer for open source and professional software.",
        "user": "Analyze the project and write complete, professional technical documentation.",
    },
    "prompts": {
        "system": "You are a prompt engineering and AI-assisted development specialist.",
        "user": "Analyze the project and write ready-to-use prompts for AI development tools.",
    },
    "quality": {
        "system": "You are a senior software architect who assesses code quality and developer tooling.",
        "user": "Analyze the project and estimate code quality metrics, including tooling recommendations.",
    },
    "performance": {
        "system": "You are a web performance and observability specialist.",
        "user": (
            "Analyze the project and identify performance opportunities (frontend, backend, database) "
            "and observability gaps (logs, metrics, alerts). Cover Core Web Vitals, bundle size, "
            "query optimization, caching and monitoring strategy."
        ),
    },
    "tools": {
        "system": "You are a senior software architect focused on code optimization.",
        "user": "Review the existing code and suggest improvements to its current functionality.",
    },
}

GENERIC_SYSTEM_PROMPT = "You are a specialized software analysis assistant."
GENERIC_USER_PROMPT = "Analyze the project."

MARKDOWN_FORMAT_INSTRUCTIONS = """
IMPORTANT: Format your answer as rich, structured markdown:
- Use markdown tables with | to organize comparative data
- Use emojis for visual categorization (✅ ⚠️ 🔴 💡 📊 🎯)
- Use priority badges: 🔴 High | 🟡 Medium | 🟢 Low
- Use blockquotes (>) to highlight key information
- Use numbered and bulleted lists
- Separate sections with --- where appropriate
- Use **bold** for important item titles
- Use `code` for technical terms
"""

STYLE_DIRECTIVES: dict[str, str] = {
    "concise": "Response style: concise. Focus only on the most critical points.",
    "moderate": "Response style: balanced. Cover the main points with moderate detail.",
    "detailed": "Response style: detailed. Be thorough and reference specific files.",
}

_VARIABLE_RE = re.compile(r"\{\{(\w+)\}\}")


@dataclass(frozen=True)
class PromptTemplate:
    analysis_type: str
    system_prompt: str
    user_prompt_template: str
    name: str = ""
    version: int = 1


@dataclass(frozen=True)
class ResolvedPrompt:
    system_prompt: str
    user_prompt_template: str
    from_template: bool


async def load_prompt_templates(db: AsyncSession) -> dict[str, PromptTemplate]:
    """Active operator templates keyed by analysis type; empty on store failure."""
    try:
        rows = await db.execute(
            select(AnalysisPrompt)
            .where(AnalysisPrompt.is_active.is_(True))
            .order_by(AnalysisPrompt.version.asc(), AnalysisPrompt.updated_at.asc())
        )
        prompts = rows.scalars().all()
    except SQLAlchemyError:
        logger.warning("Could not load prompt templates, using built-in prompts", exc_info=True)
        await db.rollback()
        return {}

    # Highest version wins when several rows are active for one type
    templates: dict[str, PromptTemplate] = {}
    for p in prompts:
        templates[p.analysis_type] = PromptTemplate(
            analysis_type=p.analysis_type,
            system_prompt=p.system_prompt,
            user_prompt_template=p.user_prompt_template,
            name=p.name,
            version=p.version or 1,
        )
    return templates


def resolve_prompt(analysis_type: str, templates: Mapping[str, PromptTemplate]) -> ResolvedPrompt:
    template = templates.get(analysis_type)
    if template:
        return ResolvedPrompt(template.system_prompt, template.user_prompt_template, from_template=True)
    fallback = DEFAULT_PROMPTS.get(analysis_type, {})
    return ResolvedPrompt(
        fallback.get("system", GENERIC_SYSTEM_PROMPT),
        fallback.get("user", GENERIC_USER_PROMPT),
        from_template=False,
    )


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` tokens; unknown tokens stay as literal text."""
    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        return variables[key] if key in variables else match.group(0)

    return _VARIABLE_RE.sub(_sub, template)


def prompt_variables(project_name: str, github_url: str, snapshot: Snapshot | None) -> dict[str, str]:
    snapshot = snapshot or Snapshot()
    return {
        "projectName": project_name,
        "githubUrl": github_url,
        "readme": snapshot.readme,
        "structure": snapshot.file_structure,
        "dependencies": snapshot.package_summary,
        "sourceCode": snapshot.source_code,
    }


def build_prompts(
    analysis_type: str,
    templates: Mapping[str, PromptTemplate],
    variables: Mapping[str, str],
    context: str,
    prompt_style: str | None = None,
) -> tuple[str, str]:
    """Return the final ``(system_prompt, user_prompt)`` for one analysis type."""
    resolved = resolve_prompt(analysis_type, templates)

    if resolved.from_template:
        user_prompt = render_template(resolved.user_prompt_template, variables)
    else:
        user_prompt = f"{resolved.user_prompt_template}\n\n{context}"

    if "markdown" not in user_prompt.lower():
        user_prompt = f"{user_prompt}\n\n{MARKDOWN_FORMAT_INSTRUCTIONS}"

    if resolved.from_template and context[:100] not in user_prompt:
        user_prompt = f"{user_prompt}\n\nProject context:\n{context}"

    directive = STYLE_DIRECTIVES.get(prompt_style or "")
    if directive:
        user_prompt = f"{user_prompt}\n\n{directive}"

    return resolved.system_prompt, user_prompt
