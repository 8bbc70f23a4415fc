"""Bounded repository snapshot extraction over the GitHub REST API.

Only the repository metadata request is fatal. Every other sub-request goes
through ``_best_effort`` which turns a failed fetch into ``None`` so a run
degrades instead of aborting.
"""
import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar
from urllib.parse import quote, urlparse

import httpx

from gitanalyzer.core.config import Settings, get_settings
from gitanalyzer.core.errors import FetchError, InvalidRepositoryURLError, RepositoryNotFoundError
from gitanalyzer.schemas import RepoMetadata, Snapshot
from gitanalyzer.services.snapshot_cache import build_project_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TREE_DEPTH = 3
MAX_SOURCE_FILES = 15
MAX_SOURCE_CHARS = 40000
MAX_FILE_CHARS = 4000
MAX_README_CHARS = 4000
MAX_CONFIG_CHARS = 1500

# Only these directories are descended into; the walk is a heuristic, not a crawler
IMPORTANT_DIRS: frozenset[str] = frozenset({
    "src", "app", "pages", "components", "lib", "utils",
    "hooks", "services", "api", "supabase", "functions",
})

IMPORTANT_FILE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^src/App\.(tsx|jsx|ts|js)$"),
    re.compile(r"^src/main\.(tsx|jsx|ts|js)$"),
    re.compile(r"^src/pages/[^/]+\.(tsx|jsx)$"),
    re.compile(r"^src/components/[^/]+\.(tsx|jsx)$"),
    re.compile(r"^app/page\.(tsx|jsx)$"),
    re.compile(r"^app/layout\.(tsx|jsx)$"),
    re.compile(r"^supabase/functions/[^/]+/index\.ts$"),
    re.compile(r"^src/hooks/[^/]+\.(ts|tsx)$"),
    re.compile(r"^src/services/[^/]+\.(ts|tsx)$"),
    re.compile(r"^src/lib/[^/]+\.(ts|tsx)$"),
    re.compile(r"\.config\.(ts|js|mjs)$"),
    re.compile(r"^index\.(html|tsx|jsx)$"),
)

CONFIG_FILES: tuple[str, ...] = ("tsconfig.json", "vite.config.ts", "tailwind.config.ts")


@dataclass
class TreeEntry:
    type: str
    name: str
    path: str
    size: int = 0


def parse_github_url(github_url: str) -> tuple[str, str, str]:
    """Split a GitHub URL into ``(owner, repo, canonical_url)``."""
    raw = (github_url or "").strip()
    if not raw:
        raise InvalidRepositoryURLError("GitHub URL is required")
    if "://" not in raw:
        raw = f"https://{raw}"
    parsed = urlparse(raw)
    host = (parsed.hostname or "").lower()
    if host not in {"github.com", "www.github.com"}:
        raise InvalidRepositoryURLError(f"Not a GitHub URL: {github_url}")
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) < 2:
        raise InvalidRepositoryURLError(f"URL must name an owner and a repository: {github_url}")
    owner = parts[0]
    repo = parts[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not owner or not repo:
        raise InvalidRepositoryURLError(f"URL must name an owner and a repository: {github_url}")
    return owner, repo, f"https://github.com/{owner}/{repo}"


def should_explore_directory(name: str) -> bool:
    return name.lower() in IMPORTANT_DIRS


def is_important_file(path: str) -> bool:
    return any(pattern.search(path) for pattern in IMPORTANT_FILE_PATTERNS)


def summarize_package_json(raw: str) -> str:
    """Render the parts of a package.json that matter for analysis."""
    try:
        package = json.loads(raw)
    except ValueError:
        logger.debug("package.json is not valid JSON")
        return ""
    if not isinstance(package, dict):
        return ""

    deps = package.get("dependencies") or {}
    dev_deps = package.get("devDependencies") or {}
    scripts = package.get("scripts") or {}

    lines = [
        f"Name: {package.get('name') or 'Not specified'}",
        f"Version: {package.get('version') or 'Not specified'}",
        f"Description: {package.get('description') or 'No description'}",
        "",
        f"Dependencies: {', '.join(deps) if deps else 'None'}",
        "",
        f"Dev Dependencies: {', '.join(dev_deps) if dev_deps else 'None'}",
        "",
    ]
    if scripts:
        lines.append("Available scripts:")
        lines.extend(f"  - {name}: {command}" for name, command in scripts.items())
    else:
        lines.append("Available scripts: None")
    return "\n".join(lines)


def _decode_content(payload: Any) -> str | None:
    if not isinstance(payload, dict) or not payload.get("content"):
        return None
    raw = base64.b64decode(payload["content"])
    return raw.decode("utf-8", errors="replace")


class GitHubExtractor:
    """Fetch a bounded snapshot of one repository."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.github_api_url.rstrip("/"),
            headers=self.settings.github_headers(),
            timeout=self.settings.github_timeout_seconds,
            transport=self._transport,
        )

    async def _get_json(self, client: httpx.AsyncClient, path: str) -> Any:
        resp = await client.get(path)
        if not resp.is_success:
            raise FetchError(path, f"HTTP {resp.status_code}")
        return resp.json()

    async def _best_effort(self, awaitable: Awaitable[T], context: str) -> T | None:
        try:
            return await awaitable
        except (FetchError, httpx.HTTPError, ValueError) as e:
            logger.debug("Skipping %s: %s", context, e)
            return None

    async def _get_content(self, client: httpx.AsyncClient, path: str) -> str | None:
        return _decode_content(await self._get_json(client, path))

    async def _fetch_file(self, client: httpx.AsyncClient, owner: str, repo: str, path: str) -> str | None:
        return await self._best_effort(
            self._get_content(client, f"/repos/{owner}/{repo}/contents/{quote(path)}"),
            f"file {path}",
        )

    async def _walk(
        self,
        client: httpx.AsyncClient,
        owner: str,
        repo: str,
        path: str = "",
        depth: int = 0,
    ) -> list[TreeEntry]:
        if depth > MAX_TREE_DEPTH:
            return []
        url = f"/repos/{owner}/{repo}/contents/{quote(path)}" if path else f"/repos/{owner}/{repo}/contents"
        listing = await self._best_effort(self._get_json(client, url), f"directory {path or '/'}")
        if not isinstance(listing, list):
            return []

        entries: list[TreeEntry] = []
        for item in listing:
            if not isinstance(item, dict):
                continue
            entry = TreeEntry(
                type=item.get("type", "file"),
                name=item.get("name", ""),
                path=item.get("path", ""),
                size=item.get("size") or 0,
            )
            entries.append(entry)
            if entry.type == "dir" and should_explore_directory(entry.name):
                entries.extend(await self._walk(client, owner, repo, entry.path, depth + 1))
        return entries

    async def extract(self, owner: str, repo: str) -> Snapshot:
        async with self._client() as client:
            try:
                repo_data = await self._get_json(client, f"/repos/{owner}/{repo}")
            except (FetchError, httpx.HTTPError, ValueError) as e:
                raise RepositoryNotFoundError(f"Repository not found: {owner}/{repo} ({e})") from e
            if not isinstance(repo_data, dict):
                raise RepositoryNotFoundError(f"Unexpected metadata payload for {owner}/{repo}")
            logger.info("Repository found: %s", repo_data.get("full_name", f"{owner}/{repo}"))

            readme = await self._best_effort(
                self._get_content(client, f"/repos/{owner}/{repo}/readme"), "README"
            ) or ""

            tree = await self._walk(client, owner, repo)
            logger.info("Found %d files/directories in %s/%s", len(tree), owner, repo)
            file_structure = "\n".join(
                f"{'📁' if e.type == 'dir' else '📄'} {e.path}" for e in tree
            )

            package_raw = await self._fetch_file(client, owner, repo, "package.json")
            package_summary = summarize_package_json(package_raw) if package_raw else ""

            important = [e for e in tree if e.type == "file" and is_important_file(e.path)]
            source_parts: list[str] = []
            total = 0
            for entry in important[:MAX_SOURCE_FILES]:
                if total > MAX_SOURCE_CHARS:
                    break
                content = await self._fetch_file(client, owner, repo, entry.path)
                if not content:
                    continue
                excerpt = content[:MAX_FILE_CHARS]
                source_parts.append(f"\n\n=== {entry.path} ===\n{excerpt}")
                total += len(excerpt)

            config_parts: list[str] = []
            for name in CONFIG_FILES:
                content = await self._fetch_file(client, owner, repo, name)
                if content:
                    config_parts.append(f"\n\n=== {name} ===\n{content[:MAX_CONFIG_CHARS]}")

        return Snapshot(
            repo=RepoMetadata(
                description=repo_data.get("description"),
                language=repo_data.get("language"),
                stars=repo_data.get("stargazers_count") or 0,
                forks=repo_data.get("forks_count") or 0,
            ),
            readme=readme[:MAX_README_CHARS],
            file_structure=file_structure,
            package_summary=package_summary,
            source_code="".join(source_parts),
            config_files="".join(config_parts),
        )


async def extract_repository(
    owner: str,
    repo: str,
    github_url: str,
    project_name: str,
    extractor: GitHubExtractor | None = None,
) -> tuple[str, Snapshot]:
    """Extract a snapshot and render its project context."""
    snapshot = await (extractor or GitHubExtractor()).extract(owner, repo)
    return build_project_context(project_name, github_url, snapshot), snapshot
