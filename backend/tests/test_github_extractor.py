"""Tests for repository snapshot extraction over a mocked GitHub API."""

import base64
import json

import httpx
import pytest

from gitanalyzer.core.config import Settings
from gitanalyzer.core.errors import InvalidRepositoryURLError, RepositoryNotFoundError
from gitanalyzer.services.github_extractor import (
    MAX_FILE_CHARS,
    MAX_README_CHARS,
    GitHubExtractor,
    extract_repository,
    is_important_file,
    parse_github_url,
    should_explore_directory,
    summarize_package_json,
)


def _b64(text: str) -> dict:
    return {"content": base64.b64encode(text.encode()).decode(), "encoding": "base64"}


def _entry(path: str, kind: str = "file") -> dict:
    return {"type": kind, "name": path.rsplit("/", 1)[-1], "path": path, "size": 10}


PACKAGE_JSON = json.dumps({
    "name": "demo",
    "version": "0.1.0",
    "description": "Demo app",
    "dependencies": {"react": "^18.0.0", "zod": "^3.0.0"},
    "devDependencies": {"vite": "^5.0.0"},
    "scripts": {"dev": "vite", "build": "vite build"},
})


def _github_routes() -> dict[str, tuple[int, object]]:
    return {
        "/repos/acme/demo": (200, {
            "full_name": "acme/demo",
            "description": "A demo",
            "language": "TypeScript",
            "stargazers_count": 42,
            "forks_count": 7,
        }),
        "/repos/acme/demo/readme": (200, _b64("# Demo\n" + "x" * 6000)),
        "/repos/acme/demo/contents": (200, [
            _entry("src", "dir"),
            _entry("docs", "dir"),
            _entry("package.json"),
            _entry("index.html"),
        ]),
        "/repos/acme/demo/contents/src": (200, [
            _entry("src/App.tsx"),
            _entry("src/main.tsx"),
            _entry("src/pages", "dir"),
        ]),
        "/repos/acme/demo/contents/src/pages": (200, [_entry("src/pages/Home.tsx")]),
        "/repos/acme/demo/contents/src/App.tsx": (200, _b64("export const App = () => null;\n" + "a" * 5000)),
        "/repos/acme/demo/contents/src/main.tsx": (500, {"message": "boom"}),
        "/repos/acme/demo/contents/src/pages/Home.tsx": (200, _b64("export default function Home() {}")),
        "/repos/acme/demo/contents/index.html": (200, _b64("<html></html>")),
        "/repos/acme/demo/contents/package.json": (200, _b64(PACKAGE_JSON)),
        "/repos/acme/demo/contents/tsconfig.json": (200, _b64("{" + " " * 3000 + "}")),
    }


def _transport(routes, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request.url.path)
        status, body = routes.get(request.url.path, (404, {"message": "Not Found"}))
        return httpx.Response(status, json=body)
    return httpx.MockTransport(handler)


def _extractor(routes, seen=None) -> GitHubExtractor:
    settings = Settings(github_api_url="https://api.github.test", github_token="tok")
    return GitHubExtractor(settings, transport=_transport(routes, seen))


# ── Tests: URL parsing ────────────────────────────────────────────────────


class TestParseGithubUrl:

    @pytest.mark.parametrize("url", [
        "https://github.com/acme/demo",
        "https://github.com/acme/demo.git",
        "github.com/acme/demo",
        "https://www.github.com/acme/demo/tree/main/src",
        "  https://github.com/acme/demo/  ",
    ])
    def test_accepts_repository_urls(self, url):
        assert parse_github_url(url) == ("acme", "demo", "https://github.com/acme/demo")

    @pytest.mark.parametrize("url", [
        "",
        "https://gitlab.com/acme/demo",
        "https://github.com/acme",
        "not a url",
    ])
    def test_rejects_other_urls(self, url):
        with pytest.raises(InvalidRepositoryURLError):
            parse_github_url(url)


# ── Tests: selection heuristics ───────────────────────────────────────────


class TestSelection:

    def test_directory_filter_is_case_insensitive(self):
        assert should_explore_directory("src")
        assert should_explore_directory("Components")
        assert not should_explore_directory("node_modules")
        assert not should_explore_directory("docs")

    @pytest.mark.parametrize("path", [
        "src/App.tsx",
        "src/main.ts",
        "src/pages/Home.tsx",
        "app/page.tsx",
        "supabase/functions/analyze/index.ts",
        "vite.config.ts",
        "index.html",
    ])
    def test_important_files(self, path):
        assert is_important_file(path)

    @pytest.mark.parametrize("path", ["README.md", "src/pages/nested/Deep.tsx", "src/styles.css"])
    def test_unimportant_files(self, path):
        assert not is_important_file(path)

    def test_package_summary(self):
        summary = summarize_package_json(PACKAGE_JSON)
        assert "Name: demo" in summary
        assert "Dependencies: react, zod" in summary
        assert "Dev Dependencies: vite" in summary
        assert "  - build: vite build" in summary

    def test_package_summary_of_invalid_json_is_empty(self):
        assert summarize_package_json("{not json") == ""


# ── Tests: extraction ─────────────────────────────────────────────────────


class TestExtract:

    async def test_builds_bounded_snapshot(self):
        snapshot = await _extractor(_github_routes()).extract("acme", "demo")

        assert snapshot.repo.description == "A demo"
        assert snapshot.repo.stars == 42
        assert snapshot.repo.forks == 7
        assert len(snapshot.readme) == MAX_README_CHARS
        assert "📁 src" in snapshot.file_structure
        assert "📄 src/pages/Home.tsx" in snapshot.file_structure
        assert "Name: demo" in snapshot.package_summary

        assert "=== src/App.tsx ===" in snapshot.source_code
        assert "=== src/pages/Home.tsx ===" in snapshot.source_code
        app_excerpt = snapshot.source_code.split("=== src/App.tsx ===\n", 1)[1].split("\n\n===", 1)[0]
        assert len(app_excerpt) == MAX_FILE_CHARS

        assert "=== tsconfig.json ===" in snapshot.config_files
        assert "vite.config.ts" not in snapshot.config_files

    async def test_failed_sub_fetches_degrade_instead_of_raising(self):
        routes = _github_routes()
        del routes["/repos/acme/demo/readme"]
        routes["/repos/acme/demo/contents/package.json"] = (200, {"content": "%%%not-base64%%%"})

        snapshot = await _extractor(routes).extract("acme", "demo")

        assert snapshot.readme == ""
        assert snapshot.package_summary == ""
        # main.tsx returned 500 and is simply missing
        assert "src/main.tsx ===" not in snapshot.source_code
        assert "src/App.tsx ===" in snapshot.source_code

    async def test_unexplored_directories_are_listed_not_walked(self):
        seen = []
        await _extractor(_github_routes(), seen).extract("acme", "demo")
        assert "/repos/acme/demo/contents/docs" not in seen
        assert "/repos/acme/demo/contents/src/pages" in seen

    async def test_missing_repository_is_fatal(self):
        routes = _github_routes()
        routes["/repos/acme/demo"] = (404, {"message": "Not Found"})
        with pytest.raises(RepositoryNotFoundError):
            await _extractor(routes).extract("acme", "demo")

    async def test_extract_repository_renders_context(self):
        context, snapshot = await extract_repository(
            "acme", "demo", "https://github.com/acme/demo", "demo",
            extractor=_extractor(_github_routes()),
        )
        assert context.startswith("\n# Project: demo\nURL: https://github.com/acme/demo\n")
        assert snapshot.readme[:6] in context
