"""
Repository analysis for the existing-codebase onboarding flow.

The analyzer is a seam for a real GitHub-backed implementation; the bundled
``StaticRepoAnalyzer`` returns a fixed breakdown and makes no network calls.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from .errors import ValidationError

_GITHUB_URL_RE = re.compile(r"github\.com[/:](?P<owner>[^/\s]+)/(?P<repo>[^/\s#?]+)")


def parse_github_url(url: str | None) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from a GitHub HTTPS or SSH URL."""
    if not url or not url.strip():
        raise ValidationError("Missing required field: github_url", field="github_url")

    match = _GITHUB_URL_RE.search(url.strip())
    if not match:
        raise ValidationError("Invalid GitHub URL format", field="github_url")

    repo = match.group("repo")
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not repo:
        raise ValidationError("Invalid GitHub URL format", field="github_url")
    return match.group("owner"), repo


@dataclass
class RepoAnalysis:
    """Language and framework breakdown of a repository."""

    languages: dict[str, int] = field(default_factory=dict)  # percent by language
    frameworks: list[str] = field(default_factory=list)
    total_files: int = 0
    total_lines: int = 0
    has_tests: bool = False
    has_ci_cd: bool = False
    has_documentation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RepoAnalyzer(Protocol):
    async def analyze(self, owner: str, repo: str, *, access_token: str, branch: str) -> RepoAnalysis:
        ...


class StaticRepoAnalyzer:
    """Returns a canned analysis for any repository."""

    async def analyze(self, owner: str, repo: str, *, access_token: str, branch: str) -> RepoAnalysis:
        return RepoAnalysis(
            languages={"TypeScript": 65, "JavaScript": 20, "CSS": 10, "HTML": 5},
            frameworks=["Next.js", "React", "Tailwind CSS"],
            total_files=127,
            total_lines=8543,
            has_tests=True,
            has_ci_cd=True,
            has_documentation=True,
        )


default_analyzer: RepoAnalyzer = StaticRepoAnalyzer()
