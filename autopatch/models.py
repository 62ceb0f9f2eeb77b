"""Shared types for the commit remediation pipeline.

Commits flow through the pipeline as plain dataclasses:

- CommitRef / FileSnapshot: what is being analyzed
- Verdict / Issue / Patch: what the analysis service said about it
- Analysis: the persisted ledger row
- RemediationRound: the state threading reconciler -> publisher
- CommitOutcome / SyncResult: what happened, per commit and per batch
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# The single integration branch every remediation round writes to.
BOT_BRANCH = "auto-patch"

UNKNOWN_AUTHOR = "Unknown"

_WHITESPACE_RE = re.compile(r"\s+")

# issues.line is a PostgreSQL INTEGER
_MAX_LINE = 2**31 - 1


def normalize_author_name(name: str | None) -> str:
    """Collapse an author display name to a stable key.

    "Malak Abed" and "MalakAbed" are the same person; whitespace is removed
    and case is preserved.
    """
    if not name:
        return UNKNOWN_AUTHOR
    normalized = _WHITESPACE_RE.sub("", str(name))
    return normalized or UNKNOWN_AUTHOR


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _coerce_line(value: Any) -> int | None:
    """Best-effort line number; anything unusable becomes None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        line = int(value) if isinstance(value, int) else int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if not 1 <= line <= _MAX_LINE:
        return None
    return line


class Severity(str, Enum):
    """Issue severity as reported by the analysis service."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any) -> Severity:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.INFO


@dataclass
class CommitRef:
    """A commit the pipeline has been asked to look at."""

    owner: str
    repo: str
    commit_id: str
    target_branch: str
    author_name: str = UNKNOWN_AUTHOR
    author_avatar: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def short_id(self) -> str:
        return self.commit_id[:7]


@dataclass
class FileSnapshot:
    """A changed file's text as of one commit."""

    path: str
    content: str


@dataclass
class Issue:
    """A single finding inside a verdict."""

    title: str
    severity: Severity = Severity.INFO
    description: str = ""
    file_path: str | None = None
    line: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        return cls(
            title=str(data.get("title") or data.get("message") or "Untitled issue"),
            severity=Severity.parse(data.get("severity")),
            description=str(data.get("description") or ""),
            file_path=data.get("filePath") or data.get("file_path") or data.get("file"),
            line=_coerce_line(data.get("line")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "severity": self.severity.value,
            "description": self.description,
            "file_path": self.file_path,
            "line": self.line,
        }


@dataclass
class Patch:
    """Full replacement content for one file."""

    file_path: str
    patched_content: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Patch:
        return cls(
            file_path=str(data.get("filePath") or data.get("file_path")),
            patched_content=str(data.get("patchedContent") or data.get("patched_content") or ""),
        )


@dataclass
class Verdict:
    """The analysis service's assessment of one commit."""

    score: int
    issues: list[Issue] = field(default_factory=list)
    patches: list[Patch] = field(default_factory=list)
    raw_output: dict[str, Any] = field(default_factory=dict)


@dataclass
class Analysis:
    """A persisted verdict, as stored in the commit ledger."""

    id: int | None
    commit_id: str
    repo_full_name: str
    overall_score: int
    author_name: str = UNKNOWN_AUTHOR
    author_avatar: str | None = None
    pr_url: str | None = None
    created_at: datetime | None = None
    issues: list[Issue] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Analysis:
        return cls(
            id=data.get("id"),
            commit_id=data["commit_id"],
            repo_full_name=data["repo_full_name"],
            overall_score=int(data["overall_score"]),
            author_name=data.get("author_name") or UNKNOWN_AUTHOR,
            author_avatar=data.get("author_avatar"),
            pr_url=data.get("pr_url"),
            created_at=_parse_timestamp(data.get("created_at")),
            issues=[Issue.from_dict(row) for row in data.get("issues") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "commit_id": self.commit_id,
            "repo_full_name": self.repo_full_name,
            "overall_score": self.overall_score,
            "author_name": self.author_name,
            "author_avatar": self.author_avatar,
            "pr_url": self.pr_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "issues": [issue.to_row() for issue in self.issues],
        }


@dataclass
class RemediationRound:
    """Everything the reconciler and publisher need for one commit."""

    owner: str
    repo: str
    commit_id: str
    base_branch: str
    score: int
    issues: list[Issue] = field(default_factory=list)
    patches: list[Patch] = field(default_factory=list)
    bot_branch: str = BOT_BRANCH

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def short_id(self) -> str:
        return self.commit_id[:7]


class CommitStatus(str, Enum):
    """Terminal state of one commit's trip through the processor."""

    DUPLICATE = "duplicate"  # already in the ledger
    NO_CHANGES = "no_changes"  # merge commit or deletions only; not recorded
    FAILED = "failed"  # upstream error before persistence; retryable
    ANALYZED = "analyzed"  # persisted, no remediation warranted
    REMEDIATED = "remediated"  # persisted, PR created or updated
    REMEDIATION_FAILED = "remediation_failed"  # persisted, no PR produced


@dataclass
class CommitOutcome:
    """Result of processing a single commit."""

    commit_id: str
    status: CommitStatus
    analysis: Analysis | None = None
    pr_url: str | None = None
    error: str | None = None

    @property
    def recorded(self) -> bool:
        return self.status in (
            CommitStatus.ANALYZED,
            CommitStatus.REMEDIATED,
            CommitStatus.REMEDIATION_FAILED,
        )


@dataclass
class SyncResult:
    """Result of one push-triggered batch or sync run."""

    repository: str
    trigger: str
    outcomes: list[CommitOutcome] = field(default_factory=list)

    def _count(self, *statuses: CommitStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status in statuses)

    @property
    def analyzed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.recorded)

    @property
    def remediated(self) -> int:
        return self._count(CommitStatus.REMEDIATED)

    @property
    def failed(self) -> int:
        return self._count(CommitStatus.FAILED, CommitStatus.REMEDIATION_FAILED)

    @property
    def skipped(self) -> int:
        return self._count(CommitStatus.DUPLICATE, CommitStatus.NO_CHANGES)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "trigger": self.trigger,
            "processed": len(self.outcomes),
            "analyzed": self.analyzed,
            "remediated": self.remediated,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [
                {
                    "commit_id": outcome.commit_id,
                    "status": outcome.status.value,
                    "pr_url": outcome.pr_url,
                    "error": outcome.error,
                }
                for outcome in self.outcomes
            ],
        }
