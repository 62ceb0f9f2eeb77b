"""Commit ledger: durable record of analyzed commits.

A commit id maps to at most one row in ``analyses``; that row is the
deduplication anchor for the whole pipeline. Issues live in ``issues`` and
are written together with their analysis by the ``record_analysis`` stored
function, so a half-written analysis is never observable.
"""

import logging
from urllib.parse import quote

from .db import DatabaseClient, get_db
from .models import Analysis, CommitRef, Issue, Verdict

logger = logging.getLogger(__name__)


class CommitLedger:
    """Service for reading and writing analysis records."""

    def __init__(self, db: DatabaseClient | None = None):
        self._db = db

    @property
    def db(self) -> DatabaseClient:
        if self._db is None:
            self._db = get_db()
        return self._db

    async def exists(self, commit_id: str) -> bool:
        """Return True if the commit already has an analysis row."""
        rows = await self.db.query(
            "analyses",
            f"commit_id=eq.{quote(commit_id, safe='')}&limit=1",
            select="id",
        )
        return bool(rows)

    async def insert(self, commit: CommitRef, verdict: Verdict) -> Analysis:
        """Persist a verdict and its issues atomically.

        Args:
            commit: The analyzed commit, with normalized author attached
            verdict: The verdict to store (patches are not persisted)

        Returns:
            The stored Analysis, including database-assigned id and timestamp
        """
        row = await self.db.rpc(
            "record_analysis",
            {
                "p_commit_id": commit.commit_id,
                "p_repo_full_name": commit.full_name,
                "p_overall_score": verdict.score,
                "p_author_name": commit.author_name,
                "p_author_avatar": commit.author_avatar,
                "p_issues": [issue.to_row() for issue in verdict.issues],
            },
        )
        analysis = Analysis.from_dict(row)
        logger.debug(
            "Recorded analysis %s for %s (%d issues)",
            analysis.id,
            commit.short_id,
            len(analysis.issues),
        )
        return analysis

    async def attach_pull_request_url(self, commit_id: str, pr_url: str) -> None:
        """Point an analysis at the pull request carrying its fixes."""
        await self.db.update(
            "analyses",
            {"commit_id": commit_id},
            {"pr_url": pr_url},
        )

    async def list_all(self) -> list[Analysis]:
        """All analyses, newest first, with their issues."""
        return await self._list("order=created_at.desc")

    async def list_by_author(self, author_name: str) -> list[Analysis]:
        """Analyses for one (normalized) author, newest first."""
        return await self._list(
            f"author_name=eq.{quote(author_name, safe='')}&order=created_at.desc"
        )

    async def _list(self, query_params: str) -> list[Analysis]:
        rows = await self.db.query("analyses", query_params)
        if not rows:
            return []

        ids = ",".join(str(row["id"]) for row in rows)
        issue_rows = await self.db.query(
            "issues", f"analysis_id=in.({ids})&order=id.asc"
        )
        issues_by_analysis: dict[int, list[Issue]] = {}
        for issue_row in issue_rows:
            issues_by_analysis.setdefault(issue_row["analysis_id"], []).append(
                Issue.from_dict(issue_row)
            )

        analyses = []
        for row in rows:
            analysis = Analysis.from_dict(row)
            analysis.issues = issues_by_analysis.get(row["id"], [])
            analyses.append(analysis)
        return analyses


# Global service instance
_commit_ledger: CommitLedger | None = None


def get_commit_ledger() -> CommitLedger:
    """Get the global commit ledger instance."""
    global _commit_ledger
    if _commit_ledger is None:
        _commit_ledger = CommitLedger()
    return _commit_ledger
