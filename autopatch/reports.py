"""Per-author security report built from the commit ledger."""

import logging
from collections import Counter
from datetime import UTC, datetime
from typing import Any

from .analysis import AnalysisAdapter, AnalysisError
from .ledger import CommitLedger
from .models import Analysis, Severity, normalize_author_name

logger = logging.getLogger(__name__)

FALLBACK_RECOMMENDATIONS = [
    "Review and fix high-severity issues immediately",
    "Implement security best practices in code reviews",
    "Keep dependencies updated and monitor for vulnerabilities",
]


def risk_level(avg_score: int) -> str:
    if avg_score >= 80:
        return "low"
    if avg_score >= 60:
        return "medium"
    return "high"


def aggregate(username: str, analyses: list[Analysis]) -> dict[str, Any]:
    """Severity breakdown, issue-title frequency and average score."""
    severity_breakdown = {severity.value: 0 for severity in reversed(Severity)}
    issue_types: Counter[str] = Counter()
    for analysis in analyses:
        for issue in analysis.issues:
            severity_breakdown[issue.severity.value] += 1
            issue_types[issue.title or "Uncategorized Issue"] += 1

    avg_score = 0
    if analyses:
        avg_score = round(sum(a.overall_score for a in analyses) / len(analyses))

    return {
        "username": username,
        "commits_count": len(analyses),
        "avg_score": avg_score,
        "severity_breakdown": severity_breakdown,
        "issue_types": dict(issue_types.most_common()),
    }


def fallback_report(stats: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": f"Security Report for {stats['username']}",
        "summary": (
            f"Analyzed {stats['commits_count']} commits with an average security "
            f"score of {stats['avg_score']}/100."
        ),
        "risk_level": risk_level(stats["avg_score"]),
        "recommendations": list(FALLBACK_RECOMMENDATIONS),
        "top_issues": list(stats["issue_types"])[:3],
    }


async def build_author_report(
    username: str, ledger: CommitLedger, adapter: AnalysisAdapter
) -> dict[str, Any]:
    """Summarize one author's analyzed commits.

    The narrative comes from the analysis service; if that call fails a
    deterministic report is built from the statistics alone.
    """
    author = normalize_author_name(username)
    analyses = await ledger.list_by_author(author)
    stats = aggregate(author, analyses)

    if not analyses:
        report: dict[str, Any] = {"summary": "No commits analyzed for this user yet."}
    else:
        try:
            report = await adapter.summarize_author(stats)
        except AnalysisError as exc:
            logger.warning("Failed to generate security report for %s: %s", author, exc)
            report = fallback_report(stats)
        report.setdefault("generated_at", datetime.now(UTC).isoformat())

    return {
        "username": author,
        "commits_count": stats["commits_count"],
        "avg_score": stats["avg_score"],
        "severity_breakdown": stats["severity_breakdown"],
        "report": report,
    }
