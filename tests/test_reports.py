"""Tests for per-author security reports."""

from unittest.mock import AsyncMock

import pytest

from autopatch.analysis import AnalysisError
from autopatch.models import Analysis, Issue, Severity
from autopatch.reports import aggregate, build_author_report, risk_level


def _analysis(commit_id: str, score: int, *issues: Issue) -> Analysis:
    return Analysis(
        id=None,
        commit_id=commit_id,
        repo_full_name="acme/shop",
        overall_score=score,
        author_name="MalakAbed",
        issues=list(issues),
    )


@pytest.fixture
def analyses():
    return [
        _analysis(
            "c1",
            40,
            Issue("SQL injection", Severity.HIGH),
            Issue("XSS", Severity.MEDIUM),
        ),
        _analysis("c2", 71, Issue("SQL injection", Severity.CRITICAL)),
        _analysis("c3", 90),
    ]


def test_risk_level_bands():
    assert risk_level(80) == "low"
    assert risk_level(79) == "medium"
    assert risk_level(60) == "medium"
    assert risk_level(59) == "high"


def test_aggregate(analyses):
    stats = aggregate("MalakAbed", analyses)

    assert stats["commits_count"] == 3
    assert stats["avg_score"] == 67
    assert stats["severity_breakdown"] == {
        "critical": 1,
        "high": 1,
        "medium": 1,
        "low": 0,
        "info": 0,
    }
    assert stats["issue_types"] == {"SQL injection": 2, "XSS": 1}


class TestBuildAuthorReport:
    @pytest.mark.asyncio
    async def test_no_analyses(self):
        ledger = AsyncMock()
        ledger.list_by_author.return_value = []
        adapter = AsyncMock()

        report = await build_author_report("Malak Abed", ledger, adapter)

        ledger.list_by_author.assert_awaited_once_with("MalakAbed")
        assert report["commits_count"] == 0
        assert report["avg_score"] == 0
        assert report["report"] == {"summary": "No commits analyzed for this user yet."}
        adapter.summarize_author.assert_not_called()

    @pytest.mark.asyncio
    async def test_narrative_from_adapter(self, analyses):
        ledger = AsyncMock()
        ledger.list_by_author.return_value = analyses
        adapter = AsyncMock()
        adapter.summarize_author.return_value = {
            "title": "Security Report for MalakAbed",
            "summary": "Mixed.",
            "risk_level": "medium",
        }

        report = await build_author_report("MalakAbed", ledger, adapter)

        stats = adapter.summarize_author.call_args.args[0]
        assert stats["username"] == "MalakAbed"
        assert stats["avg_score"] == 67
        assert report["report"]["summary"] == "Mixed."
        assert "generated_at" in report["report"]

    @pytest.mark.asyncio
    async def test_fallback_when_adapter_fails(self, analyses):
        ledger = AsyncMock()
        ledger.list_by_author.return_value = analyses
        adapter = AsyncMock()
        adapter.summarize_author.side_effect = AnalysisError("down")

        report = await build_author_report("MalakAbed", ledger, adapter)

        narrative = report["report"]
        assert narrative["title"] == "Security Report for MalakAbed"
        assert narrative["risk_level"] == "medium"
        assert len(narrative["recommendations"]) == 3
        assert narrative["top_issues"] == ["SQL injection", "XSS"]
        assert "3 commits" in narrative["summary"]
