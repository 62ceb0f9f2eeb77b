"""Pytest fixtures for Auto-Patch tests."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
import respx

from autopatch.config import (
    AnalysisConfig,
    GitHubConfig,
    SupabaseConfig,
    reset_config,
)
from autopatch.db import SupabaseClient
from autopatch.github_gateway import (
    ChangedFile,
    CommitDetails,
    PullRequest,
    RemoteFile,
)
from autopatch.models import Analysis

SUPABASE_URL = "https://test.supabase.co"
GITHUB_API = "https://api.github.test"
OPENAI_API = "https://llm.test/v1"

# =============================================================================
# Environment Setup
# =============================================================================


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.delenv("AUTOPATCH_PROFILE", raising=False)
    monkeypatch.setenv("SUPABASE_URL", SUPABASE_URL)
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "test-service-key")
    monkeypatch.setenv("GITHUB_ACCESS_TOKEN", "test-github-token")
    monkeypatch.setenv("GITHUB_API_URL", GITHUB_API)
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", "test-webhook-secret")
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.setenv("OPENAI_BASE_URL", OPENAI_API)

    # Reset global config after each test
    yield
    reset_config()


@pytest.fixture
def db_client():
    """A Supabase client configured for testing."""
    return SupabaseClient(
        SupabaseConfig(url=SUPABASE_URL, service_key="test-service-key")
    )


@pytest.fixture
def github_config():
    return GitHubConfig(token="test-github-token", api_url=GITHUB_API)


@pytest.fixture
def analysis_config():
    return AnalysisConfig(api_key="test-openai-key", base_url=OPENAI_API)


@pytest.fixture
def mock_http():
    """Mock every outbound httpx request."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


# =============================================================================
# Collaborator doubles
# =============================================================================


@pytest.fixture
def gateway():
    """A RepositoryGateway double with a two-file commit and no open PRs."""
    gw = AsyncMock()
    gw.get_commit.return_value = CommitDetails(
        sha="abc123",
        author_name="Malak Abed",
        author_avatar="https://avatars.test/malak.png",
        files=[
            ChangedFile("src/app.js", "modified"),
            ChangedFile("src/db.ts", "added"),
        ],
    )
    gw.get_file.side_effect = lambda owner, repo, path, ref: RemoteFile(
        path=path, sha=f"blob-{path}", content=f"// {path} at {ref}\n"
    )
    gw.get_branch_head.return_value = "base-sha-0001"
    gw.list_open_pull_requests.return_value = []
    gw.create_pull_request.return_value = PullRequest(
        number=7, html_url="https://github.test/acme/shop/pull/7"
    )
    return gw


@pytest.fixture
def ledger():
    """A CommitLedger double that knows no commits and echoes inserts."""
    led = AsyncMock()
    led.exists.return_value = False

    async def _insert(commit, verdict):
        return Analysis(
            id=1,
            commit_id=commit.commit_id,
            repo_full_name=commit.full_name,
            overall_score=verdict.score,
            author_name=commit.author_name,
            author_avatar=commit.author_avatar,
            created_at=datetime(2026, 1, 1, tzinfo=UTC),
            issues=list(verdict.issues),
        )

    led.insert.side_effect = _insert
    return led


@pytest.fixture
def analysis_row():
    """An ``analyses`` row as returned by record_analysis."""
    return {
        "id": 1,
        "commit_id": "abc123",
        "repo_full_name": "acme/shop",
        "overall_score": 45,
        "author_name": "MalakAbed",
        "author_avatar": None,
        "pr_url": None,
        "created_at": "2026-01-01T00:00:00+00:00",
        "issues": [
            {
                "id": 10,
                "analysis_id": 1,
                "title": "SQL injection",
                "severity": "high",
                "description": "User input concatenated into query",
                "file_path": "src/db.ts",
                "line": 12,
            }
        ],
    }
