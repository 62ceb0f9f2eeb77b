"""Property-based tests for pipeline invariants.

1. Score clamping: any adapter score lands in [0, 100]; non-numbers give 60
2. Idempotence: processing any sequence of commit ids records each at most once
3. Single flight: the lock never admits two holders
4. Author normalization is whitespace-free and idempotent
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import hypothesis.strategies as st
from hypothesis import HealthCheck, given, settings
from hypothesis.stateful import RuleBasedStateMachine, invariant, rule

from autopatch.analysis import NEUTRAL_SCORE, clamp_score
from autopatch.github_gateway import ChangedFile, CommitDetails, PullRequest, RemoteFile
from autopatch.models import (
    Analysis,
    CommitStatus,
    Patch,
    Severity,
    Verdict,
    normalize_author_name,
)
from autopatch.processor import CommitProcessor
from autopatch.sync import SingleFlightLock

# the autouse env fixture is the same for every example
PROPERTY_SETTINGS = settings(
    suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None
)

# =============================================================================
# Score clamping
# =============================================================================


@PROPERTY_SETTINGS
@given(
    st.one_of(
        st.integers(),
        st.floats(allow_nan=True, allow_infinity=True),
        st.text(),
        st.none(),
        st.booleans(),
        st.lists(st.integers()),
    )
)
def test_clamped_score_always_in_range(value) -> None:
    score = clamp_score(value)
    assert isinstance(score, int)
    assert 0 <= score <= 100


@PROPERTY_SETTINGS
@given(st.floats(allow_nan=False, allow_infinity=False, min_value=0, max_value=100))
def test_in_range_numbers_are_rounded_not_replaced(value: float) -> None:
    assert abs(clamp_score(value) - value) <= 0.5


@PROPERTY_SETTINGS
@given(st.text(alphabet=st.characters(categories=["L"]), min_size=1))
def test_non_numeric_text_uses_neutral_score(value: str) -> None:
    # letters only parse as floats when they spell inf or nan
    assert clamp_score(value) == NEUTRAL_SCORE


@PROPERTY_SETTINGS
@given(st.one_of(st.text(), st.integers(), st.none()))
def test_severity_parse_never_raises(value) -> None:
    assert Severity.parse(value) in set(Severity)


# =============================================================================
# Idempotence
# =============================================================================


class InMemoryLedger:
    """CommitLedger stand-in backed by a dict keyed on commit id."""

    def __init__(self) -> None:
        self.rows: dict[str, Analysis] = {}
        self.inserts = 0
        self.pr_urls: dict[str, str] = {}

    async def exists(self, commit_id: str) -> bool:
        return commit_id in self.rows

    async def insert(self, commit, verdict) -> Analysis:
        assert commit.commit_id not in self.rows, "duplicate analysis row"
        self.inserts += 1
        analysis = Analysis(
            id=len(self.rows) + 1,
            commit_id=commit.commit_id,
            repo_full_name=commit.full_name,
            overall_score=verdict.score,
        )
        self.rows[commit.commit_id] = analysis
        return analysis

    async def attach_pull_request_url(self, commit_id: str, pr_url: str) -> None:
        self.pr_urls[commit_id] = pr_url


def _gateway() -> AsyncMock:
    gw = AsyncMock()
    gw.get_commit.return_value = CommitDetails(
        sha="x", author_name="Ada", files=[ChangedFile("app.js")]
    )
    gw.get_file.side_effect = lambda owner, repo, path, ref: RemoteFile(path, "blob", "x")
    gw.get_branch_head.return_value = "tip"
    gw.list_open_pull_requests.return_value = []
    gw.create_pull_request.return_value = PullRequest(1, "https://github.test/pr/1")
    return gw


@settings(PROPERTY_SETTINGS, max_examples=50)
@given(
    commit_ids=st.lists(st.sampled_from(["a1", "b2", "c3", "d4"]), max_size=12),
    score=st.integers(min_value=0, max_value=100),
)
def test_processing_is_idempotent(commit_ids: list[str], score: int) -> None:
    ledger = InMemoryLedger()
    gateway = _gateway()
    adapter = AsyncMock()
    adapter.assess.return_value = Verdict(score=score, patches=[Patch("app.js", "y")])
    processor = CommitProcessor(
        gateway=gateway, adapter=adapter, ledger=ledger, threshold=80
    )

    async def _run() -> list[CommitStatus]:
        return [
            (await processor.process("acme", "shop", cid, "main")).status
            for cid in commit_ids
        ]

    statuses = asyncio.run(_run())

    assert ledger.inserts == len(set(commit_ids))
    assert adapter.assess.await_count == len(set(commit_ids))
    assert statuses.count(CommitStatus.DUPLICATE) == len(commit_ids) - len(set(commit_ids))
    if score >= 80:
        gateway.update_branch.assert_not_called()
        gateway.create_pull_request.assert_not_called()
    else:
        assert gateway.update_branch.await_count == len(set(commit_ids))


# =============================================================================
# Single flight
# =============================================================================


class LockMachine(RuleBasedStateMachine):
    """Random acquire/release sequences against a one-slot model."""

    def __init__(self) -> None:
        super().__init__()
        self.lock = SingleFlightLock()
        self.holders = 0

    @rule()
    def acquire(self) -> None:
        acquired = self.lock.try_acquire()
        assert acquired == (self.holders == 0)
        if acquired:
            self.holders += 1

    @rule()
    def release(self) -> None:
        if self.holders:
            self.lock.release()
            self.holders -= 1

    @invariant()
    def at_most_one_holder(self) -> None:
        assert self.holders <= 1
        assert self.lock.held == (self.holders == 1)


TestLockMachine = LockMachine.TestCase
TestLockMachine.settings = PROPERTY_SETTINGS


# =============================================================================
# Author normalization
# =============================================================================


@PROPERTY_SETTINGS
@given(st.text())
def test_normalized_author_has_no_whitespace(name: str) -> None:
    normalized = normalize_author_name(name)
    assert normalized
    assert not any(ch.isspace() for ch in normalized)
    assert normalize_author_name(normalized) == normalized
