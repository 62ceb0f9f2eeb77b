"""Commit processor: analyze one commit, persist the verdict, remediate.

Each call to ``CommitProcessor.process`` walks a small state machine and ends
in exactly one ``CommitStatus``:

    exists in ledger              -> DUPLICATE
    no file list / deletions only -> NO_CHANGES   (not recorded)
    upstream failure pre-persist  -> FAILED       (not recorded, retryable)
    score >= threshold or no fix  -> ANALYZED
    remediation round succeeded   -> REMEDIATED
    remediation round failed      -> REMEDIATION_FAILED

Patch generation is two-staged. The assessment call may already return
patches; if it returns none for a failing score, ``recover_patches`` makes
one narrower call for the JavaScript/TypeScript files only. Its empty answer
is final.
"""

import asyncio
import logging

from .analysis import AnalysisAdapter, get_analysis_adapter
from .config import get_config
from .github_gateway import CommitDetails, RepositoryGateway, get_gateway
from .ledger import CommitLedger, get_commit_ledger
from .models import (
    CommitOutcome,
    CommitRef,
    CommitStatus,
    FileSnapshot,
    Patch,
    RemediationRound,
    Verdict,
    normalize_author_name,
)
from .publisher import PatchPublisher
from .reconciler import BranchReconciler

logger = logging.getLogger(__name__)

# Files eligible for the second, patch-only analysis call.
PATCHABLE_EXTENSIONS = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")


def is_patchable(path: str) -> bool:
    return path.lower().endswith(PATCHABLE_EXTENSIONS)


class CommitProcessor:
    """Runs the analyze-decide-remediate flow for a single commit."""

    def __init__(
        self,
        gateway: RepositoryGateway | None = None,
        adapter: AnalysisAdapter | None = None,
        ledger: CommitLedger | None = None,
        reconciler: BranchReconciler | None = None,
        publisher: PatchPublisher | None = None,
        threshold: int | None = None,
    ):
        self._gateway = gateway
        self._adapter = adapter
        self._ledger = ledger
        self._reconciler = reconciler
        self._publisher = publisher
        self._threshold = threshold

    @property
    def gateway(self) -> RepositoryGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    @property
    def adapter(self) -> AnalysisAdapter:
        if self._adapter is None:
            self._adapter = get_analysis_adapter()
        return self._adapter

    @property
    def ledger(self) -> CommitLedger:
        if self._ledger is None:
            self._ledger = get_commit_ledger()
        return self._ledger

    @property
    def reconciler(self) -> BranchReconciler:
        if self._reconciler is None:
            self._reconciler = BranchReconciler(self.gateway)
        return self._reconciler

    @property
    def publisher(self) -> PatchPublisher:
        if self._publisher is None:
            self._publisher = PatchPublisher(self.gateway, self.ledger)
        return self._publisher

    @property
    def threshold(self) -> int:
        if self._threshold is None:
            self._threshold = get_config().pipeline.security_threshold
        return self._threshold

    async def process(
        self, owner: str, repo: str, commit_id: str, target_branch: str
    ) -> CommitOutcome:
        """Process one commit end to end.

        Never raises for upstream failures; they are logged and reported
        through the returned outcome.
        """
        short_id = commit_id[:7]
        commit = CommitRef(owner, repo, commit_id, target_branch)
        try:
            if await self.ledger.exists(commit_id):
                logger.info("Commit %s already analyzed, skipping", short_id)
                return CommitOutcome(commit_id, CommitStatus.DUPLICATE)

            details = await self.gateway.get_commit(owner, repo, commit_id)
            files = await self.fetch_files(commit, details)
            if not files:
                logger.info("No analyzable file changes in commit %s", short_id)
                return CommitOutcome(commit_id, CommitStatus.NO_CHANGES)

            commit.author_name = normalize_author_name(details.author_name)
            commit.author_avatar = details.author_avatar

            verdict = await self.assess_commit(commit, files)
            if verdict.score < self.threshold and not verdict.patches:
                verdict.patches = await self.recover_patches(commit, files, verdict)

            analysis = await self.ledger.insert(commit, verdict)
        except Exception as exc:
            logger.exception("Error processing commit %s", short_id)
            return CommitOutcome(commit_id, CommitStatus.FAILED, error=str(exc))

        logger.info(
            "Stored analysis for commit %s (score %d, %d issues, %d patches)",
            short_id,
            verdict.score,
            len(verdict.issues),
            len(verdict.patches),
        )

        if verdict.score >= self.threshold or not verdict.patches:
            return CommitOutcome(commit_id, CommitStatus.ANALYZED, analysis=analysis)

        round_ = RemediationRound(
            owner=owner,
            repo=repo,
            commit_id=commit_id,
            base_branch=target_branch,
            score=verdict.score,
            issues=verdict.issues,
            patches=verdict.patches,
        )
        pr_url = await self.remediate(round_)
        if pr_url is None:
            return CommitOutcome(
                commit_id,
                CommitStatus.REMEDIATION_FAILED,
                analysis=analysis,
                error="remediation round produced no pull request",
            )
        analysis.pr_url = pr_url
        return CommitOutcome(
            commit_id, CommitStatus.REMEDIATED, analysis=analysis, pr_url=pr_url
        )

    async def fetch_files(
        self, commit: CommitRef, details: CommitDetails
    ) -> list[FileSnapshot]:
        """Fetch every non-deleted changed file at the commit, concurrently.

        Returns an empty list for commits with no file-level change list
        (merge commits) or whose only changes are deletions.
        """
        if not details.files:
            return []
        paths = [f.filename for f in details.files if not f.is_removed]
        if not paths:
            return []

        remote_files = await asyncio.gather(
            *(
                self.gateway.get_file(commit.owner, commit.repo, path, commit.commit_id)
                for path in paths
            )
        )
        return [FileSnapshot(path=f.path, content=f.content) for f in remote_files]

    async def assess_commit(self, commit: CommitRef, files: list[FileSnapshot]) -> Verdict:
        """Stage one: ask for a score, issues and (maybe) patches."""
        logger.info(
            "Analyzing %d file(s) in commit %s by %s",
            len(files),
            commit.short_id,
            commit.author_name,
        )
        return await self.adapter.assess(
            commit.full_name, commit.commit_id, files, commit.author_name
        )

    async def recover_patches(
        self, commit: CommitRef, files: list[FileSnapshot], verdict: Verdict
    ) -> list[Patch]:
        """Stage two: one patch-only call scoped to JavaScript/TypeScript files.

        Skipped when the verdict has no issues to fix or the commit touched
        no such files.
        """
        candidates = [f for f in files if is_patchable(f.path)]
        if not candidates or not verdict.issues:
            return []

        logger.info(
            "Low score (%d) with no patches for %s; requesting patches for %d file(s)",
            verdict.score,
            commit.short_id,
            len(candidates),
        )
        patches = await self.adapter.generate_patches(
            commit.full_name, commit.commit_id, candidates, verdict.issues
        )
        if not patches:
            logger.info("No patches could be generated for commit %s", commit.short_id)
        return patches

    async def remediate(self, round_: RemediationRound) -> str | None:
        """Reset the bot branch, then publish. Returns the PR URL or None."""
        try:
            await self.reconciler.reconcile(round_)
        except Exception:
            logger.exception(
                "Could not reset '%s' for commit %s", round_.bot_branch, round_.short_id
            )
            return None
        return await self.publisher.publish(round_)


# Global processor instance
_commit_processor: CommitProcessor | None = None


def get_commit_processor() -> CommitProcessor:
    """Get the global commit processor instance."""
    global _commit_processor
    if _commit_processor is None:
        _commit_processor = CommitProcessor()
    return _commit_processor
