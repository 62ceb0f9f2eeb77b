"""Sync orchestrator: turns triggers into sequential commit batches.

Two triggers feed the pipeline: push webhooks (a batch of commits in
delivery order) and on-demand syncs (the most recent commits of a
repository, processed oldest-first). Both share one ``SingleFlightLock`` so
at most one batch, and therefore at most one remediation round, is in
flight per process. A busy lock makes a sync fail with
``PipelineBusyError`` and makes a push batch drop silently.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .config import get_config
from .github_gateway import RepositoryGateway, get_gateway
from .ledger import CommitLedger, get_commit_ledger
from .models import SyncResult
from .processor import CommitProcessor, get_commit_processor
from .webhook import PushEvent

logger = logging.getLogger(__name__)


class PipelineBusyError(Exception):
    """Another batch is already running."""


class SingleFlightLock:
    """A single-slot, non-blocking lock for the event loop.

    There is no await between the check and the set in ``try_acquire``, so
    it is atomic under asyncio's cooperative scheduling.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Hold the lock for the body, raising PipelineBusyError if taken."""
        if not self.try_acquire():
            raise PipelineBusyError("A sync process is already running.")
        try:
            yield
        finally:
            self.release()


class SyncOrchestrator:
    """Feeds commits to the processor one at a time under the single-flight lock."""

    def __init__(
        self,
        processor: CommitProcessor | None = None,
        gateway: RepositoryGateway | None = None,
        ledger: CommitLedger | None = None,
        lock: SingleFlightLock | None = None,
        sync_depth: int | None = None,
    ):
        self._processor = processor
        self._gateway = gateway
        self._ledger = ledger
        self.lock = lock or SingleFlightLock()
        self._sync_depth = sync_depth

    @property
    def processor(self) -> CommitProcessor:
        if self._processor is None:
            self._processor = get_commit_processor()
        return self._processor

    @property
    def gateway(self) -> RepositoryGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    @property
    def ledger(self) -> CommitLedger:
        if self._ledger is None:
            self._ledger = get_commit_ledger()
        return self._ledger

    @property
    def sync_depth(self) -> int:
        if self._sync_depth is None:
            self._sync_depth = get_config().pipeline.sync_depth
        return self._sync_depth

    async def handle_push(self, event: PushEvent) -> SyncResult | None:
        """Process a push batch, or return None if it was ignored."""
        if event.targets_bot_branch():
            logger.info("Ignoring push event on bot branch '%s'", event.branch)
            return None

        try:
            async with self.lock.hold():
                result = SyncResult(repository=event.full_name, trigger="push")
                for commit in event.commits:
                    if not commit.distinct:
                        logger.debug("Skipping non-distinct commit %s", commit.id[:7])
                        continue
                    outcome = await self.processor.process(
                        event.owner, event.repo, commit.id, event.default_branch
                    )
                    result.outcomes.append(outcome)
        except PipelineBusyError:
            logger.info("Sync is in progress, skipping push event for %s", event.full_name)
            return None

        logger.info(
            "Push batch for %s done: %d analyzed, %d remediated, %d failed",
            result.repository,
            result.analyzed,
            result.remediated,
            result.failed,
        )
        return result

    async def sync_repository(self, owner: str, repo: str) -> SyncResult:
        """Discover recent commits and process the unseen ones oldest-first.

        Raises:
            PipelineBusyError: If another batch holds the lock
        """
        async with self.lock.hold():
            full_name = f"{owner}/{repo}"
            logger.info("Sync started for %s", full_name)
            result = SyncResult(repository=full_name, trigger="sync")
            try:
                recent = await self.gateway.list_recent_commits(owner, repo, self.sync_depth)
                pending = [sha for sha in recent if not await self.ledger.exists(sha)]
                if not pending:
                    logger.info("No new commits to process for %s", full_name)
                    return result

                logger.info(
                    "Found %d new commit(s) for %s; processing sequentially",
                    len(pending),
                    full_name,
                )
                base_branch = await self.gateway.get_default_branch(owner, repo)
                for sha in reversed(pending):
                    outcome = await self.processor.process(owner, repo, sha, base_branch)
                    result.outcomes.append(outcome)
            except Exception:
                logger.exception("Sync failed for %s", full_name)
                raise

        logger.info(
            "Sync for %s finished: %d processed, %d remediated, %d failed",
            full_name,
            len(result.outcomes),
            result.remediated,
            result.failed,
        )
        return result


# Global orchestrator instance
_sync_orchestrator: SyncOrchestrator | None = None


def get_sync_orchestrator() -> SyncOrchestrator:
    """Get the global sync orchestrator instance."""
    global _sync_orchestrator
    if _sync_orchestrator is None:
        _sync_orchestrator = SyncOrchestrator()
    return _sync_orchestrator
