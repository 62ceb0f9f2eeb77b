"""Branch reconciler: points the bot branch at the target branch tip.

Every remediation round starts from a clean base. The bot branch is hard
reset (forced ref update, not a merge), so fixes from earlier rounds that
were never merged are discarded rather than compounded.
"""

import logging

from .github_gateway import GitHubError, RepositoryGateway, get_gateway
from .models import BOT_BRANCH, RemediationRound

logger = logging.getLogger(__name__)


class BranchReconciler:
    """Resets or creates the bot branch before a remediation round."""

    def __init__(self, gateway: RepositoryGateway | None = None):
        self._gateway = gateway

    @property
    def gateway(self) -> RepositoryGateway:
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    async def reconcile(self, round_: RemediationRound) -> str:
        """Make ``round_.bot_branch`` equal to ``round_.base_branch``.

        Returns:
            The commit sha both branches now point at

        Raises:
            GitHubError: For any failure other than the bot branch missing
        """
        return await self.reset_branch(
            round_.owner, round_.repo, round_.base_branch, round_.bot_branch
        )

    async def reset_branch(
        self,
        owner: str,
        repo: str,
        base_branch: str,
        bot_branch: str = BOT_BRANCH,
    ) -> str:
        logger.info("Resetting branch '%s' to match '%s'", bot_branch, base_branch)
        base_sha = await self.gateway.get_branch_head(owner, repo, base_branch)

        try:
            await self.gateway.update_branch(owner, repo, bot_branch, base_sha, force=True)
            logger.info("Branch '%s' reset to %s", bot_branch, base_sha[:7])
        except GitHubError as exc:
            if not exc.is_missing:
                raise
            await self.gateway.create_branch(owner, repo, bot_branch, base_sha)
            logger.info("Branch '%s' did not exist; created at %s", bot_branch, base_sha[:7])

        return base_sha
