"""Patch publisher: commits fixes to the bot branch and opens the PR.

There is at most one open remediation pull request at a time: the one whose
head is the bot branch. A round either reuses it (the branch push already
changed its diff) or opens it. Failures stop at this boundary and are
reported as "no PR"; file commits already written stay on the branch, which
is reset at the start of the next round anyway.
"""

import logging

from .github_gateway import GitHubError, RepositoryGateway, get_gateway
from .ledger import CommitLedger, get_commit_ledger
from .models import RemediationRound

logger = logging.getLogger(__name__)

PULL_REQUEST_TITLE = "[Auto-Patch] Automated Security Fixes"


def commit_message(round_: RemediationRound, file_path: str) -> str:
    return f"[AutoPatch] Fix: {file_path} (from commit {round_.short_id})"


def render_pull_request_body(round_: RemediationRound) -> str:
    """Markdown body listing the originating commit and every issue."""
    lines = [
        "This pull request was automatically generated by **Auto-Patch**.",
        "",
        f"- **Repository:** {round_.full_name}",
        f"- **Original commit:** {round_.commit_id}",
        f"- **Overall security score:** {round_.score} / 100",
        "",
        "### Detected issues",
    ]
    if round_.issues:
        for issue in round_.issues:
            location = f"`{issue.file_path}`" if issue.file_path else "unknown file"
            line = f" (line {issue.line})" if issue.line is not None else ""
            lines.append(f"- **[{issue.severity.value}]** {issue.title} in {location}{line}")
    else:
        lines.append("- No individual issues were reported.")
    lines += [
        "",
        "---",
        "",
        "Please review the proposed changes carefully before merging this pull request.",
    ]
    return "\n".join(lines)


class PatchPublisher:
    """Writes a round's patches and creates or reuses the remediation PR."""

    def __init__(
        self,
        gateway: RepositoryGateway | None = None,
        ledger: CommitLedger | None = None,
    ):
        self._gateway = gateway
        self._ledger = ledger

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

    async def publish(self, round_: RemediationRound) -> str | None:
        """Apply every patch, then ensure one open PR represents the round.

        Returns:
            The pull request URL recorded against the commit, or None if
            anything failed
        """
        try:
            logger.info(
                "Applying %d patch(es) for commit %s", len(round_.patches), round_.short_id
            )
            for patch in round_.patches:
                await self._write_patch(round_, patch.file_path, patch.patched_content)
            pr_url = await self._ensure_pull_request(round_)
            await self.ledger.attach_pull_request_url(round_.commit_id, pr_url)
            return pr_url
        except Exception:
            logger.exception(
                "Failed during PR process for commit %s", round_.short_id
            )
            return None

    async def _write_patch(self, round_: RemediationRound, path: str, content: str) -> None:
        current_sha = None
        try:
            current = await self.gateway.get_file(
                round_.owner, round_.repo, path, round_.bot_branch
            )
            current_sha = current.sha
        except GitHubError as exc:
            if not exc.is_not_found:
                raise

        await self.gateway.put_file(
            round_.owner,
            round_.repo,
            path,
            content,
            branch=round_.bot_branch,
            message=commit_message(round_, path),
            sha=current_sha,
        )

    async def _ensure_pull_request(self, round_: RemediationRound) -> str:
        existing = await self.gateway.list_open_pull_requests(
            round_.owner, round_.repo, round_.bot_branch
        )
        if existing:
            logger.info("Existing PR #%d updated", existing[0].number)
            return existing[0].html_url

        pull = await self.gateway.create_pull_request(
            round_.owner,
            round_.repo,
            title=PULL_REQUEST_TITLE,
            head=round_.bot_branch,
            base=round_.base_branch,
            body=render_pull_request_body(round_),
        )
        logger.info("New PR #%d created", pull.number)
        return pull.html_url
