"""GitHub push webhook: signature verification and payload parsing."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any

from .models import BOT_BRANCH

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""
    if not signature_header:
        return False
    digest = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature_header)


@dataclass
class PushCommit:
    id: str
    distinct: bool = True


@dataclass
class PushEvent:
    """The parts of a GitHub push payload the pipeline uses."""

    owner: str
    repo: str
    ref: str
    default_branch: str
    commits: list[PushCommit] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PushEvent:
        """Parse a decoded push payload.

        Raises:
            ValueError: If the repository identity is missing or malformed
        """
        repository = payload.get("repository") or {}
        full_name = repository.get("full_name") or ""
        owner, _, repo = full_name.partition("/")
        if not owner or not repo:
            raise ValueError(f"Push payload has no usable repository name: {full_name!r}")

        commits = [
            PushCommit(id=c["id"], distinct=c.get("distinct") is not False)
            for c in payload.get("commits") or []
            if c.get("id")
        ]
        return cls(
            owner=owner,
            repo=repo,
            ref=payload.get("ref") or "",
            default_branch=repository.get("default_branch") or "main",
            commits=commits,
        )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def branch(self) -> str:
        return self.ref.removeprefix("refs/heads/")

    def targets_bot_branch(self, bot_branch: str = BOT_BRANCH) -> bool:
        return self.branch == bot_branch
