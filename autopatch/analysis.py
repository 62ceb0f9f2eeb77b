"""Analysis adapter: asks an external reasoning service for security verdicts.

The service is an OpenAI-compatible chat-completions endpoint instructed to
answer with a single JSON object. Answers are parsed leniently: a call
that succeeds but returns junk still produces a Verdict with the neutral
score and no issues or patches. Only transport failures (no API key,
unreachable service, non-2xx status) raise ``AnalysisError``.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Protocol, runtime_checkable

import httpx
from jsonschema import Draft7Validator

from .config import AnalysisConfig, get_config
from .models import FileSnapshot, Issue, Patch, Verdict

logger = logging.getLogger(__name__)

# Used when the service omits the score or sends something non-numeric.
NEUTRAL_SCORE = 60

SYSTEM_MESSAGE = "You are a strict JSON-only responder."

ISSUE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": ["string", "null"]},
        "severity": {"type": ["string", "null"]},
        "description": {"type": ["string", "null"]},
        "filePath": {"type": ["string", "null"]},
    },
}

PATCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["filePath", "patchedContent"],
    "properties": {
        "filePath": {"type": "string", "minLength": 1},
        "patchedContent": {"type": "string"},
    },
}

_issue_validator = Draft7Validator(ISSUE_SCHEMA)
_patch_validator = Draft7Validator(PATCH_SCHEMA)


class AnalysisError(Exception):
    """The analysis service could not be reached or refused the request."""


# =============================================================================
# Response parsing
# =============================================================================


def extract_json_object(text: str | None) -> dict[str, Any]:
    """Pull the outermost ``{...}`` out of a model reply.

    Models wrap JSON in prose or markdown fences despite instructions;
    anything between the first ``{`` and the last ``}`` is tried. Returns
    an empty dict when nothing parses.
    """
    if not text:
        return {}
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return {}
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse JSON from model output: %s", exc)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def clamp_score(value: Any, fallback: int = NEUTRAL_SCORE) -> int:
    """Coerce a score into [0, 100], or *fallback* if it is not a number."""
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return int(round(min(100.0, max(0.0, number))))


def parse_issues(raw: Any) -> list[Issue]:
    if not isinstance(raw, list):
        return []
    issues = []
    for item in raw:
        if not _issue_validator.is_valid(item):
            logger.debug("Dropping malformed issue from model output: %r", item)
            continue
        issues.append(Issue.from_dict(item))
    return issues


def parse_patches(raw: Any) -> list[Patch]:
    if not isinstance(raw, list):
        return []
    patches = []
    for item in raw:
        if not _patch_validator.is_valid(item):
            logger.debug("Dropping malformed patch from model output: %r", item)
            continue
        patches.append(Patch.from_dict(item))
    return patches


def parse_verdict(payload: dict[str, Any]) -> Verdict:
    """Build a Verdict from whatever the model returned."""
    return Verdict(
        score=clamp_score(payload.get("overall_score")),
        issues=parse_issues(payload.get("issues")),
        patches=parse_patches(payload.get("patches")),
        raw_output=payload,
    )


# =============================================================================
# Prompts
# =============================================================================


def _files_payload(files: list[FileSnapshot], max_chars: int) -> list[dict[str, str]]:
    return [{"path": f.path, "content": f.content[:max_chars]} for f in files]


def build_assessment_prompt(
    repository: str,
    commit_id: str,
    files: list[FileSnapshot],
    author: str,
    max_chars: int,
) -> str:
    payload = {
        "repository": repository,
        "commitId": commit_id,
        "author": author,
        "files": _files_payload(files, max_chars),
    }
    return f"""
You are an expert application security reviewer.

You will receive a JSON object with metadata about a commit and a list of changed files.
Each file has a "path" and "content" string (up to ~{max_chars} characters).

Your job is to:
1. Analyze the code for security vulnerabilities and risky patterns.
2. Produce a numeric overall security score from 0 to 100 (higher is more secure).
3. List concrete issues found.
4. For each issue that can be automatically fixed, produce a fully patched file.

RETURN ONLY A SINGLE JSON OBJECT, with this exact shape:

{{
  "overall_score": 0-100 number,
  "issues": [
    {{
      "title": "short issue summary",
      "severity": "info|low|medium|high|critical",
      "description": "one or two sentences describing the vulnerability",
      "filePath": "path/to/file.js",
      "line": 123
    }}
  ],
  "patches": [
    {{
      "filePath": "path/to/file.js",
      "patchedContent": "FULL new content of the file after applying all security fixes"
    }}
  ]
}}

Important rules:
- The patches array may be empty if no automatic fix is safe.
- patchedContent must be the full file, not a diff.
- Respond with JSON only, no markdown, no comments.

Here is the commit to analyze:

{json.dumps(payload, indent=2)}
""".strip()


def build_patch_prompt(
    repository: str,
    commit_id: str,
    files: list[FileSnapshot],
    issues: list[Issue],
    max_chars: int,
) -> str:
    payload = {
        "repository": repository,
        "commitId": commit_id,
        "issues": [issue.to_row() for issue in issues],
        "files": _files_payload(files, max_chars),
    }
    return f"""
You are an expert JavaScript/TypeScript security engineer.

The issues below were found in the attached files. Fix every issue you can fix
safely without changing behaviour, and return the complete patched files.

RETURN ONLY A SINGLE JSON OBJECT:

{{
  "patches": [
    {{
      "filePath": "path/to/file.js",
      "patchedContent": "FULL new content of the file"
    }}
  ]
}}

Rules:
- Only include files you actually changed.
- patchedContent must be the full file, not a diff, and must be valid JavaScript/TypeScript.
- Return an empty patches array if no fix is safe.
- Respond with JSON only, no markdown, no comments.

{json.dumps(payload, indent=2)}
""".strip()


def build_report_prompt(stats: dict[str, Any]) -> str:
    return f"""
You are a security report generator. Generate a professional security report summary
based on the following data:

- Username: {stats["username"]}
- Total Commits Analyzed: {stats["commits_count"]}
- Average Security Score: {stats["avg_score"]}/100
- Issue Severity Breakdown: {json.dumps(stats["severity_breakdown"])}
- Most Common Issue Types: {json.dumps(stats["issue_types"])}

Generate a JSON response with this structure:
{{
  "title": "Security Report for <username>",
  "summary": "A brief 2-3 sentence summary of the security posture",
  "risk_level": "low|medium|high|critical",
  "recommendations": ["recommendation 1", "recommendation 2", "recommendation 3"],
  "top_issues": ["issue 1", "issue 2", "issue 3"]
}}

Respond with JSON only, no markdown.
""".strip()


# =============================================================================
# Adapter
# =============================================================================


@runtime_checkable
class AnalysisAdapter(Protocol):
    """Contract the pipeline consumes from the reasoning service."""

    async def assess(
        self,
        repository: str,
        commit_id: str,
        files: list[FileSnapshot],
        author: str,
    ) -> Verdict:
        ...

    async def generate_patches(
        self,
        repository: str,
        commit_id: str,
        files: list[FileSnapshot],
        issues: list[Issue],
    ) -> list[Patch]:
        ...

    async def summarize_author(self, stats: dict[str, Any]) -> dict[str, Any]:
        ...


class OpenAIAnalysisAdapter:
    """AnalysisAdapter backed by an OpenAI-compatible chat completions API."""

    def __init__(self, config: AnalysisConfig | None = None):
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> AnalysisConfig:
        if self._config is None:
            self._config = get_config().analysis
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def _complete(self, prompt: str) -> str:
        """Send one prompt and return the assistant message text.

        Raises:
            AnalysisError: If the key is missing, the request fails, or the
                response does not have the chat-completions shape.
        """
        if not self.config.api_key:
            raise AnalysisError("OPENAI_API_KEY is not set")

        try:
            response = await self.client.post(
                f"{self.config.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.config.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": self.config.temperature,
                },
            )
        except httpx.HTTPError as exc:
            raise AnalysisError(f"Analysis service unreachable: {exc}") from exc

        if response.is_error:
            raise AnalysisError(
                f"Analysis service error: {response.status_code} {response.text}"
            )

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AnalysisError("Unexpected analysis service response shape") from exc

    async def assess(
        self,
        repository: str,
        commit_id: str,
        files: list[FileSnapshot],
        author: str,
    ) -> Verdict:
        prompt = build_assessment_prompt(
            repository, commit_id, files, author, self.config.max_file_chars
        )
        payload = extract_json_object(await self._complete(prompt))
        verdict = parse_verdict(payload)
        if "overall_score" not in payload:
            logger.warning(
                "No usable score for %s@%s; using neutral %d",
                repository,
                commit_id[:7],
                verdict.score,
            )
        return verdict

    async def generate_patches(
        self,
        repository: str,
        commit_id: str,
        files: list[FileSnapshot],
        issues: list[Issue],
    ) -> list[Patch]:
        prompt = build_patch_prompt(
            repository, commit_id, files, issues, self.config.max_file_chars
        )
        payload = extract_json_object(await self._complete(prompt))
        return parse_patches(payload.get("patches"))

    async def summarize_author(self, stats: dict[str, Any]) -> dict[str, Any]:
        payload = extract_json_object(await self._complete(build_report_prompt(stats)))
        if not payload:
            raise AnalysisError("Report generation returned no JSON object")
        return payload

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global adapter instance
_analysis_adapter: AnalysisAdapter | None = None


def get_analysis_adapter() -> AnalysisAdapter:
    """Get the global analysis adapter instance."""
    global _analysis_adapter
    if _analysis_adapter is None:
        _analysis_adapter = OpenAIAnalysisAdapter()
    return _analysis_adapter
