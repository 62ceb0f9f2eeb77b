"""Deployment profiles for Auto-Patch.

A profile is ``profiles/<name>.yaml`` at the repository root. Profiles may
``extends:`` another profile (deep-merged, child wins) and may reference
``${VAR}`` or ``${VAR:-default}``, resolved from ``.secrets.yaml`` first and
the process environment second. Resolved values listed in ``PROFILE_ENV_MAP``
are exported to ``os.environ`` only where the variable is not already set, so
explicit environment always beats the profile.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

PROFILE_ENV_VAR = "AUTOPATCH_PROFILE"

# Dotted YAML path -> environment variable. Unlisted keys stay profile-only.
PROFILE_ENV_MAP: dict[str, str] = {
    "github.api_url": "GITHUB_API_URL",
    "github.token": "GITHUB_ACCESS_TOKEN",
    "github.webhook_secret": "GITHUB_WEBHOOK_SECRET",
    "github.user_agent": "GITHUB_USER_AGENT",
    "github.timeout_seconds": "GITHUB_TIMEOUT_SECONDS",
    "analysis.api_key": "OPENAI_API_KEY",
    "analysis.base_url": "OPENAI_BASE_URL",
    "analysis.model": "OPENAI_MODEL",
    "analysis.temperature": "OPENAI_TEMPERATURE",
    "analysis.max_file_chars": "ANALYSIS_MAX_FILE_CHARS",
    "analysis.timeout_seconds": "ANALYSIS_TIMEOUT_SECONDS",
    "pipeline.security_threshold": "SECURITY_THRESHOLD",
    "pipeline.sync_depth": "SYNC_DEPTH",
    "database.backend": "DB_BACKEND",
    "database.supabase_url": "SUPABASE_URL",
    "database.supabase_service_key": "SUPABASE_SERVICE_KEY",
    "database.postgres_dsn": "POSTGRES_DSN",
    "database.postgres_pool_min": "POSTGRES_POOL_MIN",
    "database.postgres_pool_max": "POSTGRES_POOL_MAX",
    "api.host": "API_HOST",
    "api.port": "API_PORT",
    "api.access_log": "API_ACCESS_LOG",
    "api.log_level": "LOG_LEVEL",
}

# ${NAME} or ${NAME:-fallback}; a leading "$$" escapes the reference.
_REFERENCE_RE = re.compile(r"(?<!\$)\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_REPO_ROOT = Path(__file__).resolve().parent.parent


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return *base* updated with *override*, merging nested mappings."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_secrets(secrets_path: Path) -> dict[str, str]:
    """Read ``.secrets.yaml`` into a flat name -> string mapping."""
    if not secrets_path.is_file():
        return {}
    with open(secrets_path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Secrets file %s is not a mapping; ignored", secrets_path)
        return {}

    secrets: dict[str, str] = {}
    for name, value in data.items():
        if isinstance(value, str):
            secrets[str(name)] = value
        else:
            logger.warning("Secret '%s' is %s, not a string; skipped", name, type(value).__name__)
    return secrets


def interpolate(value: str, secrets: dict[str, str]) -> str:
    """Expand ``${VAR}`` references in *value*.

    Unresolvable references without a fallback are left untouched so the
    setting that needs them fails loudly later.
    """

    def _resolve(match: re.Match[str]) -> str:
        name, fallback = match.group(1), match.group(2)
        if name in secrets:
            return secrets[name]
        if name in os.environ:
            return os.environ[name]
        return fallback if fallback is not None else match.group(0)

    return _REFERENCE_RE.sub(_resolve, value).replace("$${", "${")


def _interpolate_tree(node: Any, secrets: dict[str, str]) -> Any:
    if isinstance(node, str):
        return interpolate(node, secrets)
    if isinstance(node, dict):
        return {key: _interpolate_tree(child, secrets) for key, child in node.items()}
    if isinstance(node, list):
        return [_interpolate_tree(child, secrets) for child in node]
    return node


def _read_profile(name: str, profiles_dir: Path, chain: list[str]) -> dict[str, Any]:
    if name in chain:
        raise ValueError(f"Circular profile inheritance: {' -> '.join([*chain, name])}")

    path = profiles_dir / f"{name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Profile not found: {path}")
    with open(path, encoding="utf-8") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    parent = raw.pop("extends", None)
    if parent:
        raw = deep_merge(_read_profile(parent, profiles_dir, [*chain, name]), raw)
    return raw


def flatten(data: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested mappings into dotted keys with string values."""
    flat: dict[str, str] = {}
    for key, value in data.items():
        dotted = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten(value, dotted))
        elif isinstance(value, bool):
            flat[dotted] = str(value).lower()
        else:
            flat[dotted] = str(value)
    return flat


def load_profile(
    profile_name: str | None = None,
    *,
    profiles_dir: Path | None = None,
    secrets_path: Path | None = None,
) -> dict[str, Any]:
    """Load, merge and interpolate a profile.

    Raises:
        FileNotFoundError: If a profile in the inheritance chain is missing.
        ValueError: On circular inheritance.
    """
    profiles_dir = profiles_dir or _REPO_ROOT / "profiles"
    secrets_path = secrets_path or _REPO_ROOT / ".secrets.yaml"
    name = profile_name or os.environ.get(PROFILE_ENV_VAR, "local")

    profile = _read_profile(name, profiles_dir, [])
    return _interpolate_tree(profile, load_secrets(secrets_path))  # type: ignore[no-any-return]


def apply_profile(
    profile_name: str | None = None,
    *,
    profiles_dir: Path | None = None,
    secrets_path: Path | None = None,
) -> dict[str, Any] | None:
    """Load a profile and export its mapped settings as env defaults.

    Does nothing (returns ``None``) unless a profile is requested explicitly
    or through ``AUTOPATCH_PROFILE``.
    """
    if profile_name is None and PROFILE_ENV_VAR not in os.environ:
        return None

    profiles_dir = profiles_dir or _REPO_ROOT / "profiles"
    if not profiles_dir.is_dir():
        logger.debug("No profiles directory at %s; skipping", profiles_dir)
        return None

    profile = load_profile(profile_name, profiles_dir=profiles_dir, secrets_path=secrets_path)
    flat = flatten(profile)
    for dotted, env_var in PROFILE_ENV_MAP.items():
        if dotted in flat and env_var not in os.environ:
            os.environ[env_var] = flat[dotted]
            logger.debug("profile -> %s", env_var)
    return profile
