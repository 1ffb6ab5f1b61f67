"""Configuration for butler-sync.

PluginConfig holds per-workspace settings. Values come from, in priority
order:

1. Environment variables (``BUTLER_SYNC_<KEY>``, e.g. ``BUTLER_SYNC_LLM_TIMEOUT_MS``)
2. ``<workspace>/.opencode/gitbutler.json`` (JSON with comments allowed)
3. Field defaults

An invalid individual value is dropped with a warning and the default is
used instead; configuration problems never stop the engine.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".opencode/gitbutler.json"
ENV_PREFIX = "BUTLER_SYNC_"

DEFAULT_BRANCH_PATTERN = r"^ge-branch-\d+$"


class PluginConfig(BaseModel):
    """Per-workspace configuration."""

    model_config = {"strict": True, "frozen": True}

    log_enabled: bool = True
    log_max_bytes: int = Field(default=5 * 1024 * 1024, ge=0)

    commit_message_provider: str = "anthropic"
    commit_message_model: str = "claude-haiku-4-5"
    llm_timeout_ms: int = Field(default=15_000, gt=0)
    max_diff_chars: int = Field(default=4_000, gt=0)

    branch_slug_max_length: int = Field(default=50, gt=0)
    branch_slug_max_words: int = Field(default=6, gt=0)
    default_branch_pattern: str = DEFAULT_BRANCH_PATTERN
    branch_target: Optional[str] = None  # forces every session onto one seed

    stale_lock_ms: int = Field(default=5 * 60_000, gt=0)
    lock_timeout_ms: int = Field(default=60_000, gt=0)
    lock_poll_ms: int = Field(default=1_000, gt=0)

    assignment_cache_ttl_ms: int = Field(default=30_000, ge=0)
    status_cache_ttl_ms: int = Field(default=10_000, ge=0)
    notification_ttl_ms: int = Field(default=5 * 60_000, gt=0)

    inference_enabled: bool = True
    inference_min_score: int = Field(default=2, ge=0)
    inference_min_margin: int = Field(default=1, ge=1)

    cleanup_max_retries: int = Field(default=4, ge=0)
    cleanup_base_delay_ms: int = Field(default=500, ge=0)

    but_binary: str = "but"
    host_url: Optional[str] = None

    @field_validator("default_branch_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"not a valid regular expression: {exc}") from exc
        return value

    @field_validator("branch_target")
    @classmethod
    def _blank_target_is_unset(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def default_branch_regex(self) -> re.Pattern[str]:
        return re.compile(self.default_branch_pattern)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PluginConfig:
        """Build a config keeping only the values that validate.

        Unknown keys are ignored. Each known key is validated on its own
        so one bad value does not discard the rest of the file.
        """
        accepted: dict[str, Any] = {}
        for name in cls.model_fields:
            if name not in data:
                continue
            try:
                cls.model_validate({name: data[name]})
            except ValidationError as exc:
                logger.warning(
                    "config-value-rejected",
                    extra={"data": {"key": name, "error": exc.errors()[0]["msg"]}},
                )
                continue
            accepted[name] = data[name]
        return cls.model_validate(accepted)


def strip_json_comments(text: str) -> str:
    """Strip ``//`` and ``/* */`` comments and trailing commas.

    Quote state is tracked so comment markers inside string literals
    survive.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            j = i + 1
            while j < n:
                if text[j] == "\\":
                    j += 2
                    continue
                if text[j] == '"':
                    j += 1
                    break
                j += 1
            out.append(text[i:j])
            i = j
            continue
        if ch == "/" and i + 1 < n and text[i + 1] == "/":
            i += 2
            while i < n and text[i] != "\n":
                i += 1
            continue
        if ch == "/" and i + 1 < n and text[i + 1] == "*":
            close = text.find("*/", i + 2)
            i = close + 2 if close != -1 else n
            continue
        out.append(ch)
        i += 1
    return re.sub(r",\s*([\]}])", r"\1", "".join(out))


def _env_overrides(environ: dict[str, str] | os._Environ) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in PluginConfig.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        # "true"/"15000" decode to bool/int; anything else stays a string
        try:
            overrides[name] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[name] = raw
    return overrides


def config_path(workspace: str | Path) -> Path:
    return Path(workspace) / CONFIG_FILE_NAME


def load_config(
    workspace: str | Path,
    *,
    environ: dict[str, str] | None = None,
) -> PluginConfig:
    """Load configuration for a workspace root.

    Args:
        workspace: Workspace root directory.
        environ: Environment mapping to read overrides from. Defaults to
            ``os.environ``.

    Returns:
        The resolved PluginConfig. Never raises on bad input.
    """
    path = config_path(workspace)
    data: dict[str, Any] = {}
    if path.exists():
        try:
            parsed = json.loads(strip_json_comments(path.read_text("utf-8")))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "config-parse-failed",
                extra={"data": {"path": str(path), "error": str(exc)}},
            )
        else:
            if isinstance(parsed, dict):
                data = parsed
            else:
                logger.warning(
                    "config-parse-failed",
                    extra={"data": {"path": str(path), "error": "top-level value is not an object"}},
                )

    data.update(_env_overrides(os.environ if environ is None else environ))
    return PluginConfig.from_dict(data)
