"""Configuration dataclasses and loader for the workflow builder."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.shared.constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_CACHE_TTL,
    DEFAULT_MAX_CONCURRENT_REQUESTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STAGE_TIMEOUT,
    MAX_BRIEF_LENGTH,
    MIN_BRIEF_LENGTH,
    STAGE_ARCHITECTURE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
)
from src.workflow_builder.exceptions import ConfigurationError


@dataclass
class NormalizerConfig:
    """Configuration for inbound request normalisation."""

    min_brief_length: int = MIN_BRIEF_LENGTH
    max_brief_length: int = MAX_BRIEF_LENGTH
    # A marker without letters must match a whole line; any other marker
    # matches a line prefix (case-insensitive).
    signature_markers: list[str] = field(
        default_factory=lambda: [
            "--",
            "best regards,",
            "kind regards,",
            "sent from my",
            "sent from",
            "get outlook for",
        ]
    )


@dataclass
class GeneratorConfig:
    """Configuration for generator calls."""

    timeout: float = DEFAULT_STAGE_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    stage_timeouts: dict[str, float] = field(default_factory=dict)

    def timeout_for(self, stage: str) -> float:
        """Per-stage timeout, falling back to the global ``timeout``."""
        return float(self.stage_timeouts.get(stage, self.timeout))


@dataclass
class CacheConfig:
    """Configuration for the stage result cache."""

    enabled: bool = True
    ttl: float = DEFAULT_CACHE_TTL
    stages: list[str] = field(
        default_factory=lambda: [STAGE_REQUIREMENTS, STAGE_ARCHITECTURE, STAGE_SYNTHESIS]
    )
    backend: str = "memory"  # "memory" or "file"
    directory: str = ".workflow-builder/cache"


@dataclass
class ValidatorConfig:
    """Configuration for structural workflow validation."""

    entry_markers: list[str] = field(
        default_factory=lambda: ["trigger", "webhook", "manual", "schedule", "cron"]
    )
    terminal_markers: list[str] = field(
        default_factory=lambda: [
            "respond", "send", "email", "notify", "write", "upsert",
            "store", "output", "terminal",
        ]
    )
    terminal_kinds: list[str] = field(default_factory=lambda: ["end", "noop", "stop"])
    check_secrets: bool = True
    secret_keys: list[str] = field(
        default_factory=lambda: [
            "api_key", "apikey", "password", "secret", "token",
            "access_token", "client_secret", "authorization",
        ]
    )


@dataclass
class WorkflowBuilderConfig:
    """Top-level configuration composing all sub-configs."""

    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS
    audit_dir: str = ""  # empty disables envelope snapshots


_SECTIONS: dict[str, type] = {
    "normalizer": NormalizerConfig,
    "generator": GeneratorConfig,
    "cache": CacheConfig,
    "validator": ValidatorConfig,
}


def _pick(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter *data* to only keys accepted by *cls*."""
    valid = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in valid}


def load_builder_config(path: Path | str | None = None) -> WorkflowBuilderConfig:
    """Load workflow builder configuration from a YAML file.

    Missing sections fall back to defaults.  Unknown keys are silently
    ignored so that forward-compatible config files work.

    Args:
        path: Path to config YAML.  If ``None`` or the file does not
              exist, returns full defaults.

    Returns:
        Populated configuration dataclass.

    Raises:
        ConfigurationError: The file is not valid YAML, is not a mapping,
            or a value fails the basic sanity checks.
    """
    if path is None:
        return WorkflowBuilderConfig()

    path = Path(path)
    if not path.exists():
        return WorkflowBuilderConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    sections: dict[str, Any] = {}
    for key, cls in _SECTIONS.items():
        section_raw = raw.get(key) or {}
        if not isinstance(section_raw, dict):
            raise ConfigurationError(f"Config section '{key}' must be a mapping")
        sections[key] = cls(**_pick(section_raw, cls))

    top_level = _pick(raw, WorkflowBuilderConfig)
    for key in _SECTIONS:
        top_level.pop(key, None)

    cfg = WorkflowBuilderConfig(**sections, **top_level)
    _check(cfg)
    return cfg


def _check(cfg: WorkflowBuilderConfig) -> None:
    if cfg.max_concurrent_requests < 1:
        raise ConfigurationError("max_concurrent_requests must be at least 1")
    if cfg.generator.max_retries < 0:
        raise ConfigurationError("generator.max_retries must not be negative")
    if cfg.generator.timeout <= 0:
        raise ConfigurationError("generator.timeout must be positive")
    if cfg.normalizer.min_brief_length > cfg.normalizer.max_brief_length:
        raise ConfigurationError(
            "normalizer.min_brief_length exceeds normalizer.max_brief_length"
        )
    if cfg.cache.backend not in ("memory", "file"):
        raise ConfigurationError(
            f"cache.backend must be 'memory' or 'file', got '{cfg.cache.backend}'"
        )
