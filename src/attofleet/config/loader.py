"""YAML config loader for attofleet."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from attofleet.config.schema import AutomationConfig, FleetConfig, LoggingConfig, RepoConfig
from attofleet.defaults import DEFAULT_TEST_MAX_RETRIES, MAX_AUTO_MERGE_POLL_ATTEMPTS, MERGE_METHODS
from attofleet.errors import ConfigError


def load_fleet_yaml(path: str | Path | None = None, *, use_env: bool = True) -> FleetConfig:
    """Load a fleet config file, apply environment overrides and clamp budgets.

    A missing file yields the defaults. A file that is not valid YAML raises
    :class:`ConfigError`.
    """
    raw: Any = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                raw = yaml.safe_load(p.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {p}: {exc}", path=str(p)) from exc
    if not isinstance(raw, dict):
        raw = {}

    automation_raw = raw.get("automation", {}) if isinstance(raw.get("automation"), dict) else {}
    logging_raw = raw.get("logging", {}) if isinstance(raw.get("logging"), dict) else {}

    automation = AutomationConfig(**_pick(automation_raw, AutomationConfig))
    log_cfg = LoggingConfig(**_pick(logging_raw, LoggingConfig))

    repos: list[RepoConfig] = []
    raw_repos = raw.get("repos", [])
    if isinstance(raw_repos, list):
        for item in raw_repos:
            if isinstance(item, dict) and item.get("path"):
                repos.append(RepoConfig(**_pick(item, RepoConfig)))

    cfg = FleetConfig(
        version=int(raw.get("version", 1)),
        automation=automation,
        logging=log_cfg,
        repos=repos,
    )
    if isinstance(raw.get("conversation_dir"), str) and raw["conversation_dir"]:
        cfg.conversation_dir = raw["conversation_dir"]

    if use_env:
        load_dotenv(find_dotenv(usecwd=True))
        _apply_env(cfg)

    _clamp(cfg)
    return cfg


def _apply_env(cfg: FleetConfig) -> None:
    if debug := os.environ.get("ATTOFLEET_DEBUG"):
        cfg.logging.debug = debug.lower() in ("1", "true", "yes")
    if attempts := os.environ.get("ATTOFLEET_MAX_POLL_ATTEMPTS"):
        try:
            cfg.automation.max_auto_merge_poll_attempts = int(attempts)
        except ValueError as exc:
            raise ConfigError(f"ATTOFLEET_MAX_POLL_ATTEMPTS must be an integer, got {attempts!r}") from exc
    if conv_dir := os.environ.get("ATTOFLEET_CONVERSATION_DIR"):
        cfg.conversation_dir = conv_dir


def _clamp(cfg: FleetConfig) -> None:
    """Keep every retry budget finite and positive."""
    auto = cfg.automation
    if auto.max_auto_merge_poll_attempts < 1:
        auto.max_auto_merge_poll_attempts = MAX_AUTO_MERGE_POLL_ATTEMPTS
    if auto.auto_merge_poll_interval_seconds < 0:
        auto.auto_merge_poll_interval_seconds = 0.0
    for repo in cfg.repos:
        if repo.test_max_retries < 1:
            repo.test_max_retries = DEFAULT_TEST_MAX_RETRIES
        if repo.merge_method not in MERGE_METHODS:
            raise ConfigError(
                f"Unsupported merge_method {repo.merge_method!r} for {repo.path} "
                f"(expected one of {', '.join(MERGE_METHODS)})"
            )


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
