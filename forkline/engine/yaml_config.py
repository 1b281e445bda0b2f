"""YAML configuration loader.

Loads a single ``forkline.yaml`` file on top of the environment
defaults. When no file is given, ``EngineConfig.from_env()`` is used
unchanged.

Example YAML:
    engine:
      default_model: claude-sonnet-4-5
      data_dir: ~/.forkline
      history_enabled: true
      approval_timeout_seconds: 60
      max_policy_retries: 2
      policy_retry_delays: [3, 6]
      log_level: INFO

    fallback:
      enabled: true
      base_url: http://localhost:11434
      model: qwen2.5-coder:7b
      history_char_budget: 10000

    server:
      host: 127.0.0.1
      port: 8765
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)


@dataclass
class FallbackConfig:
    """Local fallback engine settings as written in YAML."""
    enabled: bool = False
    base_url: str = EngineConfig.fallback_base_url
    model: str | None = None
    history_char_budget: int = EngineConfig.fallback_history_char_budget


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class ForklineConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _expand_path(value: str | None) -> str | None:
    if not value:
        return value
    return os.path.expanduser(os.path.expandvars(str(value)))


def _parse_delays(value, default: tuple[float, ...]) -> tuple[float, ...]:
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return (float(value),)
    return tuple(float(v) for v in value)


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> ForklineConfig:
    """Load and parse a YAML config file.

    Values missing from the file keep whatever ``base`` holds (the
    environment-derived config by default), so env vars still act as
    defaults underneath the file.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(raw).__name__}")

    base = base or EngineConfig.from_env()

    # ── Engine config ──────────────────────────────────────────
    engine_raw = raw.get("engine", {}) or {}
    fallback_raw = raw.get("fallback", {}) or {}
    fallback = FallbackConfig(
        enabled=bool(fallback_raw.get("enabled", base.offline_mode_enabled)),
        base_url=fallback_raw.get("base_url", base.fallback_base_url),
        model=fallback_raw.get("model", base.fallback_model),
        history_char_budget=int(fallback_raw.get(
            "history_char_budget", base.fallback_history_char_budget,
        )),
    )

    engine = EngineConfig(
        default_model=engine_raw.get("default_model", base.default_model),
        cli_path=_expand_path(engine_raw.get("cli_path", base.cli_path)),
        data_dir=_expand_path(engine_raw.get("data_dir", base.data_dir)),
        db_path=_expand_path(engine_raw.get("db_path", base.db_path)),
        history_enabled=bool(engine_raw.get("history_enabled", base.history_enabled)),
        offline_mode_enabled=fallback.enabled,
        fallback_base_url=fallback.base_url,
        fallback_model=fallback.model,
        fallback_history_char_budget=fallback.history_char_budget,
        connectivity_url=engine_raw.get("connectivity_url", base.connectivity_url),
        connectivity_timeout_seconds=float(engine_raw.get(
            "connectivity_timeout_seconds", base.connectivity_timeout_seconds,
        )),
        approval_timeout_seconds=float(engine_raw.get(
            "approval_timeout_seconds", base.approval_timeout_seconds,
        )),
        max_policy_retries=int(engine_raw.get(
            "max_policy_retries", base.max_policy_retries,
        )),
        policy_retry_delays=_parse_delays(
            engine_raw.get("policy_retry_delays"), base.policy_retry_delays,
        ),
        chunk_queue_size=int(engine_raw.get("chunk_queue_size", base.chunk_queue_size)),
        log_level=str(engine_raw.get("log_level", base.log_level)),
    )

    # ── Server ─────────────────────────────────────────────────
    server_raw = raw.get("server", {}) or {}
    server = ServerConfig(
        host=str(server_raw.get("host", ServerConfig.host)),
        port=int(server_raw.get("port", ServerConfig.port)),
    )

    logger.info(
        "Config loaded from %s: sections=[%s] data_dir=%s fallback=%s server=%s:%d",
        path.name,
        ", ".join(sorted(raw.keys())) if raw else "none",
        engine.data_dir,
        "on" if fallback.enabled else "off",
        server.host,
        server.port,
    )
    return ForklineConfig(engine=engine, fallback=fallback, server=server)
