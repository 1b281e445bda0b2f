"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via FORKLINE_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_data_dir() -> str:
    return str(Path.home() / ".forkline")


@dataclass
class EngineConfig:
    """Exchange engine configuration."""

    # Remote engine defaults
    default_model: str | None = None
    # Optional path to a system engine CLI; SDK-bundled binary otherwise.
    cli_path: str | None = None

    # Storage
    data_dir: str = field(default_factory=_default_data_dir)
    db_path: str | None = None

    # Rollback snapshots are requested after each exchange when enabled.
    history_enabled: bool = True

    # Local fallback engine (Ollama behind the Anthropic-compatible API)
    offline_mode_enabled: bool = False
    fallback_base_url: str = "http://localhost:11434"
    fallback_model: str | None = None
    fallback_history_char_budget: int = 10000

    # Connectivity probe
    connectivity_url: str = "https://api.anthropic.com"
    connectivity_timeout_seconds: float = 5.0

    # Tool approval rendezvous
    approval_timeout_seconds: float = 60.0

    # Retry policy for suspected false-positive policy rejections.
    max_policy_retries: int = 2
    policy_retry_delays: tuple[float, ...] = (3.0, 6.0)

    # Bounded chunk channel between producer and consumer.
    chunk_queue_size: int = 1000

    # Logging
    log_level: str = "INFO"

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path(self.data_dir) / "forkline.db"

    def snapshots_dir(self) -> Path:
        return Path(self.data_dir) / "snapshots"

    def retry_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), escalating."""
        if not self.policy_retry_delays:
            return 0.0
        index = min(max(attempt, 1), len(self.policy_retry_delays)) - 1
        return self.policy_retry_delays[index]

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from FORKLINE_* environment variables."""
        forkline_vars = {
            k: v for k, v in os.environ.items() if k.startswith("FORKLINE_")
        }
        if forkline_vars:
            logger.info(
                "EngineConfig.from_env: FORKLINE_* env overrides: %s",
                ", ".join(sorted(forkline_vars)),
            )
        else:
            logger.debug("EngineConfig.from_env: no FORKLINE_* env vars set, using defaults")

        delays_raw = os.getenv("FORKLINE_POLICY_RETRY_DELAYS", "")
        delays = cls.policy_retry_delays
        if delays_raw.strip():
            try:
                delays = tuple(
                    float(d) for d in delays_raw.split(",") if d.strip()
                )
            except ValueError:
                logger.warning(
                    "Invalid FORKLINE_POLICY_RETRY_DELAYS=%r, using defaults",
                    delays_raw,
                )

        config = cls(
            default_model=os.getenv("FORKLINE_DEFAULT_MODEL") or None,
            cli_path=os.getenv("FORKLINE_CLI_PATH") or None,
            data_dir=os.getenv("FORKLINE_DATA_DIR", _default_data_dir()),
            db_path=os.getenv("FORKLINE_DB_PATH") or None,
            history_enabled=_env_flag("FORKLINE_HISTORY_ENABLED", cls.history_enabled),
            offline_mode_enabled=_env_flag(
                "FORKLINE_OFFLINE_MODE", cls.offline_mode_enabled
            ),
            fallback_base_url=os.getenv(
                "FORKLINE_FALLBACK_BASE_URL", cls.fallback_base_url
            ),
            fallback_model=os.getenv("FORKLINE_FALLBACK_MODEL") or None,
            fallback_history_char_budget=int(os.getenv(
                "FORKLINE_FALLBACK_HISTORY_CHARS",
                str(cls.fallback_history_char_budget),
            )),
            connectivity_url=os.getenv(
                "FORKLINE_CONNECTIVITY_URL", cls.connectivity_url
            ),
            connectivity_timeout_seconds=float(os.getenv(
                "FORKLINE_CONNECTIVITY_TIMEOUT",
                str(cls.connectivity_timeout_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "FORKLINE_APPROVAL_TIMEOUT",
                str(cls.approval_timeout_seconds),
            )),
            max_policy_retries=int(os.getenv(
                "FORKLINE_MAX_POLICY_RETRIES", str(cls.max_policy_retries)
            )),
            policy_retry_delays=delays,
            chunk_queue_size=int(os.getenv(
                "FORKLINE_CHUNK_QUEUE_SIZE", str(cls.chunk_queue_size)
            )),
            log_level=os.getenv("FORKLINE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: data_dir=%s history=%s offline=%s log_level=%s",
            config.data_dir, config.history_enabled,
            config.offline_mode_enabled, config.log_level,
        )
        return config
