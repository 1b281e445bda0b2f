from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import yaml

from forkline.engine.config import EngineConfig
from forkline.engine.yaml_config import ForklineConfig, load_yaml_config


def test_engine_config_defaults() -> None:
    cfg = EngineConfig(data_dir="/data")
    assert cfg.history_enabled is True
    assert cfg.offline_mode_enabled is False
    assert cfg.approval_timeout_seconds == 60.0
    assert cfg.max_policy_retries == 2
    assert cfg.resolved_db_path() == Path("/data/forkline.db")
    assert cfg.snapshots_dir() == Path("/data/snapshots")


def test_retry_delay_escalates_and_clamps() -> None:
    cfg = EngineConfig(policy_retry_delays=(3.0, 6.0))
    assert [cfg.retry_delay(n) for n in (1, 2, 3)] == [3.0, 6.0, 6.0]
    assert EngineConfig(policy_retry_delays=()).retry_delay(1) == 0.0


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("FORKLINE_DATA_DIR", "/tmp/fl")
    monkeypatch.setenv("FORKLINE_HISTORY_ENABLED", "off")
    monkeypatch.setenv("FORKLINE_OFFLINE_MODE", "yes")
    monkeypatch.setenv("FORKLINE_APPROVAL_TIMEOUT", "5400")
    monkeypatch.setenv("FORKLINE_POLICY_RETRY_DELAYS", "1, 2,4")
    monkeypatch.setenv("FORKLINE_DB_PATH", "/tmp/other.db")

    cfg = EngineConfig.from_env()

    assert cfg.data_dir == "/tmp/fl"
    assert cfg.history_enabled is False
    assert cfg.offline_mode_enabled is True
    assert cfg.approval_timeout_seconds == 5400.0
    assert cfg.policy_retry_delays == (1.0, 2.0, 4.0)
    assert cfg.resolved_db_path() == Path("/tmp/other.db")


def test_from_env_ignores_bad_delays(monkeypatch) -> None:
    monkeypatch.setenv("FORKLINE_POLICY_RETRY_DELAYS", "soon")
    assert EngineConfig.from_env().policy_retry_delays == (3.0, 6.0)


def test_yaml_config_overrides_base() -> None:
    base = EngineConfig(data_dir="/base", default_model="base-model")
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "forkline.yaml"
        config_path.write_text(
            "engine:\n"
            "  data_dir: ~/fl-data\n"
            "  approval_timeout_seconds: 4800\n"
            "  policy_retry_delays: [1, 2]\n"
            "fallback:\n"
            "  enabled: true\n"
            "  model: qwen2.5-coder:7b\n"
            "server:\n"
            "  port: 0\n"
        )
        cfg = load_yaml_config(config_path, base)

    assert isinstance(cfg, ForklineConfig)
    assert cfg.engine.data_dir == os.path.expanduser("~/fl-data")
    assert cfg.engine.default_model == "base-model"
    assert cfg.engine.approval_timeout_seconds == 4800.0
    assert cfg.engine.policy_retry_delays == (1.0, 2.0)
    assert cfg.engine.offline_mode_enabled is True
    assert cfg.engine.fallback_model == "qwen2.5-coder:7b"
    assert cfg.fallback.base_url == base.fallback_base_url
    assert cfg.server.host == "127.0.0.1"
    assert cfg.server.port == 0


def test_yaml_config_empty_file_keeps_base(tmp_path: Path) -> None:
    config_path = tmp_path / "forkline.yaml"
    config_path.write_text("")
    base = EngineConfig(data_dir="/base", max_policy_retries=5)

    cfg = load_yaml_config(config_path, base)

    assert cfg.engine.data_dir == "/base"
    assert cfg.engine.max_policy_retries == 5
    assert cfg.server.port == 8765


def test_yaml_config_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", EngineConfig())

    bad = tmp_path / "bad.yaml"
    bad.write_text("engine: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(bad, EngineConfig())

    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="top level must be a mapping"):
        load_yaml_config(listing, EngineConfig())
