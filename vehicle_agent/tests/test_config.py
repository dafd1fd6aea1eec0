"""Tests for vehicle_agent.config -- environment-driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from vehicle_agent.config import AgentSettings
from vehicle_agent.schemas import AdapterKind


def test_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)  # no stray .env
    settings = AgentSettings()
    assert settings.preferred_adapter is None
    assert settings.elm_port == "auto"
    assert settings.poll_interval_seconds == 0.2
    assert settings.log_max_files == 10
    assert settings.log_max_total_bytes == 100 * 1024 * 1024
    assert not settings.logging_enabled
    assert "/dev/can0" in settings.builtin_device_paths
    assert settings.builtin_frame_batch == 1024
    assert settings.builtin_frame_max_age_seconds == 5.0


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PREFERRED_ADAPTER", "external")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("LOGGING_ENABLED", "true")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "csv"))
    settings = AgentSettings()
    assert settings.preferred_adapter is AdapterKind.EXTERNAL
    assert settings.poll_interval_seconds == 0.5
    assert settings.logging_enabled
    assert settings.log_dir == tmp_path / "csv"


def test_dotenv_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("SIM_SCENARIO=misfire\n", encoding="utf-8")
    assert AgentSettings().sim_scenario == "misfire"
