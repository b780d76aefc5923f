"""Unit tests for config module."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import (
    AgentConfig,
    ExecutorConfig,
    LearnerConfig,
    PilotConfig,
    ReportingConfig,
    StabilityConfig,
    SurfaceConfig,
    load_config,
)
from exceptions import ConfigFileNotFoundError


class TestAgentConfig:
    """Tests for AgentConfig model."""

    def test_default_values(self):
        config = AgentConfig()
        assert config.model == "gpt-4.1"
        assert config.base_url == "https://api.openai.com/v1"
        assert config.max_steps == 15
        assert config.max_n_images == 3

    def test_base_url_trailing_slash_stripped(self):
        config = AgentConfig(base_url="http://localhost:1234/v1/")
        assert config.base_url == "http://localhost:1234/v1"

    def test_temperature_validation(self):
        with pytest.raises(ValueError):
            AgentConfig(temperature=-0.1)
        with pytest.raises(ValueError):
            AgentConfig(temperature=2.5)

    @pytest.mark.parametrize("raw,expected", [(0, 1), (-5, 1), (1, 1), (50, 50), (51, 50), (500, 50), ("7", 7)])
    def test_max_steps_clamped(self, raw, expected):
        assert AgentConfig(max_steps=raw).max_steps == expected

    def test_max_steps_garbage_falls_back_to_default(self):
        assert AgentConfig(max_steps="many").max_steps == 15

    def test_env_var_loading(self, monkeypatch):
        monkeypatch.setenv("PAGEPILOT_BASE_URL", "http://env-url:8080/v1")
        monkeypatch.setenv("PAGEPILOT_API_KEY", "env-api-key")
        monkeypatch.setenv("PAGEPILOT_MAX_STEPS", "99")

        config = AgentConfig()
        assert config.base_url == "http://env-url:8080/v1"
        assert config.api_key == "env-api-key"
        assert config.max_steps == 50

    def test_openai_key_fallback(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")
        assert AgentConfig().api_key == "sk-fallback"

    def test_explicit_value_beats_env(self, monkeypatch):
        monkeypatch.setenv("PAGEPILOT_MODEL", "env-model")
        assert AgentConfig(model="explicit").model == "explicit"


class TestSurfaceConfig:
    """Tests for SurfaceConfig model."""

    def test_default_values(self):
        config = SurfaceConfig()
        assert config.browser == "chromium"
        assert config.headless is True
        assert config.viewport_width == 1440
        assert config.viewport_height == 900
        assert config.show_overlay is False

    def test_invalid_browser_rejected(self):
        with pytest.raises(ValueError):
            SurfaceConfig(browser="invalid")

    def test_viewport_validation(self):
        with pytest.raises(ValueError):
            SurfaceConfig(viewport_width=100)
        with pytest.raises(ValueError):
            SurfaceConfig(viewport_height=5000)

    def test_headful_enables_overlay_by_default(self):
        assert SurfaceConfig(headless=False).show_overlay is True

    def test_explicit_overlay_setting_kept(self):
        assert SurfaceConfig(headless=False, show_overlay=False).show_overlay is False


class TestStabilityAndExecutorConfig:
    def test_aspect_ratio(self):
        assert StabilityConfig().aspect_ratio == pytest.approx(1440 / 900)

    def test_executor_defaults(self):
        config = ExecutorConfig()
        assert config.drift_threshold == 0.04
        assert config.viewport_tolerance == 0.08
        assert config.max_wait_seconds == 60.0
        assert config.typing_mode == "insert"

    def test_wait_cap_cannot_exceed_sixty(self):
        with pytest.raises(ValueError):
            ExecutorConfig(max_wait_seconds=120)


class TestLearnerConfig:
    def test_enabled_from_env(self, monkeypatch):
        monkeypatch.setenv("PAGEPILOT_LEARNER_ENABLED", "false")
        assert LearnerConfig().enabled is False

    def test_general_cap_bounded(self):
        with pytest.raises(ValueError):
            LearnerConfig(max_general_rules=51)


class TestReportingConfig:
    def test_traces_folder_string_converted(self):
        config = ReportingConfig(traces_folder="./out")
        assert config.traces_folder == Path("./out")


class TestLoadConfig:
    """Tests for load_config function."""

    def test_missing_optional_file_uses_defaults(self, temp_dir):
        config = load_config(temp_dir / "absent.json")
        assert isinstance(config, PilotConfig)
        assert config.agent.max_steps == 15

    def test_missing_required_file_raises(self, temp_dir):
        with pytest.raises(ConfigFileNotFoundError):
            load_config(temp_dir / "absent.json", required=True)

    def test_load_json(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"agent": {"model": "json-model", "max_steps": 3}, "verbose": True}))
        config = load_config(path)
        assert config.agent.model == "json-model"
        assert config.agent.max_steps == 3
        assert config.verbose is True

    def test_load_yaml(self, temp_dir):
        path = temp_dir / "config.yaml"
        path.write_text("surface:\n  browser: firefox\nlearner:\n  enabled: false\n")
        config = load_config(path)
        assert config.surface.browser == "firefox"
        assert config.learner.enabled is False

    def test_cli_overrides(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"agent": {"model": "file-model"}}))
        config = load_config(path, {"model": "cli-model", "max_steps": 80, "learn": False})
        assert config.agent.model == "cli-model"
        assert config.agent.max_steps == 50
        assert config.learner.enabled is False

    def test_headful_override(self, temp_dir):
        config = load_config(temp_dir / "absent.json", {"headful": True})
        assert config.surface.headless is False
        assert config.surface.show_overlay is True
