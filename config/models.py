"""Pydantic configuration models for the pagepilot agent loop."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError

# Load .env file if present
load_dotenv()

MAX_STEPS_HARD_CAP = 50


class AgentConfig(BaseModel):
    """Model endpoint and step budget configuration."""

    model: str = Field(
        default="gpt-4.1",
        description="Model name used for step decisions",
    )
    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL for the OpenAI-compatible API endpoint",
    )
    api_key: str = Field(
        default="",
        description="API key for the model service",
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Temperature for model generation",
    )
    max_steps: int = Field(
        default=15,
        description="Maximum number of model decisions per run (clamped to 1..50)",
    )
    max_tokens: int = Field(
        default=1024,
        ge=100,
        le=8192,
        description="Maximum tokens for one model response",
    )
    max_n_images: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of screenshots kept in the model context",
    )
    model_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=600,
        description="Timeout for one streamed model decision",
    )
    debug_log_requests: bool = Field(
        default=False,
        description="Dump model request payloads (images truncated) for debugging",
    )
    requests_log_folder: Path = Field(
        default=Path("./traces/model_requests"),
        description="Where request payload dumps are written",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("max_steps", mode="before")
    @classmethod
    def clamp_max_steps(cls, v: Any) -> int:
        """Clamp the step budget instead of rejecting out-of-range values."""
        try:
            steps = int(v)
        except (TypeError, ValueError):
            return 15
        return max(1, min(MAX_STEPS_HARD_CAP, steps))

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Load values from environment variables if not explicitly set."""
        env_mapping = {
            "base_url": "PAGEPILOT_BASE_URL",
            "api_key": "PAGEPILOT_API_KEY",
            "model": "PAGEPILOT_MODEL",
            "max_steps": "PAGEPILOT_MAX_STEPS",
        }
        for field_name, env_var in env_mapping.items():
            if field_name not in data or data[field_name] is None:
                env_value = os.getenv(env_var)
                if env_value:
                    data[field_name] = env_value
        if not data.get("api_key"):
            fallback = os.getenv("OPENAI_API_KEY")
            if fallback:
                data["api_key"] = fallback
        return data


class SurfaceConfig(BaseModel):
    """Controlled browser surface configuration."""

    browser: Literal["chromium", "firefox", "webkit"] = Field(
        default="chromium",
        description="Browser engine to use",
    )
    headless: bool = Field(
        default=True,
        description="Run browser in headless mode",
    )
    viewport_width: int = Field(
        default=1440,
        ge=320,
        le=3840,
        description="Browser viewport width in CSS pixels",
    )
    viewport_height: int = Field(
        default=900,
        ge=240,
        le=2160,
        description="Browser viewport height in CSS pixels",
    )
    device_scale_factor: float = Field(
        default=1.0,
        ge=0.5,
        le=4.0,
        description="Device pixel ratio of the browser context",
    )
    slow_mo: int = Field(
        default=0,
        ge=0,
        le=5000,
        description="Slow down browser operations by this many ms",
    )
    show_overlay: bool = Field(
        default=False,
        description="Render the agent overlay inside the page",
    )
    home_url: str = Field(
        default="https://www.google.com",
        description="Page opened by the search action without a query",
    )
    search_url: str = Field(
        default="https://www.google.com/search?q={query}",
        description="Search URL template; {query} is replaced by the url-encoded query",
    )
    navigation_timeout_ms: float = Field(
        default=30000,
        ge=1000,
        le=120000,
        description="Timeout for page navigations",
    )

    @model_validator(mode="after")
    def set_overlay_defaults(self) -> "SurfaceConfig":
        """Enable the overlay by default in headful mode."""
        if not self.headless and "show_overlay" not in self.model_fields_set:
            object.__setattr__(self, "show_overlay", True)
        return self


class StabilityConfig(BaseModel):
    """Frame stabilizer configuration."""

    poll_interval: float = Field(default=0.25, ge=0.0, le=5.0)
    timeout: float = Field(default=2.0, ge=0.0, le=30.0)
    threshold: float = Field(
        default=0.018,
        ge=0.0,
        le=1.0,
        description="Signature difference ratio under which the page counts as settled",
    )
    signature_width: int = Field(default=96, ge=8, le=512)
    signature_height: int = Field(default=60, ge=8, le=512)
    max_frame_width: int = Field(default=1440, ge=64, le=3840)
    max_frame_height: int = Field(default=900, ge=64, le=2160)
    capture_retries: int = Field(default=3, ge=1, le=10)
    capture_backoff: float = Field(default=0.15, ge=0.0, le=5.0)

    @property
    def aspect_ratio(self) -> float:
        return self.max_frame_width / self.max_frame_height


class ExecutorConfig(BaseModel):
    """Action executor readiness, drift and pacing configuration."""

    dom_ready_timeout: float = Field(default=1.2, ge=0.0, le=10.0)
    dom_idle_settle: float = Field(default=0.25, ge=0.0, le=2.0)
    drift_threshold: float = Field(
        default=0.04,
        ge=0.0,
        le=1.0,
        description="Drift ratio above which a pointer action is aborted as stale",
    )
    viewport_tolerance: float = Field(
        default=0.08,
        ge=0.0,
        le=1.0,
        description="Relative viewport mismatch tolerated before using the live viewport",
    )
    max_wait_seconds: float = Field(default=60.0, ge=0.0, le=60.0)
    safe_bottom_margin: int = Field(default=160, ge=0, le=1000)
    typing_mode: Literal["insert", "keys"] = Field(
        default="insert",
        description="Insert text atomically or synthesize per-character key events",
    )
    post_action_delay: float = Field(default=0.15, ge=0.0, le=5.0)


class LearnerConfig(BaseModel):
    """Self-improvement learner configuration."""

    enabled: bool = Field(default=True, description="Run the learner after each run")
    model: Optional[str] = Field(default=None, description="Defaults to the agent model")
    base_url: Optional[str] = Field(default=None, description="Defaults to the agent endpoint")
    api_key: Optional[str] = Field(default=None, description="Defaults to the agent key")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_general_rules: int = Field(default=20, ge=1, le=50)
    history_tail_turns: int = Field(default=12, ge=1, le=100)
    transcript_chars: int = Field(default=4000, ge=200, le=50000)
    instructions_path: Optional[Path] = Field(
        default=None,
        description="JSON file the instruction store is loaded from and saved to",
    )

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Allow the feature flag to come from the environment."""
        if "enabled" not in data or data["enabled"] is None:
            env_value = os.getenv("PAGEPILOT_LEARNER_ENABLED")
            if env_value:
                data["enabled"] = env_value.strip().lower() in {"1", "true", "yes", "on"}
        return data


class ReportingConfig(BaseModel):
    """Run trace output configuration."""

    save_traces: bool = Field(
        default=False,
        description="Write a JSON trace of every run",
    )
    traces_folder: Path = Field(
        default=Path("./traces"),
        description="Directory for run traces",
    )

    @field_validator("traces_folder", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v


class PilotConfig(BaseModel):
    """Root configuration model combining all config sections."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    surface: SurfaceConfig = Field(default_factory=SurfaceConfig)
    stability: StabilityConfig = Field(default_factory=StabilityConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    learner: LearnerConfig = Field(default_factory=LearnerConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)

    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
    required: bool = False,
) -> PilotConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path("config.json")

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in {".yaml", ".yml"}:
                import yaml
                config_data = yaml.safe_load(f) or {}
            else:
                config_data = json.load(f)
    elif required:
        raise ConfigFileNotFoundError(str(config_path))

    config = PilotConfig.model_validate(config_data)

    if cli_overrides:
        config_dict = config.model_dump()
        _apply_overrides(config_dict, cli_overrides)
        config = PilotConfig.model_validate(config_dict)

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "browser": ("surface", "browser"),
        "headless": ("surface", "headless"),
        "headful": ("surface", "headless"),  # inverted
        "max_steps": ("agent", "max_steps"),
        "model": ("agent", "model"),
        "base_url": ("agent", "base_url"),
        "learn": ("learner", "enabled"),
        "verbose": ("verbose", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        if key == "headful":
            config_dict["surface"]["headless"] = not value
            if value:
                config_dict["surface"]["show_overlay"] = True
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
