"""Configuration module for the pagepilot agent loop."""
from config.models import (
    AgentConfig,
    ExecutorConfig,
    LearnerConfig,
    PilotConfig,
    ReportingConfig,
    StabilityConfig,
    SurfaceConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "ExecutorConfig",
    "LearnerConfig",
    "PilotConfig",
    "ReportingConfig",
    "StabilityConfig",
    "SurfaceConfig",
    "load_config",
]
