"""Configuration module for the prompt runner."""
from config.models import (
    HistoryConfig,
    RunnerConfig,
    StreamConfig,
    load_config,
)

__all__ = [
    "HistoryConfig",
    "RunnerConfig",
    "StreamConfig",
    "load_config",
]
