"""Utility modules"""

from .config_loader import load_config, save_config, get_stage_config
from .errors import (
    AnalyticsPipelineError,
    StoreConnectionError,
    RateSourceError,
    StateManagerError,
    ConfigurationError,
    StageExecutionError,
    RunBudgetExceeded
)

__all__ = [
    "load_config",
    "save_config",
    "get_stage_config",
    "AnalyticsPipelineError",
    "StoreConnectionError",
    "RateSourceError",
    "StateManagerError",
    "ConfigurationError",
    "StageExecutionError",
    "RunBudgetExceeded"
]
