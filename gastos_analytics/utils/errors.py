"""Custom exceptions for the analytics pipeline"""


class AnalyticsPipelineError(Exception):
    """Base exception for analytics pipeline errors"""
    pass


class StoreConnectionError(AnalyticsPipelineError):
    """Record store connectivity errors (fatal for a run)"""
    pass


class RateSourceError(AnalyticsPipelineError):
    """Currency rate endpoint errors"""
    pass


class StateManagerError(AnalyticsPipelineError):
    """State management errors"""
    pass


class ConfigurationError(AnalyticsPipelineError):
    """Configuration loading errors"""
    pass


class StageExecutionError(AnalyticsPipelineError):
    """Unrecoverable failure inside a pipeline stage"""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage


class RunBudgetExceeded(AnalyticsPipelineError):
    """Wall-clock budget for a run was exhausted between batches"""
    pass
