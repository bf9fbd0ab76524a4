"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowDefinitionError,
    WorkflowNotFound,
    ExecutionNotFound,
    ActionExecutionError,
    ActionRegistryError,
    ConditionEvaluationError,
    DelayConfigurationError,
    ConfigurationError,
    LoopLimitExceeded,
    StorageError,
    APIError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "WorkflowDefinitionError",
    "WorkflowNotFound",
    "ExecutionNotFound",
    "ActionExecutionError",
    "ActionRegistryError",
    "ConditionEvaluationError",
    "DelayConfigurationError",
    "ConfigurationError",
    "LoopLimitExceeded",
    "StorageError",
    "APIError",
    "setup_logging",
    "get_logger",
]
