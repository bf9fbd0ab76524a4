"""Data models for the workflow engine."""

from .core import (
    NodeType,
    WorkflowStatus,
    ExecutionStatusEnum,
    LogSeverity,
    ValidationResult,
    ConditionDefinition,
    TriggerNode,
    ConditionNode,
    ActionNode,
    DelayNode,
    LoopNode,
    JunctionNode,
    ConnectionDefinition,
    VariableDefinition,
    WorkflowDefinition,
    ExecutionRecord,
    LogEntry,
    DelayMarker,
)

__all__ = [
    "NodeType",
    "WorkflowStatus",
    "ExecutionStatusEnum",
    "LogSeverity",
    "ValidationResult",
    "ConditionDefinition",
    "TriggerNode",
    "ConditionNode",
    "ActionNode",
    "DelayNode",
    "LoopNode",
    "JunctionNode",
    "ConnectionDefinition",
    "VariableDefinition",
    "WorkflowDefinition",
    "ExecutionRecord",
    "LogEntry",
    "DelayMarker",
]
