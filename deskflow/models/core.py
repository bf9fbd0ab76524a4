"""Core Pydantic models for the workflow engine."""

import json
import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..core.exceptions import WorkflowDefinitionError


class NodeType(str, Enum):
    """Enumeration of workflow node types."""
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"
    LOOP = "loop"
    JUNCTION = "junction"


class WorkflowStatus(str, Enum):
    """Activation status of a stored workflow."""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatusEnum.RUNNING


class LogSeverity(str, Enum):
    """Severity of an execution log entry."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class _DefinitionModel(BaseModel):
    """Base for definition parts stored as camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ConditionDefinition(_DefinitionModel):
    """A single comparison evaluated by a condition node."""
    field: str = Field(..., description="Literal or $variable reference")
    operator: str = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Literal or $variable reference")


class BaseNode(_DefinitionModel):
    """Fields shared by every node type."""
    id: str = Field(..., description="Unique identifier for the node")
    label: Optional[str] = Field(None, description="Display label")
    description: Optional[str] = Field(None, description="Node description")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()


class TriggerNode(BaseNode):
    type: Literal["trigger"] = "trigger"
    trigger_type: str = Field(..., description="Trigger-type tag used for event matching")


class ConditionNode(BaseNode):
    type: Literal["condition"] = "condition"
    condition: ConditionDefinition

    @model_validator(mode='before')
    @classmethod
    def condition_from_config(cls, data):
        """Accept the comparison either at top level or inside ``config``."""
        if isinstance(data, dict) and "condition" not in data:
            config = data.get("config") or {}
            if "field" in config and "operator" in config:
                data = {**data, "condition": {key: config.get(key) for key in ("field", "operator", "value")}}
        return data


class ActionNode(BaseNode):
    type: Literal["action"] = "action"
    action_type: str = Field(..., description="Action-type tag resolved by the dispatcher")

    @field_validator('action_type')
    @classmethod
    def validate_action_type(cls, action_type):
        if not action_type or not action_type.strip():
            raise ValueError("Action type cannot be empty")
        return action_type.strip()


class DelayNode(BaseNode):
    type: Literal["delay"] = "delay"
    amount: Any = Field(..., description="Literal amount or $variable reference")
    unit: str = Field("minutes", description="seconds, minutes, hours or days")

    @model_validator(mode='before')
    @classmethod
    def amount_from_config(cls, data):
        """Fall back to ``config.duration`` (minutes) when no amount is given."""
        if isinstance(data, dict) and "amount" not in data:
            config = data.get("config") or {}
            if "duration" in config:
                data = {**data, "amount": config["duration"], "unit": data.get("unit", "minutes")}
        return data


class LoopNode(BaseNode):
    type: Literal["loop"] = "loop"
    iterations: Optional[int] = Field(None, description="Maximum iterations; unbounded when absent")

    @model_validator(mode='before')
    @classmethod
    def iterations_from_config(cls, data):
        if isinstance(data, dict) and data.get("iterations") is None:
            config = data.get("config") or {}
            if config.get("maxIterations") is not None:
                data = {**data, "iterations": config["maxIterations"]}
        return data

    @field_validator('iterations')
    @classmethod
    def validate_iterations(cls, iterations):
        if iterations is not None and iterations < 0:
            raise ValueError("Loop iterations cannot be negative")
        return iterations or None


class JunctionNode(BaseNode):
    type: Literal["junction"] = "junction"
    junction_type: str = Field("split", description="Informational fan-out tag")


WorkflowNode = Annotated[
    Union[TriggerNode, ConditionNode, ActionNode, DelayNode, LoopNode, JunctionNode],
    Field(discriminator="type"),
]


class ConnectionDefinition(_DefinitionModel):
    """Directed edge between two workflow nodes."""
    id: Optional[str] = Field(None, description="Connection identifier")
    source_id: str = Field(..., description="Source node ID")
    target_id: str = Field(..., description="Target node ID")
    label: Optional[str] = Field(None, description="true/false for conditions, body/exit for loops")


class VariableDefinition(_DefinitionModel):
    """Declared workflow variable with an optional default."""
    name: str = Field(..., description="Variable name")
    type: Optional[str] = Field(None, description="Declared value type")
    default_value: Any = Field(None, description="Default value")
    description: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not name or not re.match(r'^[a-zA-Z0-9_]+$', name):
            raise ValueError("Variable names may contain only letters, digits and underscores")
        return name


class WorkflowDefinition(BaseModel):
    """Complete, parsed definition of a tenant-scoped automation workflow."""
    id: Optional[str] = Field(None, description="Workflow ID")
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    module_type: str = Field(..., description="Domain area the workflow attaches to")
    status: WorkflowStatus = Field(WorkflowStatus.DRAFT, description="Activation status")
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[ConnectionDefinition] = Field(default_factory=list)
    variables: List[VariableDefinition] = Field(default_factory=list)
    version: int = Field(1, description="Definition version")

    @field_validator('nodes', 'connections', 'variables', mode='before')
    @classmethod
    def decode_json_lists(cls, value):
        """Stored rows may carry the graph parts as JSON text."""
        if value is None:
            return []
        if isinstance(value, str):
            return json.loads(value or "[]")
        return value

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @classmethod
    def parse_definition(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        """Parse a stored workflow row, raising WorkflowDefinitionError on malformed input."""
        try:
            return cls.model_validate(data)
        except (ValidationError, ValueError) as e:
            raise WorkflowDefinitionError(
                f"Malformed workflow definition: {e}",
                workflow_id=data.get("id") if isinstance(data, dict) else None
            )

    def get_node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_connections(self, node_id: str) -> List[ConnectionDefinition]:
        """Outgoing connections of a node in declaration order."""
        return [conn for conn in self.connections if conn.source_id == node_id]

    def find_connection(self, node_id: str, label: str) -> Optional[ConnectionDefinition]:
        for conn in self.connections:
            if conn.source_id == node_id and conn.label == label:
                return conn
        return None

    def find_trigger_node(self, trigger_type: Optional[str] = None) -> Optional[TriggerNode]:
        """Return the trigger node, optionally only if its trigger type matches."""
        for node in self.nodes:
            if node.type == NodeType.TRIGGER.value:
                if trigger_type is None or node.trigger_type == trigger_type:
                    return node
        return None

    def variable_defaults(self) -> Dict[str, Any]:
        return {
            variable.name: variable.default_value
            for variable in self.variables
            if variable.default_value is not None
        }

    def validate_structure(self) -> ValidationResult:
        """Report structural problems without rejecting the definition."""
        errors = []
        warnings = []

        trigger_count = sum(1 for node in self.nodes if node.type == NodeType.TRIGGER.value)
        if trigger_count == 0:
            errors.append("Workflow has no trigger node")
        elif trigger_count > 1:
            errors.append(f"Workflow has {trigger_count} trigger nodes; exactly one is allowed")

        node_ids = {node.id for node in self.nodes}
        for conn in self.connections:
            if conn.source_id not in node_ids:
                errors.append(f"Connection references non-existent source node: {conn.source_id}")
            if conn.target_id not in node_ids:
                errors.append(f"Connection references non-existent target node: {conn.target_id}")

        for node in self.nodes:
            labels = {conn.label for conn in self.outgoing_connections(node.id)}
            if node.type == NodeType.CONDITION.value and not labels & {"true", "false"}:
                warnings.append(f"Condition node {node.id} has no true/false connections")
            elif node.type == NodeType.LOOP.value and "body" not in labels:
                warnings.append(f"Loop node {node.id} has no body connection")

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )


class ExecutionRecord(BaseModel):
    """Persisted state of one workflow execution."""
    id: str = Field(..., description="Execution ID")
    workflow_id: str = Field(..., description="Executed workflow")
    tenant_id: str = Field(..., description="Owning tenant")
    status: ExecutionStatusEnum = Field(..., description="Current execution status")
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    module_type: str = Field(..., description="Module type of the triggering event")
    module_item_id: Optional[str] = Field(None, description="Item that triggered the execution")
    error_message: Optional[str] = Field(None, description="Error message if execution failed")
    execution_time_ms: Optional[int] = Field(None, description="Elapsed wall-clock time")
    started_at: datetime = Field(..., description="Timestamp when execution started")
    completed_at: Optional[datetime] = Field(None, description="Timestamp when execution ended")


class LogEntry(BaseModel):
    """Execution log entry."""
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    level: LogSeverity = Field(..., description="Severity")
    message: str = Field(..., description="Log message")
    node_id: str = Field("", description="Node active when the entry was emitted")
    execution_path: List[str] = Field(default_factory=list, description="Node path taken so far")


class DelayMarker(BaseModel):
    """Resumable marker persisted for one pending delay continuation."""
    id: Optional[int] = None
    execution_id: str
    node_id: str
    resume_at: datetime
    context: Dict[str, Any] = Field(default_factory=dict)
