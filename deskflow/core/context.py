"""Per-execution state and the execution log writer."""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .exceptions import StorageError
from .logging import get_logger, log_with_context
from ..models.core import ExecutionStatusEnum, LogEntry, LogSeverity, WorkflowDefinition

logger = get_logger(__name__)
execution_logger = get_logger("deskflow.execution")

_PY_LEVELS = {
    LogSeverity.INFO: logging.INFO,
    LogSeverity.WARNING: logging.WARNING,
    LogSeverity.ERROR: logging.ERROR,
}


class ExecutionContext:
    """
    Live state of one execution.

    Owned by exactly one execution. ``lock`` serialises graph traversal
    (the main branch and every delay continuation); ``status_lock`` guards
    status transitions and the pending-branch counter and is never held
    while nodes run.
    """

    def __init__(
        self,
        execution_id: str,
        workflow: WorkflowDefinition,
        variables: Dict[str, Any],
        module_type: str,
        module_item_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
    ):
        self.execution_id = execution_id
        self.workflow = workflow
        self.tenant_id = workflow.tenant_id
        self.module_type = module_type
        self.module_item_id = module_item_id
        self.trigger_data = dict(trigger_data or {})

        self.variables: Dict[str, Any] = variables
        self.visited: Set[str] = set()
        self.path: List[str] = []
        self.loop_counters: Dict[str, int] = {}
        self.active_loops: Set[str] = set()
        self.timers: Dict[str, List[Any]] = {}
        self.logs: List[LogEntry] = []

        self.status = ExecutionStatusEnum.RUNNING
        self.error: Optional[str] = None
        self.pending_branches = 1
        self.started_monotonic = time.monotonic()

        self.lock = threading.RLock()
        self.status_lock = threading.Lock()
        self.cancel_event = threading.Event()
        self.done_event = threading.Event()

    @property
    def is_active(self) -> bool:
        return self.status == ExecutionStatusEnum.RUNNING and not self.cancel_event.is_set()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serialisable state needed to resume a delayed continuation."""
        return {
            "variables": self.variables,
            "visited": sorted(self.visited),
            "path": list(self.path),
            "loop_counters": dict(self.loop_counters),
            "module_type": self.module_type,
            "module_item_id": self.module_item_id,
            "trigger_data": self.trigger_data,
        }

    @classmethod
    def from_snapshot(cls, execution_id: str, workflow: WorkflowDefinition,
                      snapshot: Dict[str, Any]) -> 'ExecutionContext':
        ctx = cls(
            execution_id=execution_id,
            workflow=workflow,
            variables=dict(snapshot.get("variables") or {}),
            module_type=snapshot.get("module_type") or workflow.module_type,
            module_item_id=snapshot.get("module_item_id"),
            trigger_data=snapshot.get("trigger_data"),
        )
        ctx.visited = set(snapshot.get("visited") or [])
        ctx.path = list(snapshot.get("path") or [])
        ctx.loop_counters = dict(snapshot.get("loop_counters") or {})
        return ctx


class ExecutionLogger:
    """Appends execution log entries to the context, the process log and storage."""

    def __init__(self, log_repository=None):
        self.log_repository = log_repository

    def log(self, ctx: ExecutionContext, level: LogSeverity, message: str,
            node_id: Optional[str] = None) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.utcnow(),
            level=level,
            message=message,
            node_id=node_id or (ctx.path[-1] if ctx.path else ""),
            execution_path=list(ctx.path),
        )
        ctx.logs.append(entry)

        log_with_context(
            execution_logger, _PY_LEVELS[level], message,
            execution_id=ctx.execution_id,
            workflow_id=ctx.workflow.id,
            tenant_id=ctx.tenant_id,
            node_id=entry.node_id,
        )

        if self.log_repository is not None:
            try:
                self.log_repository.append(ctx.execution_id, ctx.tenant_id, entry)
            except StorageError as e:
                logger.error(f"Failed to persist log entry for execution {ctx.execution_id}: {e.message}")
        return entry

    def info(self, ctx: ExecutionContext, message: str, node_id: Optional[str] = None) -> LogEntry:
        return self.log(ctx, LogSeverity.INFO, message, node_id)

    def warning(self, ctx: ExecutionContext, message: str, node_id: Optional[str] = None) -> LogEntry:
        return self.log(ctx, LogSeverity.WARNING, message, node_id)

    def error(self, ctx: ExecutionContext, message: str, node_id: Optional[str] = None) -> LogEntry:
        return self.log(ctx, LogSeverity.ERROR, message, node_id)
