"""Repositories for workflow definitions, executions, logs and delay markers."""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import get_db
from .models import WorkflowModel, WorkflowExecutionModel, ExecutionLogModel, ExecutionStateModel
from ..models.core import (
    WorkflowDefinition,
    WorkflowStatus,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    DelayMarker,
)
from ..core.exceptions import StorageError, TransientError, WorkflowNotFound, ExecutionNotFound
from ..core.error_recovery import with_retry, RetryConfig
from ..core.logging import get_logger

logger = get_logger(__name__)

_write_retry = RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0,
                           retryable_exceptions=[StorageError, TransientError])


@contextmanager
def session_scope(operation: str, table: str):
    """Yield a session, committing on success and mapping failures to StorageError."""
    db: Session = next(get_db())
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {operation}: {str(e)}")
        raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table=table)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class WorkflowRepository:
    """Stores and loads workflow definitions."""

    @staticmethod
    def _apply(model: WorkflowModel, definition: WorkflowDefinition) -> None:
        model.tenant_id = definition.tenant_id
        model.name = definition.name
        model.description = definition.description
        model.module_type = definition.module_type
        model.status = definition.status.value
        model.nodes = [node.model_dump(by_alias=True, exclude_none=True) for node in definition.nodes]
        model.connections = [conn.model_dump(by_alias=True, exclude_none=True) for conn in definition.connections]
        model.variables = [var.model_dump(by_alias=True) for var in definition.variables]
        model.version = definition.version

    def save(self, definition: WorkflowDefinition) -> str:
        """Insert or replace a workflow definition and return its id."""
        workflow_id = definition.id or str(uuid.uuid4())
        with session_scope("save workflow", "workflows") as db:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                model = WorkflowModel(id=workflow_id)
                db.add(model)
            self._apply(model, definition)
        logger.info(f"Saved workflow {workflow_id} ({definition.name})")
        return workflow_id

    def update(self, workflow_id: str, definition: WorkflowDefinition) -> int:
        """
        Replace a stored definition and bump its version.

        Returns:
            The new version number

        Raises:
            WorkflowNotFound: If no workflow has this id
        """
        with session_scope("update workflow", "workflows") as db:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                raise WorkflowNotFound(workflow_id)
            version = (model.version or 1) + 1
            self._apply(model, definition.model_copy(update={"version": version}))
        logger.info(f"Updated workflow {workflow_id} to version {version}")
        return version

    def delete(self, workflow_id: str) -> int:
        """
        Delete a workflow together with its executions, their logs and delay markers.

        Returns:
            Number of executions removed

        Raises:
            WorkflowNotFound: If no workflow has this id
        """
        with session_scope("delete workflow", "workflows") as db:
            if not db.query(WorkflowModel.id).filter(WorkflowModel.id == workflow_id).first():
                raise WorkflowNotFound(workflow_id)

            execution_ids = [
                row.id for row in
                db.query(WorkflowExecutionModel.id).filter(WorkflowExecutionModel.workflow_id == workflow_id).all()
            ]
            if execution_ids:
                (
                    db.query(ExecutionStateModel)
                    .filter(ExecutionStateModel.execution_id.in_(execution_ids))
                    .delete(synchronize_session=False)
                )
                (
                    db.query(ExecutionLogModel)
                    .filter(ExecutionLogModel.execution_id.in_(execution_ids))
                    .delete(synchronize_session=False)
                )
                (
                    db.query(WorkflowExecutionModel)
                    .filter(WorkflowExecutionModel.id.in_(execution_ids))
                    .delete(synchronize_session=False)
                )
            db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).delete(synchronize_session=False)
        logger.info(f"Deleted workflow {workflow_id} and {len(execution_ids)} execution(s)")
        return len(execution_ids)

    def clone(self, workflow_id: str, name: Optional[str] = None) -> str:
        """Store a draft copy of a workflow under a new id and return that id."""
        original = self.get(workflow_id)
        copy = original.model_copy(update={
            "id": None,
            "name": name or f"{original.name} (Copy)",
            "status": WorkflowStatus.DRAFT,
            "version": 1,
        })
        return self.save(copy)

    def exists(self, workflow_id: str) -> bool:
        with session_scope("check workflow", "workflows") as db:
            return db.query(WorkflowModel.id).filter(WorkflowModel.id == workflow_id).first() is not None

    def save_raw(self, data: Dict[str, Any]) -> str:
        """Store a definition row without parsing it."""
        workflow_id = data.get("id") or str(uuid.uuid4())
        with session_scope("save workflow", "workflows") as db:
            db.merge(WorkflowModel(
                id=workflow_id,
                tenant_id=data.get("tenant_id", ""),
                name=data.get("name", ""),
                description=data.get("description"),
                module_type=data.get("module_type", ""),
                status=data.get("status", WorkflowStatus.DRAFT.value),
                nodes=data.get("nodes", []),
                connections=data.get("connections", []),
                variables=data.get("variables", []),
                version=data.get("version", 1),
            ))
        return workflow_id

    def get(self, workflow_id: str) -> WorkflowDefinition:
        """
        Load and parse a workflow.

        Raises:
            WorkflowNotFound: If no workflow has this id
            WorkflowDefinitionError: If the stored definition is malformed
        """
        with session_scope("load workflow", "workflows") as db:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                raise WorkflowNotFound(workflow_id)
            data = model.to_definition_dict()
        return WorkflowDefinition.parse_definition(data)

    def find_active(self, module_type: str) -> List[Dict[str, Any]]:
        """Unparsed rows of all active workflows attached to ``module_type``."""
        with session_scope("find active workflows", "workflows") as db:
            models = (
                db.query(WorkflowModel)
                .filter(WorkflowModel.module_type == module_type)
                .filter(WorkflowModel.status == WorkflowStatus.ACTIVE.value)
                .order_by(WorkflowModel.created_at)
                .all()
            )
            return [model.to_definition_dict() for model in models]

    def list_workflows(self, module_type: Optional[str] = None,
                       tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with session_scope("list workflows", "workflows") as db:
            query = db.query(WorkflowModel)
            if module_type:
                query = query.filter(WorkflowModel.module_type == module_type)
            if tenant_id:
                query = query.filter(WorkflowModel.tenant_id == tenant_id)
            return [
                {
                    "id": model.id,
                    "tenant_id": model.tenant_id,
                    "name": model.name,
                    "module_type": model.module_type,
                    "status": model.status,
                    "node_count": len(model.nodes or []),
                    "created_at": model.created_at,
                }
                for model in query.order_by(WorkflowModel.created_at).all()
            ]

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        with session_scope("update workflow status", "workflows") as db:
            model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
            if model is None:
                raise WorkflowNotFound(workflow_id)
            model.status = WorkflowStatus(status).value
        logger.info(f"Workflow {workflow_id} status set to {WorkflowStatus(status).value}")


class ExecutionRepository:
    """Persists execution records and resumable delay markers."""

    @with_retry(_write_retry)
    def create(self, workflow_id: str, tenant_id: str, trigger_data: Dict[str, Any],
               module_type: str, module_item_id: Optional[str] = None) -> str:
        execution_id = str(uuid.uuid4())
        with session_scope("create execution", "workflow_executions") as db:
            db.add(WorkflowExecutionModel(
                id=execution_id,
                workflow_id=workflow_id,
                tenant_id=tenant_id,
                status=ExecutionStatusEnum.RUNNING.value,
                trigger_data=trigger_data or {},
                module_type=module_type,
                module_item_id=module_item_id,
                started_at=datetime.utcnow(),
            ))
        return execution_id

    @staticmethod
    def _to_record(model: WorkflowExecutionModel) -> ExecutionRecord:
        return ExecutionRecord(
            id=model.id,
            workflow_id=model.workflow_id,
            tenant_id=model.tenant_id,
            status=ExecutionStatusEnum(model.status),
            trigger_data=model.trigger_data or {},
            module_type=model.module_type,
            module_item_id=model.module_item_id,
            error_message=model.error_message,
            execution_time_ms=model.execution_time_ms,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )

    def get(self, execution_id: str) -> ExecutionRecord:
        with session_scope("load execution", "workflow_executions") as db:
            model = db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).first()
            if model is None:
                raise ExecutionNotFound(execution_id)
            return self._to_record(model)

    def list_for_workflow(self, workflow_id: str, limit: int = 10,
                          offset: int = 0) -> Tuple[List[ExecutionRecord], int]:
        """One page of a workflow's executions, newest first, with the total count."""
        with session_scope("list workflow executions", "workflow_executions") as db:
            query = db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.workflow_id == workflow_id)
            total = query.count()
            models = (
                query.order_by(WorkflowExecutionModel.started_at.desc(), WorkflowExecutionModel.id)
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [self._to_record(model) for model in models], total

    @with_retry(_write_retry)
    def set_status(self, execution_id: str, status: ExecutionStatusEnum,
                   error_message: Optional[str] = None,
                   execution_time_ms: Optional[int] = None) -> None:
        status = ExecutionStatusEnum(status)
        with session_scope("update execution status", "workflow_executions") as db:
            model = db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).first()
            if model is None:
                raise ExecutionNotFound(execution_id)
            model.status = status.value
            if error_message is not None:
                model.error_message = error_message
            if execution_time_ms is not None:
                model.execution_time_ms = execution_time_ms
            if status.is_terminal:
                model.completed_at = datetime.utcnow()

    @with_retry(_write_retry)
    def save_delay_marker(self, execution_id: str, node_id: str, resume_at: datetime,
                          context: Dict[str, Any]) -> int:
        """Persist one scheduled continuation and return its marker id."""
        with session_scope("save delay marker", "workflow_execution_state") as db:
            model = ExecutionStateModel(
                execution_id=execution_id,
                node_id=node_id,
                resume_at=resume_at,
                context=context,
            )
            db.add(model)
            db.flush()
            return model.id

    def clear_delay_marker(self, marker_id: int) -> None:
        with session_scope("clear delay marker", "workflow_execution_state") as db:
            db.query(ExecutionStateModel).filter(ExecutionStateModel.id == marker_id).delete()

    def clear_delay_markers(self, execution_id: str) -> int:
        with session_scope("clear delay markers", "workflow_execution_state") as db:
            return (
                db.query(ExecutionStateModel)
                .filter(ExecutionStateModel.execution_id == execution_id)
                .delete()
            )

    def list_delay_markers(self, execution_id: Optional[str] = None) -> List[DelayMarker]:
        """Pending markers, soonest first; ties keep the order they were saved in."""
        with session_scope("list delay markers", "workflow_execution_state") as db:
            query = db.query(ExecutionStateModel)
            if execution_id:
                query = query.filter(ExecutionStateModel.execution_id == execution_id)
            return [
                DelayMarker(
                    id=model.id,
                    execution_id=model.execution_id,
                    node_id=model.node_id,
                    resume_at=model.resume_at,
                    context=model.context or {},
                )
                for model in query.order_by(ExecutionStateModel.resume_at, ExecutionStateModel.id).all()
            ]


class LogRepository:
    """Append-only store of execution log entries."""

    @with_retry(_write_retry)
    def append(self, execution_id: str, tenant_id: str, entry: LogEntry) -> None:
        with session_scope("append execution log", "workflow_execution_logs") as db:
            db.add(ExecutionLogModel(
                execution_id=execution_id,
                tenant_id=tenant_id,
                timestamp=entry.timestamp,
                level=entry.level.value,
                message=entry.message,
                node_id=entry.node_id,
                execution_path=list(entry.execution_path),
            ))

    def list_for_execution(self, execution_id: str) -> List[LogEntry]:
        with session_scope("list execution logs", "workflow_execution_logs") as db:
            models = (
                db.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.id)
                .all()
            )
            return [
                LogEntry(
                    timestamp=model.timestamp,
                    level=model.level,
                    message=model.message,
                    node_id=model.node_id or "",
                    execution_path=model.execution_path or [],
                )
                for model in models
            ]
