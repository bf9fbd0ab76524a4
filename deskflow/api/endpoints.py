"""FastAPI REST endpoints for the workflow engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.execution_engine import WorkflowExecutionEngine
from ..core.exceptions import WorkflowEngineError, WorkflowNotFound, create_error_response
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..models.core import (
    ExecutionRecord,
    LogEntry,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..storage.repositories import WorkflowRepository

logger = get_logger("deskflow.api")

router = APIRouter(prefix="/api/v1", tags=["workflows"])

# Global instances (initialized by the application factory)
_workflow_repository: Optional[WorkflowRepository] = None
_execution_engine: Optional[WorkflowExecutionEngine] = None


def init_dependencies(workflow_repository: WorkflowRepository,
                      execution_engine: WorkflowExecutionEngine):
    """Initialize the global dependencies."""
    global _workflow_repository, _execution_engine
    _workflow_repository = workflow_repository
    _execution_engine = execution_engine


def get_workflow_repository() -> WorkflowRepository:
    if _workflow_repository is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow repository not initialized"
        )
    return _workflow_repository


def get_execution_engine() -> WorkflowExecutionEngine:
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def _http_error(error: WorkflowEngineError) -> HTTPException:
    return HTTPException(status_code=status_code_for_error(error), detail=create_error_response(error))


class CreateWorkflowResponse(BaseModel):
    workflow_id: str = Field(..., description="Identifier of the stored workflow")
    message: str = Field(..., description="Success message")
    validation_errors: List[str] = Field(default_factory=list, description="Structural problems")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class UpdateWorkflowResponse(CreateWorkflowResponse):
    version: int = Field(..., description="Version after the update")


class CloneWorkflowRequest(BaseModel):
    name: Optional[str] = Field(None, description="Defaults to the original name with \" (Copy)\"")


class DeleteWorkflowResponse(BaseModel):
    workflow_id: str
    cancelled_executions: int = Field(0, description="Running executions cancelled before deletion")
    deleted_executions: int = Field(0, description="Executions removed with the workflow")


class WorkflowExecutionsResponse(BaseModel):
    executions: List[ExecutionRecord] = Field(default_factory=list)
    total: int
    limit: int
    offset: int


class ExecutionDetailsResponse(BaseModel):
    execution: ExecutionRecord
    logs: List[LogEntry] = Field(default_factory=list)


class WorkflowStatusRequest(BaseModel):
    status: WorkflowStatus = Field(..., description="New activation status")


class ExecuteWorkflowRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")
    module_type: Optional[str] = Field(None, description="Defaults to the workflow's module type")
    module_item_id: Optional[str] = Field(None, description="Item that triggered the execution")


class ExecuteWorkflowResponse(BaseModel):
    execution_id: str
    status: str = "running"


class TriggerRequest(BaseModel):
    module_type: str = Field(..., description="Domain area of the event")
    trigger_type: str = Field(..., description="Event classification, e.g. ticket_created")
    payload: Dict[str, Any] = Field(default_factory=dict)
    module_item_id: Optional[str] = None


class TriggerResponse(BaseModel):
    execution_ids: List[str] = Field(default_factory=list)


class CancelExecutionResponse(BaseModel):
    execution_id: str
    cancelled: bool
    message: str


@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow definition"
)
async def create_workflow(
    definition: Dict[str, Any],
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> CreateWorkflowResponse:
    """
    Parse and store a workflow definition.

    Structural problems (such as a missing trigger) are reported but do not
    prevent storage; such workflows fail at run time.
    """
    try:
        workflow = WorkflowDefinition.parse_definition(definition)
        validation = workflow.validate_structure()
        workflow_id = repository.save(workflow)
    except WorkflowEngineError as e:
        logger.warning(f"Rejected workflow definition: {e.message}")
        raise _http_error(e)

    logger.info(f"Stored workflow '{workflow.name}' with ID: {workflow_id}")
    return CreateWorkflowResponse(
        workflow_id=workflow_id,
        message=f"Workflow '{workflow.name}' stored successfully",
        validation_errors=validation.errors,
        validation_warnings=validation.warnings
    )


@router.get("/workflows", summary="List workflows")
async def list_workflows(
    module_type: Optional[str] = None,
    tenant_id: Optional[str] = None,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> List[Dict[str, Any]]:
    try:
        return repository.list_workflows(module_type=module_type, tenant_id=tenant_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}", summary="Get a workflow definition")
async def get_workflow(
    workflow_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> Dict[str, Any]:
    try:
        workflow = repository.get(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return workflow.model_dump(mode="json", by_alias=True)


@router.put("/workflows/{workflow_id}", response_model=UpdateWorkflowResponse, summary="Replace a workflow definition")
async def update_workflow(
    workflow_id: str,
    definition: Dict[str, Any],
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> UpdateWorkflowResponse:
    """Replace the stored definition; running executions keep the version they started with."""
    try:
        workflow = WorkflowDefinition.parse_definition({**definition, "id": workflow_id})
        validation = workflow.validate_structure()
        version = repository.update(workflow_id, workflow)
    except WorkflowNotFound as e:
        logger.warning(f"Workflow not found: {workflow_id}")
        raise _http_error(e)
    except WorkflowEngineError as e:
        logger.warning(f"Rejected update of workflow {workflow_id}: {e.message}")
        raise _http_error(e)

    return UpdateWorkflowResponse(
        workflow_id=workflow_id,
        message=f"Workflow '{workflow.name}' updated to version {version}",
        validation_errors=validation.errors,
        validation_warnings=validation.warnings,
        version=version
    )


@router.delete("/workflows/{workflow_id}", response_model=DeleteWorkflowResponse, summary="Delete a workflow")
async def delete_workflow(
    workflow_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> DeleteWorkflowResponse:
    """Cancel the workflow's running executions, then delete it with its execution history."""
    try:
        if not repository.exists(workflow_id):
            raise WorkflowNotFound(workflow_id)
        cancelled = engine.cancel_workflow_executions(workflow_id)
        deleted = repository.delete(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return DeleteWorkflowResponse(
        workflow_id=workflow_id,
        cancelled_executions=cancelled,
        deleted_executions=deleted
    )


@router.post(
    "/workflows/{workflow_id}/clone",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Copy a workflow as a new draft"
)
async def clone_workflow(
    workflow_id: str,
    request: Optional[CloneWorkflowRequest] = None,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> CreateWorkflowResponse:
    try:
        clone_id = repository.clone(workflow_id, request.name if request else None)
        clone = repository.get(clone_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    logger.info(f"Cloned workflow {workflow_id} as {clone_id}")
    return CreateWorkflowResponse(workflow_id=clone_id, message=f"Workflow '{clone.name}' stored successfully")


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=WorkflowExecutionsResponse,
    summary="Execution history of a workflow"
)
async def list_workflow_executions(
    workflow_id: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    repository: WorkflowRepository = Depends(get_workflow_repository),
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowExecutionsResponse:
    try:
        if not repository.exists(workflow_id):
            raise WorkflowNotFound(workflow_id)
        executions, total = engine.list_workflow_executions(workflow_id, limit=limit, offset=offset)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return WorkflowExecutionsResponse(executions=executions, total=total, limit=limit, offset=offset)


@router.post("/workflows/{workflow_id}/status", summary="Activate or deactivate a workflow")
async def set_workflow_status(
    workflow_id: str,
    request: WorkflowStatusRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> Dict[str, Any]:
    try:
        repository.set_status(workflow_id, request.status)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"workflow_id": workflow_id, "status": request.status.value}


@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=ExecuteWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start one execution of a workflow"
)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository),
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> ExecuteWorkflowResponse:
    try:
        module_type = request.module_type or repository.get(workflow_id).module_type
        execution_id = engine.execute_workflow(
            workflow_id, request.payload, module_type, request.module_item_id
        )
    except WorkflowNotFound as e:
        logger.warning(f"Workflow not found: {workflow_id}")
        raise _http_error(e)
    except WorkflowEngineError as e:
        logger.error(f"Failed to start workflow {workflow_id}: {e.message}")
        raise _http_error(e)

    return ExecuteWorkflowResponse(execution_id=execution_id)


@router.post("/triggers", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED,
             summary="Route a domain event to matching workflows")
async def fire_trigger(
    request: TriggerRequest,
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> TriggerResponse:
    execution_ids = engine.trigger_workflow(
        request.module_type, request.trigger_type, request.payload, request.module_item_id
    )
    return TriggerResponse(execution_ids=execution_ids)


@router.get("/executions/{execution_id}", response_model=ExecutionRecord, summary="Get execution status")
async def get_execution(
    execution_id: str,
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> ExecutionRecord:
    try:
        return engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/logs", response_model=List[LogEntry], summary="Get execution logs")
async def get_execution_logs(
    execution_id: str,
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> List[LogEntry]:
    try:
        return engine.get_execution_logs(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/executions/{execution_id}/details", response_model=ExecutionDetailsResponse,
            summary="Get an execution with its logs")
async def get_execution_details(
    execution_id: str,
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> ExecutionDetailsResponse:
    try:
        return ExecutionDetailsResponse(
            execution=engine.get_execution(execution_id),
            logs=engine.get_execution_logs(execution_id)
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/executions/{execution_id}/cancel", response_model=CancelExecutionResponse,
             summary="Cancel a running execution")
async def cancel_execution(
    execution_id: str,
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> CancelExecutionResponse:
    try:
        engine.get_execution(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    cancelled = engine.cancel_execution(execution_id)
    return CancelExecutionResponse(
        execution_id=execution_id,
        cancelled=cancelled,
        message="Execution cancelled" if cancelled else "Execution is not running"
    )


@router.get("/actions", summary="List registered action types")
async def list_actions(
    engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    actions = engine.list_action_types()
    return {
        "actions": [{"action_type": name, "description": description} for name, description in sorted(actions.items())],
        "count": len(actions),
        "timestamp": datetime.utcnow().isoformat()
    }
