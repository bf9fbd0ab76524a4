"""Routes domain events to the active workflows whose trigger matches."""

from typing import Any, Dict, List, Optional

from ..models.core import WorkflowDefinition
from .exceptions import WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class TriggerRouter:
    """Starts one execution per matching active workflow; never raises on bad workflows."""

    def __init__(self, workflow_repository, engine):
        self.workflow_repository = workflow_repository
        self.engine = engine

    def route(self, module_type: str, trigger_type: str,
              payload: Optional[Dict[str, Any]] = None,
              module_item_id: Optional[str] = None) -> List[str]:
        """
        Start executions for every active ``module_type`` workflow triggered by ``trigger_type``.

        Returns:
            Ids of the started executions, in workflow order
        """
        execution_ids = []
        try:
            rows = self.workflow_repository.find_active(module_type)
        except WorkflowEngineError as e:
            logger.error(f"Failed to load active workflows for {module_type}: {e.message}")
            return execution_ids

        for row in rows:
            workflow_id = row.get("id")
            try:
                workflow = WorkflowDefinition.parse_definition(row)
            except WorkflowEngineError as e:
                logger.warning(f"Skipping malformed workflow {workflow_id}: {e.message}")
                continue

            if workflow.find_trigger_node(trigger_type) is None:
                continue

            try:
                execution_id = self.engine.start_execution(workflow, payload, module_type, module_item_id)
            except WorkflowEngineError as e:
                logger.error(f"Failed to start workflow {workflow_id}: {e.message}")
                continue

            execution_ids.append(execution_id)

        logger.info(f"Trigger {module_type}/{trigger_type} started {len(execution_ids)} execution(s)")
        return execution_ids
