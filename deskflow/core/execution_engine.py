"""Execution engine that walks workflow graphs in reaction to domain events."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    DelayMarker,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    NodeType,
    WorkflowDefinition,
)
from .actions import ActionDispatcher
from .conditions import evaluate_condition
from .context import ExecutionContext, ExecutionLogger
from .exceptions import (
    ConditionEvaluationError,
    DelayConfigurationError,
    ExecutionNotFound,
    LoopLimitExceeded,
    StorageError,
    WorkflowEngineError,
)
from .logging import get_logger, log_context
from .scheduler import DelayScheduler
from .variables import evaluate_expression, initialize_variables

logger = get_logger(__name__)

UNIT_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


def _utc_from_timestamp(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


class WorkflowExecutionEngine:
    """Runs workflow executions on a thread pool.

    Each execution owns one ExecutionContext. Traversal of that context is
    serialised by its re-entrant lock, so the main branch and every delay
    continuation see a single writer. Delay continuations are scheduled
    through a DelayScheduler and persisted as resumable markers.
    """

    def __init__(
        self,
        workflow_repository,
        execution_repository,
        log_repository=None,
        action_dispatcher: Optional[ActionDispatcher] = None,
        scheduler: Optional[DelayScheduler] = None,
        max_concurrent_executions: int = 10,
        max_loop_iterations: Optional[int] = 10000,
    ):
        """Initialize the execution engine.

        Args:
            workflow_repository: Loads workflow definitions
            execution_repository: Persists execution records and delay markers
            log_repository: Optional durable mirror for execution log entries
            action_dispatcher: Handler registry for action nodes
            scheduler: Timer source for delay nodes
            max_concurrent_executions: Worker threads available to traversals
            max_loop_iterations: Safety cap for loop nodes, None for no cap
        """
        self.workflow_repository = workflow_repository
        self.execution_repository = execution_repository
        self.actions = action_dispatcher or ActionDispatcher()
        self.scheduler = scheduler or DelayScheduler()
        self.max_loop_iterations = max_loop_iterations
        self.log = ExecutionLogger(log_repository)
        self._router = None

        self._contexts: Dict[str, ExecutionContext] = {}
        self._contexts_lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_executions,
            thread_name_prefix="deskflow-exec"
        )

        self._node_handlers = {
            NodeType.TRIGGER.value: self._handle_trigger,
            NodeType.CONDITION.value: self._handle_condition,
            NodeType.ACTION.value: self._handle_action,
            NodeType.DELAY.value: self._handle_delay,
            NodeType.LOOP.value: self._handle_loop,
            NodeType.JUNCTION.value: self._handle_junction,
        }

        logger.info(f"WorkflowExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    # Entry points

    def execute_workflow(self, workflow_id: str, payload: Optional[Dict[str, Any]],
                         module_type: str, module_item_id: Optional[str] = None) -> str:
        """
        Start one execution of a stored workflow.

        Returns:
            The new execution id; traversal continues in the background

        Raises:
            WorkflowNotFound: If the workflow does not exist
            WorkflowDefinitionError: If the stored definition is malformed
        """
        workflow = self.workflow_repository.get(workflow_id)
        return self.start_execution(workflow, payload, module_type, module_item_id)

    def trigger_workflow(self, module_type: str, trigger_type: str,
                         payload: Optional[Dict[str, Any]] = None,
                         module_item_id: Optional[str] = None) -> List[str]:
        """Start every active workflow of ``module_type`` whose trigger matches."""
        if self._router is None:
            from .trigger_router import TriggerRouter
            self._router = TriggerRouter(self.workflow_repository, self)
        return self._router.route(module_type, trigger_type, payload, module_item_id)

    def start_execution(self, workflow: WorkflowDefinition, payload: Optional[Dict[str, Any]],
                        module_type: str, module_item_id: Optional[str] = None) -> str:
        """Create the execution record and hand the trigger node to a worker."""
        payload = dict(payload or {})
        execution_id = self.execution_repository.create(
            workflow.id, workflow.tenant_id, payload, module_type, module_item_id
        )

        ctx = ExecutionContext(
            execution_id=execution_id,
            workflow=workflow,
            variables=initialize_variables(payload, workflow.variables),
            module_type=module_type,
            module_item_id=module_item_id,
            trigger_data=payload,
        )
        with self._contexts_lock:
            self._contexts[execution_id] = ctx

        logger.info(f"Started execution {execution_id} of workflow {workflow.id}")
        self.log.info(ctx, f"Workflow execution started: {workflow.name}")

        trigger = workflow.find_trigger_node()
        if trigger is None:
            message = "No trigger node found in workflow"
            self.log.error(ctx, message)
            self._fail(ctx, message)
            return execution_id

        try:
            self._executor.submit(self._run_branch, ctx, trigger.id)
        except RuntimeError as e:
            message = f"Execution could not be scheduled: {e}"
            self.log.error(ctx, message)
            self._fail(ctx, message)

        return execution_id

    # Queries and control

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        return self.execution_repository.get(execution_id)

    def list_workflow_executions(self, workflow_id: str, limit: int = 10,
                                 offset: int = 0) -> Tuple[List[ExecutionRecord], int]:
        return self.execution_repository.list_for_workflow(workflow_id, limit=limit, offset=offset)

    def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        """Persisted log entries of an execution, oldest first."""
        self.execution_repository.get(execution_id)
        if self.log.log_repository is None:
            with self._contexts_lock:
                ctx = self._contexts.get(execution_id)
            return list(ctx.logs) if ctx is not None else []
        return self.log.log_repository.list_for_execution(execution_id)

    def get_active_executions(self) -> List[str]:
        with self._contexts_lock:
            return [execution_id for execution_id, ctx in self._contexts.items() if ctx.is_active]

    def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionStatusEnum:
        """Block until the execution is terminal or ``timeout`` elapses; return its status."""
        with self._contexts_lock:
            ctx = self._contexts.get(execution_id)
        if ctx is not None:
            ctx.done_event.wait(timeout)
            return ctx.status
        return self.execution_repository.get(execution_id).status

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a running execution and its pending delays.

        Returns:
            True if the execution was running and is now cancelled
        """
        with self._contexts_lock:
            ctx = self._contexts.get(execution_id)
        if ctx is None:
            logger.warning(f"Attempted to cancel non-active execution: {execution_id}")
            return False

        with ctx.status_lock:
            if ctx.status != ExecutionStatusEnum.RUNNING:
                return False
            ctx.status = ExecutionStatusEnum.CANCELLED
            ctx.error = "Execution cancelled"
            ctx.cancel_event.set()

        self._cancel_timers(ctx, clear_markers=True)
        self.log.warning(ctx, "Workflow execution cancelled")
        self._finalize(ctx)
        logger.info(f"Cancelled workflow execution: {execution_id}")
        return True

    def cancel_workflow_executions(self, workflow_id: str) -> int:
        """Cancel every running execution of a workflow; returns how many were cancelled."""
        with self._contexts_lock:
            execution_ids = [
                execution_id for execution_id, ctx in self._contexts.items() if ctx.workflow.id == workflow_id
            ]
        return sum(1 for execution_id in execution_ids if self.cancel_execution(execution_id))

    def register_action_handler(self, action_type: str, handler, description: str = "") -> None:
        self.actions.register_handler(action_type, handler, description)

    def list_action_types(self) -> Dict[str, str]:
        return self.actions.list_action_types()

    def resume_pending_delays(self) -> int:
        """
        Reschedule persisted delay markers, e.g. after a restart.

        Every marker of an execution is rescheduled as its own continuation.
        Markers of executions that are no longer running are deleted.

        Returns:
            Number of continuations rescheduled
        """
        with self._contexts_lock:
            live = set(self._contexts)

        pending: Dict[str, List[DelayMarker]] = {}
        for marker in self.execution_repository.list_delay_markers():
            if marker.execution_id not in live:
                pending.setdefault(marker.execution_id, []).append(marker)

        resumed = 0
        now = _utc_from_timestamp(self.scheduler.now())
        for execution_id, markers in pending.items():
            ctx = self._rebuild_context(execution_id, markers)
            if ctx is None:
                continue

            with ctx.lock:
                for marker in markers:
                    remaining = max(0.0, (marker.resume_at - now).total_seconds())
                    self.log.info(ctx, f"Resuming delay after restart: {remaining:.0f}s remaining", marker.node_id)
                    self._schedule_continuation(ctx, marker.node_id, remaining, marker.id)
                    resumed += 1

            # release the branch the rebuilt context holds while its continuations are scheduled
            self._branch_finished(ctx)

        if resumed:
            logger.info(f"Resumed {resumed} pending delay(s)")
        return resumed

    def _rebuild_context(self, execution_id: str, markers: List[DelayMarker]) -> Optional[ExecutionContext]:
        """Recreate a running execution's context from its markers, or drop stale markers."""
        try:
            record = self.execution_repository.get(execution_id)
        except ExecutionNotFound:
            self.execution_repository.clear_delay_markers(execution_id)
            return None

        if record.status != ExecutionStatusEnum.RUNNING:
            self.execution_repository.clear_delay_markers(execution_id)
            return None

        try:
            workflow = self.workflow_repository.get(record.workflow_id)
        except WorkflowEngineError as e:
            logger.error(f"Cannot resume execution {execution_id}: {e.message}")
            self.execution_repository.clear_delay_markers(execution_id)
            self.execution_repository.set_status(execution_id, ExecutionStatusEnum.FAILED, error_message=e.message)
            return None

        # the most recently saved snapshot carries every variable written before it
        latest = max(markers, key=lambda marker: marker.id or 0)
        ctx = ExecutionContext.from_snapshot(execution_id, workflow, latest.context)
        for marker in markers:
            ctx.visited.update(marker.context.get("visited") or [])
            for loop_id, count in (marker.context.get("loop_counters") or {}).items():
                ctx.loop_counters[loop_id] = max(count, ctx.loop_counters.get(loop_id, 0))

        with self._contexts_lock:
            self._contexts[execution_id] = ctx
        return ctx

    def shutdown(self) -> None:
        """Stop timers and workers. Delay markers stay persisted for resumption."""
        with self._contexts_lock:
            contexts = list(self._contexts.values())
        for ctx in contexts:
            self._cancel_timers(ctx, clear_markers=False)
        self._executor.shutdown(wait=True)
        logger.info("WorkflowExecutionEngine shutdown completed")

    # Traversal

    def _run_branch(self, ctx: ExecutionContext, node_id: str) -> None:
        try:
            with ctx.lock, log_context(execution_id=ctx.execution_id, workflow_id=ctx.workflow.id):
                self._process_node(ctx, node_id)
        except Exception as e:
            logger.exception(f"Unexpected error in execution {ctx.execution_id}")
            self._fail(ctx, str(e))
        finally:
            self._branch_finished(ctx)

    def _process_node(self, ctx: ExecutionContext, node_id: str) -> None:
        if not ctx.is_active:
            return

        node = ctx.workflow.get_node(node_id)
        is_loop = node is not None and node.type == NodeType.LOOP.value

        if node_id in ctx.visited and not is_loop:
            self.log.warning(ctx, f"Node {node_id} already visited, skipping to prevent infinite loop", node_id)
            return
        if is_loop and node_id in ctx.active_loops:
            # back edge into a loop that is currently iterating
            return

        ctx.visited.add(node_id)
        ctx.path.append(node_id)

        if node is None:
            self.log.error(ctx, f"Node not found: {node_id}", node_id)
            return

        self.log.info(ctx, f"Processing {node.type} node: {node.label or node.id}", node_id)

        try:
            self._node_handlers[node.type](ctx, node)
        except Exception as e:
            message = e.message if isinstance(e, WorkflowEngineError) else str(e)
            if ctx.is_active:
                self.log.error(ctx, f"Error processing node {node_id}: {message}", node_id)
                self._fail(ctx, message)

    def _follow_all(self, ctx: ExecutionContext, node_id: str) -> None:
        for connection in ctx.workflow.outgoing_connections(node_id):
            if not ctx.is_active:
                return
            self._process_node(ctx, connection.target_id)

    def _handle_trigger(self, ctx: ExecutionContext, node) -> None:
        self.log.info(ctx, f"Trigger activated: {node.trigger_type}", node.id)
        self._follow_all(ctx, node.id)

    def _handle_condition(self, ctx: ExecutionContext, node) -> None:
        condition = node.condition
        try:
            result = evaluate_condition(condition, ctx.variables)
        except Exception as e:
            raise ConditionEvaluationError(f"Condition evaluation failed: {e}", node_id=node.id) from e

        self.log.info(
            ctx,
            f"Condition evaluated: {condition.field} {condition.operator} {condition.value} = {str(result).lower()}",
            node.id
        )

        label = "true" if result else "false"
        connection = ctx.workflow.find_connection(node.id, label)
        if connection is None:
            self.log.warning(ctx, f"No '{label}' connection from condition node {node.id}", node.id)
            return
        self._process_node(ctx, connection.target_id)

    def _handle_action(self, ctx: ExecutionContext, node) -> None:
        self.log.info(ctx, f"Executing action: {node.action_type}", node.id)
        summary = self.actions.execute(node.action_type, node.config, ctx)
        self.log.info(ctx, summary or f"Action completed: {node.action_type}", node.id)
        self._follow_all(ctx, node.id)

    def _handle_junction(self, ctx: ExecutionContext, node) -> None:
        self.log.info(ctx, f"Junction: {node.junction_type}", node.id)
        self._follow_all(ctx, node.id)

    def _handle_loop(self, ctx: ExecutionContext, node) -> None:
        body = ctx.workflow.find_connection(node.id, "body")
        if body is None:
            self.log.warning(ctx, f"Loop node {node.id} has no body connection", node.id)
            return

        max_label = str(node.iterations) if node.iterations is not None else "infinite"
        ctx.active_loops.add(node.id)
        try:
            while True:
                if not ctx.is_active:
                    return

                count = ctx.loop_counters.get(node.id, 0) + 1
                ctx.loop_counters[node.id] = count

                if node.iterations is not None and count > node.iterations:
                    self.log.info(ctx, f"Loop completed after {node.iterations} iterations", node.id)
                    break
                if self.max_loop_iterations is not None and count > self.max_loop_iterations:
                    raise LoopLimitExceeded(node.id, self.max_loop_iterations)

                self.log.info(ctx, f"Loop iteration {count}/{max_label}", node.id)

                visited_before = set(ctx.visited)
                self._process_node(ctx, body.target_id)
                ctx.visited = visited_before

            exit_connection = ctx.workflow.find_connection(node.id, "exit")
            if exit_connection is not None:
                self._process_node(ctx, exit_connection.target_id)
        finally:
            ctx.active_loops.discard(node.id)

    def _handle_delay(self, ctx: ExecutionContext, node) -> None:
        seconds = self._delay_seconds(ctx, node)
        resume_at = _utc_from_timestamp(self.scheduler.now() + seconds)

        marker_id = self.execution_repository.save_delay_marker(ctx.execution_id, node.id, resume_at, ctx.snapshot())
        self.log.info(ctx, f"Delay scheduled: {seconds:g} seconds", node.id)
        self._schedule_continuation(ctx, node.id, seconds, marker_id)

    def _delay_seconds(self, ctx: ExecutionContext, node) -> float:
        amount = evaluate_expression(node.amount, ctx.variables)
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise DelayConfigurationError(f"Invalid delay amount: {node.amount!r}", node_id=node.id)
        if amount < 0:
            raise DelayConfigurationError(f"Delay amount cannot be negative: {amount:g}", node_id=node.id)
        unit = str(node.unit or "minutes").lower()
        return amount * UNIT_SECONDS.get(unit, UNIT_SECONDS["minutes"])

    def _schedule_continuation(self, ctx: ExecutionContext, node_id: str, seconds: float,
                               marker_id: Optional[int] = None) -> None:
        with ctx.status_lock:
            if ctx.status != ExecutionStatusEnum.RUNNING:
                return
            ctx.pending_branches += 1

        handle_ref = []

        def fire():
            try:
                self._executor.submit(self._resume_delay, ctx, node_id, marker_id, handle_ref)
            except RuntimeError:
                logger.warning(f"Engine stopped before delay {node_id} of execution {ctx.execution_id} fired")

        with ctx.status_lock:
            handle = self.scheduler.schedule(seconds, fire)
            handle_ref.append(handle)
            ctx.timers.setdefault(node_id, []).append(handle)

    def _resume_delay(self, ctx: ExecutionContext, node_id: str, marker_id: Optional[int],
                      handle_ref: list) -> None:
        try:
            with ctx.lock, log_context(execution_id=ctx.execution_id, workflow_id=ctx.workflow.id):
                with ctx.status_lock:
                    handles = ctx.timers.get(node_id, [])
                    for handle in handle_ref:
                        if handle in handles:
                            handles.remove(handle)
                    if not handles:
                        ctx.timers.pop(node_id, None)

                if not ctx.is_active:
                    return

                self.log.info(ctx, "Delay completed", node_id)
                if marker_id is not None:
                    try:
                        self.execution_repository.clear_delay_marker(marker_id)
                    except StorageError as e:
                        logger.error(f"Failed to clear delay marker {marker_id} of execution {ctx.execution_id}: {e.message}")
                self._follow_all(ctx, node_id)
        except Exception as e:
            logger.exception(f"Unexpected error resuming delay {node_id} of execution {ctx.execution_id}")
            self._fail(ctx, str(e))
        finally:
            self._branch_finished(ctx)

    # Status transitions

    def _branch_finished(self, ctx: ExecutionContext) -> None:
        with ctx.status_lock:
            ctx.pending_branches -= 1
            completed = ctx.pending_branches <= 0 and ctx.status == ExecutionStatusEnum.RUNNING
            if completed:
                ctx.status = ExecutionStatusEnum.COMPLETED
        if completed:
            self.log.info(ctx, "Workflow execution completed")
            self._finalize(ctx)

    def _fail(self, ctx: ExecutionContext, message: str) -> None:
        with ctx.status_lock:
            if ctx.status != ExecutionStatusEnum.RUNNING:
                return
            ctx.status = ExecutionStatusEnum.FAILED
            ctx.error = message
        self._cancel_timers(ctx, clear_markers=True)
        self._finalize(ctx)

    def _cancel_timers(self, ctx: ExecutionContext, clear_markers: bool) -> None:
        with ctx.status_lock:
            timers = ctx.timers
            ctx.timers = {}
        for handles in timers.values():
            for handle in handles:
                handle.cancel()
        if clear_markers:
            try:
                self.execution_repository.clear_delay_markers(ctx.execution_id)
            except StorageError as e:
                logger.error(f"Failed to clear delay markers of execution {ctx.execution_id}: {e.message}")

    def _finalize(self, ctx: ExecutionContext) -> None:
        """Persist the terminal status and release waiters."""
        try:
            self.execution_repository.set_status(
                ctx.execution_id,
                ctx.status,
                error_message=ctx.error if ctx.status != ExecutionStatusEnum.COMPLETED else None,
                execution_time_ms=ctx.elapsed_ms(),
            )
        except StorageError as e:
            logger.error(f"Failed to persist status of execution {ctx.execution_id}: {e.message}")
        finally:
            ctx.done_event.set()
            with self._contexts_lock:
                self._contexts.pop(ctx.execution_id, None)
            logger.info(f"Execution {ctx.execution_id} finished with status {ctx.status.value}")
