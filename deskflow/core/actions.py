"""Action dispatcher: a registry of handlers keyed by action type."""

import inspect
import json
from typing import Any, Callable, Dict, List, Optional

import requests

from .context import ExecutionContext
from .exceptions import ActionExecutionError, ActionRegistryError, WorkflowEngineError
from .logging import get_logger
from .variables import VARIABLE_PATTERN, evaluate_expression, replace_variables

logger = get_logger(__name__)

ActionHandler = Callable[[Dict[str, Any], ExecutionContext], Optional[str]]


def _unresolved(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, str) and value.startswith("$"))


class ActionDispatcher:
    """Maps action-type tags to handlers that perform one side effect each.

    Built-in handlers are registered at construction time. Handlers receive
    the node's raw configuration and the execution context, may return a
    one-line summary of what they did, and signal failure by raising.
    """

    def __init__(self, ticket_service=None, notification_service=None,
                 knowledge_service=None, http_client=None, http_timeout: float = 30.0):
        if ticket_service is None or notification_service is None or knowledge_service is None or http_client is None:
            from ..services import HttpClient, KnowledgeService, NotificationService, TicketService
            ticket_service = ticket_service or TicketService()
            notification_service = notification_service or NotificationService()
            knowledge_service = knowledge_service or KnowledgeService()
            http_client = http_client or HttpClient(default_timeout=http_timeout)

        self.tickets = ticket_service
        self.notifications = notification_service
        self.knowledge = knowledge_service
        self.http = http_client
        self.http_timeout = http_timeout

        self._handlers: Dict[str, ActionHandler] = {}
        self._descriptions: Dict[str, str] = {}

        self.register_handler("update_ticket", self._update_ticket, "Update status, priority, category or description of a ticket")
        self.register_handler("create_ticket", self._create_ticket, "Create a ticket and store its id in createdTicketId")
        self.register_handler("assign_ticket", self._assign_ticket, "Assign a ticket to a user")
        self.register_handler("send_notification", self._send_notification, "Notify one or more users")
        self.register_handler("create_knowledge_article", self._create_knowledge_article, "Create a knowledge article and store its id in createdArticleId")
        self.register_handler("set_variable", self._set_variable, "Assign a value to a workflow variable")
        self.register_handler("http_request", self._http_request, "Call an HTTP endpoint and store the response in httpResponse")

    def register_handler(self, action_type: str, handler: ActionHandler, description: str = "") -> None:
        """
        Register a handler for an action type.

        Raises:
            ActionRegistryError: If the name is empty, already taken, or the handler is not callable
        """
        if not action_type or not action_type.strip():
            raise ActionRegistryError("Action type cannot be empty")

        action_type = action_type.strip()

        if action_type in self._handlers:
            raise ActionRegistryError(f"Action type '{action_type}' is already registered", action_type=action_type)

        if not callable(handler):
            raise ActionRegistryError(f"Handler for '{action_type}' must be callable", action_type=action_type)

        try:
            params = list(inspect.signature(handler).parameters.values())
        except (ValueError, TypeError) as e:
            raise ActionRegistryError(f"Cannot inspect handler for '{action_type}': {e}", action_type=action_type)
        variadic = any(param.kind == inspect.Parameter.VAR_POSITIONAL for param in params)
        if len(params) < 2 and not variadic:
            raise ActionRegistryError(
                f"Handler for '{action_type}' must accept (config, context)",
                action_type=action_type
            )

        self._handlers[action_type] = handler
        self._descriptions[action_type] = description.strip() if description else ""
        logger.debug(f"Registered action handler '{action_type}'")

    def list_action_types(self) -> Dict[str, str]:
        """Registered action types with their descriptions."""
        return dict(self._descriptions)

    def execute(self, action_type: str, config: Dict[str, Any], ctx: ExecutionContext) -> Optional[str]:
        """
        Run the handler registered for ``action_type``.

        Returns:
            The handler's summary of the side effect, if it gives one

        Raises:
            ActionExecutionError: If the type is unknown or the handler fails
        """
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionExecutionError(f"Unknown action type: {action_type}", action_type=action_type)

        try:
            return handler(config or {}, ctx)
        except ActionExecutionError:
            raise
        except WorkflowEngineError as e:
            raise ActionExecutionError(e.message, action_type=action_type) from e
        except Exception as e:
            raise ActionExecutionError(str(e), action_type=action_type) from e

    def _update_ticket(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        ticket_id = replace_variables(config.get("ticketId"), ctx.variables) or ctx.module_item_id
        if _unresolved(ticket_id):
            raise ActionExecutionError("No ticket ID specified for update_ticket action", action_type="update_ticket")

        updates = {}
        for key in ("status", "priority", "category", "description"):
            if config.get(key) is not None:
                updates[key] = replace_variables(config[key], ctx.variables)

        self.tickets.update_ticket(str(ticket_id), updates)
        return f"Updated ticket {ticket_id} with data: {json.dumps(updates, default=str)}"

    def _create_ticket(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        def value(key, default=None):
            return replace_variables(config.get(key, default), ctx.variables)

        title = value("title", "Automated ticket")
        ticket_id = self.tickets.create_ticket(
            tenant_id=ctx.tenant_id,
            title=title,
            description=value("description"),
            status=value("status", "open"),
            priority=value("priority", "medium"),
            category=value("category"),
            assigned_to=value("assignedTo"),
            created_by=ctx.trigger_data.get("userId"),
        )
        ctx.variables["createdTicketId"] = ticket_id
        return f"Created ticket with ID {ticket_id}: {title}"

    def _assign_ticket(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        ticket_id = replace_variables(config.get("ticketId"), ctx.variables) or ctx.module_item_id
        assignee_id = replace_variables(config.get("assigneeId"), ctx.variables)
        if _unresolved(ticket_id) or _unresolved(assignee_id):
            raise ActionExecutionError(
                "Ticket ID and assignee ID are required for assign_ticket action",
                action_type="assign_ticket"
            )
        self.tickets.assign_ticket(str(ticket_id), str(assignee_id))
        return f"Assigned ticket {ticket_id} to user {assignee_id}"

    def _send_notification(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        raw = config.get("recipients") or []
        if not isinstance(raw, list):
            raw = [raw]

        recipients: List[str] = []
        for item in raw:
            # a bare $name keeps its raw value so list variables flatten
            if isinstance(item, str) and VARIABLE_PATTERN.fullmatch(item):
                resolved = evaluate_expression(item, ctx.variables)
            else:
                resolved = replace_variables(item, ctx.variables)
            for recipient in (resolved if isinstance(resolved, list) else [resolved]):
                if recipient is not None and recipient != "":
                    recipients.append(str(recipient))

        if not recipients:
            raise ActionExecutionError("No recipients resolved for send_notification action", action_type="send_notification")

        title = replace_variables(config.get("title", ""), ctx.variables)
        notification_type = config.get("notificationType") or "system"
        self.notifications.send(
            tenant_id=ctx.tenant_id,
            recipients=recipients,
            title=title,
            message=replace_variables(config.get("message", ""), ctx.variables),
            notification_type=notification_type,
            module_type=ctx.module_type,
            module_item_id=ctx.module_item_id,
        )
        return f"Sent {notification_type} notification to {', '.join(recipients)}: {title}"

    def _create_knowledge_article(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        title = replace_variables(config.get("title", ""), ctx.variables)
        article_id = self.knowledge.create_article(
            tenant_id=ctx.tenant_id,
            title=title,
            content=replace_variables(config.get("content", ""), ctx.variables),
            category_id=replace_variables(config.get("categoryId"), ctx.variables),
            status=config.get("status") or "draft",
            created_by=ctx.trigger_data.get("userId"),
        )
        ctx.variables["createdArticleId"] = article_id
        return f"Created knowledge article with ID {article_id}: {title}"

    def _set_variable(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        name = config.get("name")
        if not name:
            raise ActionExecutionError("Variable name is required for set_variable action", action_type="set_variable")
        ctx.variables[name] = evaluate_expression(config.get("value"), ctx.variables)
        return f"Set variable {name} = {json.dumps(ctx.variables[name], default=str)}"

    def _http_request(self, config: Dict[str, Any], ctx: ExecutionContext) -> str:
        url = replace_variables(config.get("url"), ctx.variables)
        if not url:
            raise ActionExecutionError("URL is required for http_request action", action_type="http_request")

        method = str(replace_variables(config.get("method") or "GET", ctx.variables)).upper()
        headers = replace_variables(config.get("headers") or {}, ctx.variables)
        body = replace_variables(config.get("body"), ctx.variables)
        timeout: Optional[float] = config.get("timeout") or self.http_timeout

        try:
            response = self.http.request(method, url, headers=headers, body=body, timeout=timeout)
        except requests.RequestException as e:
            raise ActionExecutionError(f"HTTP request to {url} failed: {e}", action_type="http_request") from e

        ctx.variables["httpResponse"] = response.to_dict()
        if not response.ok:
            raise ActionExecutionError(
                f"HTTP request failed with status {response.status}: {response.status_text}",
                action_type="http_request"
            )
        return f"HTTP {method} request to {url} completed with status {response.status}"
