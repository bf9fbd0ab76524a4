"""Tests for the action dispatcher and its built-in handlers."""

import pytest
import requests

from deskflow.core.actions import ActionDispatcher
from deskflow.core.context import ExecutionContext
from deskflow.core.exceptions import ActionExecutionError, ActionRegistryError
from deskflow.models.core import WorkflowDefinition
from deskflow.services.http_client import HttpResponse


def make_context(variables=None, module_item_id="T-1", trigger_data=None):
    workflow = WorkflowDefinition(tenant_id="tenant-1", name="wf", module_type="tickets")
    return ExecutionContext(
        execution_id="exec-1",
        workflow=workflow,
        variables=dict(variables or {}),
        module_type="tickets",
        module_item_id=module_item_id,
        trigger_data=trigger_data or {"userId": "u9"},
    )


class TestRegistry:
    """Handler registration rules."""

    def test_builtin_types_listed(self, dispatcher):
        types = dispatcher.list_action_types()
        for name in ("update_ticket", "create_ticket", "assign_ticket", "send_notification",
                     "create_knowledge_article", "set_variable", "http_request"):
            assert name in types
            assert types[name]

    def test_register_custom_handler(self, dispatcher):
        calls = []
        dispatcher.register_handler("audit", lambda config, ctx: calls.append(config), "Record an audit entry")

        dispatcher.execute("audit", {"note": "x"}, make_context())

        assert calls == [{"note": "x"}]
        assert dispatcher.list_action_types()["audit"] == "Record an audit entry"

    def test_duplicate_rejected(self, dispatcher):
        with pytest.raises(ActionRegistryError):
            dispatcher.register_handler("set_variable", lambda config, ctx: None)

    def test_empty_name_rejected(self, dispatcher):
        with pytest.raises(ActionRegistryError):
            dispatcher.register_handler("  ", lambda config, ctx: None)

    def test_non_callable_rejected(self, dispatcher):
        with pytest.raises(ActionRegistryError):
            dispatcher.register_handler("broken", "not a function")

    def test_wrong_arity_rejected(self, dispatcher):
        with pytest.raises(ActionRegistryError):
            dispatcher.register_handler("one_arg", lambda config: None)

    def test_variadic_accepted(self, dispatcher):
        dispatcher.register_handler("variadic", lambda *args: None)
        assert "variadic" in dispatcher.list_action_types()

    def test_unknown_type(self, dispatcher):
        with pytest.raises(ActionExecutionError, match="Unknown action type: nope"):
            dispatcher.execute("nope", {}, make_context())

    def test_handler_errors_wrapped(self, dispatcher):
        def explode(config, ctx):
            raise KeyError("missing")

        dispatcher.register_handler("explode", explode)
        with pytest.raises(ActionExecutionError):
            dispatcher.execute("explode", {}, make_context())


class TestTicketActions:

    def test_update_ticket_defaults_to_item(self, dispatcher, services):
        ctx = make_context({"newStatus": "resolved"})

        dispatcher.execute("update_ticket", {"status": "$newStatus", "priority": "low"}, ctx)

        assert services["tickets"].updates == [("T-1", {"status": "resolved", "priority": "low"})]

    def test_update_ticket_requires_id(self, dispatcher):
        ctx = make_context(module_item_id=None)

        with pytest.raises(ActionExecutionError, match="No ticket ID"):
            dispatcher.execute("update_ticket", {"ticketId": "$unknown", "status": "open"}, ctx)

    def test_create_ticket_stores_id(self, dispatcher, services):
        ctx = make_context({"subject": "Printer"})

        dispatcher.execute("create_ticket", {"title": "Follow up: $subject"}, ctx)

        created = services["tickets"].created[0]
        assert created["title"] == "Follow up: Printer"
        assert created["tenant_id"] == "tenant-1"
        assert created["created_by"] == "u9"
        assert created["status"] == "open"
        assert ctx.variables["createdTicketId"] == "ticket-1"

    def test_assign_ticket(self, dispatcher, services):
        ctx = make_context({"agent": "agent-7"})

        summary = dispatcher.execute("assign_ticket", {"assigneeId": "$agent"}, ctx)

        assert services["tickets"].assignments == [("T-1", "agent-7")]
        assert summary == "Assigned ticket T-1 to user agent-7"

    def test_assign_ticket_requires_assignee(self, dispatcher):
        with pytest.raises(ActionExecutionError):
            dispatcher.execute("assign_ticket", {"assigneeId": "$nobody"}, make_context())


class TestNotificationAction:

    def test_recipient_list_flattened(self, dispatcher, services):
        ctx = make_context({"team": ["u1", "u2"], "lead": "u3"})

        dispatcher.execute("send_notification", {"recipients": ["$team", "$lead", "u4"], "title": "Hi"}, ctx)

        assert services["notifications"].sent[0]["recipients"] == ["u1", "u2", "u3", "u4"]
        assert services["notifications"].sent[0]["module_item_id"] == "T-1"

    def test_templated_recipients_are_substituted(self, dispatcher, services):
        ctx = make_context({"assignee": "u1", "team": ["u2", "u3"]})

        summary = dispatcher.execute(
            "send_notification", {"recipients": ["agent-$assignee", "$team"], "title": "Ticket $assignee"}, ctx
        )

        assert services["notifications"].sent[0]["recipients"] == ["agent-u1", "u2", "u3"]
        assert summary == "Sent system notification to agent-u1, u2, u3: Ticket u1"

    def test_single_recipient_string(self, dispatcher, services):
        dispatcher.execute("send_notification", {"recipients": "$lead"}, make_context({"lead": "u3"}))

        assert services["notifications"].sent[0]["recipients"] == ["u3"]

    def test_no_recipients(self, dispatcher, services):
        with pytest.raises(ActionExecutionError, match="No recipients"):
            dispatcher.execute("send_notification", {"recipients": ["$missing"]}, make_context())
        assert services["notifications"].sent == []


class TestOtherActions:

    def test_knowledge_article(self, dispatcher, services):
        ctx = make_context({"answer": "Restart it"})

        dispatcher.execute("create_knowledge_article", {"title": "Fix", "content": "$answer"}, ctx)

        assert services["knowledge"].articles[0]["content"] == "Restart it"
        assert services["knowledge"].articles[0]["status"] == "draft"
        assert ctx.variables["createdArticleId"] == "article-1"

    def test_set_variable_keeps_raw_value(self, dispatcher):
        ctx = make_context({"tags": ["a", "b"]})

        dispatcher.execute("set_variable", {"name": "copy", "value": "$tags"}, ctx)

        assert ctx.variables["copy"] == ["a", "b"]

    def test_set_variable_requires_name(self, dispatcher):
        with pytest.raises(ActionExecutionError):
            dispatcher.execute("set_variable", {"value": 1}, make_context())

    def test_http_request_success(self, dispatcher, services):
        services["http"].response = HttpResponse(201, "Created", {"id": 5})
        ctx = make_context({"ticketId": "T-1"})

        summary = dispatcher.execute("http_request", {
            "url": "https://example.test/tickets/$ticketId",
            "method": "put",
            "headers": {"X-Ticket": "$ticketId"},
            "body": {"ticket": "$ticketId"},
        }, ctx)

        request = services["http"].requests[0]
        assert request["method"] == "PUT"
        assert request["headers"] == {"X-Ticket": "T-1"}
        assert request["body"] == {"ticket": "T-1"}
        assert request["timeout"] == 5.0
        assert ctx.variables["httpResponse"] == {"status": 201, "statusText": "Created", "data": {"id": 5}}
        assert summary == "HTTP PUT request to https://example.test/tickets/T-1 completed with status 201"

    def test_http_request_network_error(self, dispatcher, services):
        services["http"].response = requests.ConnectionError("refused")

        with pytest.raises(ActionExecutionError, match="failed"):
            dispatcher.execute("http_request", {"url": "https://example.test"}, make_context())

    def test_http_request_requires_url(self, dispatcher):
        with pytest.raises(ActionExecutionError, match="URL is required"):
            dispatcher.execute("http_request", {}, make_context())


class TestDefaultServices:
    """A dispatcher built without services writes to the database."""

    def test_builtin_ticket_service(self, temp_db):
        from deskflow.services import TicketService

        dispatcher = ActionDispatcher()
        ctx = make_context()
        dispatcher.execute("create_ticket", {"title": "Created by workflow", "priority": "high"}, ctx)

        ticket = TicketService().get_ticket(ctx.variables["createdTicketId"])
        assert ticket["title"] == "Created by workflow"
        assert ticket["priority"] == "high"
        assert ticket["created_by"] == "u9"
