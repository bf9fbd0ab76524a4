"""Tests for the REST API."""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from deskflow.config import AppConfig, LogLevel
from deskflow.factory import app_state, create_app
from deskflow.models.core import ExecutionStatusEnum
from deskflow.storage.database import reset_database_engine


WORKFLOW = {
    "tenant_id": "tenant-1",
    "name": "Escalate urgent tickets",
    "module_type": "tickets",
    "status": "active",
    "nodes": [
        {"id": "t1", "type": "trigger", "triggerType": "ticket_created"},
        {"id": "c1", "type": "condition",
         "condition": {"field": "$priority", "operator": "equals", "value": "high"}},
        {"id": "notify", "type": "action", "actionType": "send_notification",
         "config": {"recipients": ["$assignee"], "title": "Urgent", "message": "Ticket $ticketId"}},
        {"id": "mark", "type": "action", "actionType": "set_variable",
         "config": {"name": "handled", "value": "low"}},
    ],
    "connections": [
        {"sourceId": "t1", "targetId": "c1"},
        {"sourceId": "c1", "targetId": "notify", "label": "true"},
        {"sourceId": "c1", "targetId": "mark", "label": "false"},
    ],
}


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)
    config = AppConfig(
        database_url=f"sqlite:///{db_path}",
        log_level=LogLevel.WARNING,
        resume_pending_delays=False,
        max_concurrent_executions=2,
    )

    with TestClient(create_app(config)) as test_client:
        yield test_client

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


def wait(execution_id):
    return app_state.execution_engine.wait_for_execution(execution_id, timeout=5)


class TestHealth:

    def test_root_and_health(self, client):
        assert client.get("/").status_code == 200
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["status"] == "healthy"


class TestWorkflowEndpoints:

    def test_create_and_get(self, client):
        response = client.post("/api/v1/workflows", json=WORKFLOW)
        assert response.status_code == 201
        body = response.json()
        assert body["validation_errors"] == []

        fetched = client.get(f"/api/v1/workflows/{body['workflow_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["nodes"][0]["triggerType"] == "ticket_created"

        listed = client.get("/api/v1/workflows", params={"module_type": "tickets"})
        assert [w["id"] for w in listed.json()] == [body["workflow_id"]]

    def test_structural_errors_reported_not_rejected(self, client):
        response = client.post("/api/v1/workflows", json={**WORKFLOW, "nodes": WORKFLOW["nodes"][1:]})
        assert response.status_code == 201
        assert "Workflow has no trigger node" in response.json()["validation_errors"]

    def test_malformed_definition_rejected(self, client):
        response = client.post("/api/v1/workflows", json={**WORKFLOW, "nodes": [{"id": "x", "type": "teleport"}]})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "WorkflowDefinitionError"

    def test_unknown_workflow(self, client):
        response = client.get("/api/v1/workflows/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "WorkflowNotFound"

    def test_set_status(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]

        response = client.post(f"/api/v1/workflows/{workflow_id}/status", json={"status": "inactive"})

        assert response.status_code == 200
        assert client.get(f"/api/v1/workflows/{workflow_id}").json()["status"] == "inactive"
        assert client.post("/api/v1/workflows/nope/status", json={"status": "active"}).status_code == 404

    def test_update_workflow(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]

        response = client.put(f"/api/v1/workflows/{workflow_id}", json={**WORKFLOW, "name": "Escalate everything"})

        assert response.status_code == 200
        assert response.json()["version"] == 2
        fetched = client.get(f"/api/v1/workflows/{workflow_id}").json()
        assert fetched["name"] == "Escalate everything"
        assert fetched["version"] == 2
        assert client.put("/api/v1/workflows/nope", json=WORKFLOW).status_code == 404

    def test_clone_workflow(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]

        response = client.post(f"/api/v1/workflows/{workflow_id}/clone")

        assert response.status_code == 201
        clone = client.get(f"/api/v1/workflows/{response.json()['workflow_id']}").json()
        assert clone["name"] == "Escalate urgent tickets (Copy)"
        assert clone["status"] == "draft"

        named = client.post(f"/api/v1/workflows/{workflow_id}/clone", json={"name": "Night shift"})
        assert client.get(f"/api/v1/workflows/{named.json()['workflow_id']}").json()["name"] == "Night shift"
        assert client.post("/api/v1/workflows/nope/clone").status_code == 404

    def test_delete_workflow(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]
        execution_id = client.post(f"/api/v1/workflows/{workflow_id}/execute",
                                   json={"payload": {"priority": "low"}}).json()["execution_id"]
        wait(execution_id)

        response = client.delete(f"/api/v1/workflows/{workflow_id}")

        assert response.status_code == 200
        assert response.json()["deleted_executions"] == 1
        assert client.get(f"/api/v1/workflows/{workflow_id}").status_code == 404
        assert client.get(f"/api/v1/executions/{execution_id}").status_code == 404
        assert client.delete(f"/api/v1/workflows/{workflow_id}").status_code == 404

    def test_execution_history(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]
        execution_ids = []
        for _ in range(3):
            execution_id = client.post(f"/api/v1/workflows/{workflow_id}/execute",
                                       json={"payload": {"priority": "low"}}).json()["execution_id"]
            wait(execution_id)
            execution_ids.append(execution_id)

        body = client.get(f"/api/v1/workflows/{workflow_id}/executions", params={"limit": 2, "offset": 1}).json()

        assert body["total"] == 3
        assert [execution["id"] for execution in body["executions"]] == [execution_ids[1], execution_ids[0]]
        assert client.get("/api/v1/workflows/nope/executions").status_code == 404
        assert client.get(f"/api/v1/workflows/{workflow_id}/executions", params={"limit": 0}).status_code == 422


class TestExecutionEndpoints:

    def test_execute_and_inspect(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]

        response = client.post(f"/api/v1/workflows/{workflow_id}/execute", json={
            "payload": {"priority": "high", "assignee": "u1", "ticketId": "T-1"},
            "module_item_id": "T-1",
        })
        assert response.status_code == 202
        execution_id = response.json()["execution_id"]
        assert wait(execution_id) == ExecutionStatusEnum.COMPLETED

        execution = client.get(f"/api/v1/executions/{execution_id}").json()
        assert execution["status"] == "completed"
        assert execution["module_type"] == "tickets"

        logs = client.get(f"/api/v1/executions/{execution_id}/logs").json()
        messages = [entry["message"] for entry in logs]
        assert messages[0] == "Workflow execution started: Escalate urgent tickets"
        assert messages[-1] == "Workflow execution completed"
        assert "Executing action: send_notification" in messages
        assert "Sent system notification to u1: Urgent" in messages

    def test_execute_unknown_workflow(self, client):
        response = client.post("/api/v1/workflows/nope/execute", json={"payload": {}})
        assert response.status_code == 404

    def test_trigger_routes_event(self, client):
        client.post("/api/v1/workflows", json=WORKFLOW)
        client.post("/api/v1/workflows", json={**WORKFLOW, "status": "inactive"})

        response = client.post("/api/v1/triggers", json={
            "module_type": "tickets",
            "trigger_type": "ticket_created",
            "payload": {"priority": "low"},
        })

        assert response.status_code == 202
        execution_ids = response.json()["execution_ids"]
        assert len(execution_ids) == 1
        assert wait(execution_ids[0]) == ExecutionStatusEnum.COMPLETED

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/nope").status_code == 404
        assert client.get("/api/v1/executions/nope/logs").status_code == 404
        assert client.post("/api/v1/executions/nope/cancel").status_code == 404

    def test_cancel_finished_execution(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]
        execution_id = client.post(f"/api/v1/workflows/{workflow_id}/execute",
                                   json={"payload": {"priority": "low"}}).json()["execution_id"]
        wait(execution_id)

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] is False

    def test_execution_details(self, client):
        workflow_id = client.post("/api/v1/workflows", json=WORKFLOW).json()["workflow_id"]
        execution_id = client.post(f"/api/v1/workflows/{workflow_id}/execute",
                                   json={"payload": {"priority": "low"}}).json()["execution_id"]
        wait(execution_id)

        body = client.get(f"/api/v1/executions/{execution_id}/details").json()

        assert body["execution"]["status"] == "completed"
        assert body["logs"][-1]["message"] == "Workflow execution completed"
        assert client.get("/api/v1/executions/nope/details").status_code == 404


class TestActionEndpoints:

    def test_list_actions(self, client):
        body = client.get("/api/v1/actions").json()
        action_types = [action["action_type"] for action in body["actions"]]
        assert "send_notification" in action_types
        assert body["count"] == len(action_types)
