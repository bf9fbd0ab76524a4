"""Tests for the SQLAlchemy repositories and domain services."""

from datetime import datetime, timedelta

import pytest

from deskflow.core.exceptions import ExecutionNotFound, RecordNotFoundError, WorkflowNotFound
from deskflow.models.core import ExecutionStatusEnum, LogEntry, LogSeverity, WorkflowDefinition, WorkflowStatus
from deskflow.services import KnowledgeService, NotificationService, TicketService
from deskflow.storage.database import get_db
from deskflow.storage.models import NotificationModel


def sample_workflow(**overrides):
    data = {
        "tenant_id": "tenant-1",
        "name": "Notify on create",
        "module_type": "tickets",
        "status": "active",
        "nodes": [
            {"id": "t1", "type": "trigger", "triggerType": "ticket_created"},
            {"id": "a1", "type": "action", "actionType": "set_variable", "config": {"name": "x", "value": 1}},
        ],
        "connections": [{"sourceId": "t1", "targetId": "a1"}],
        "variables": [{"name": "x", "defaultValue": 0}],
    }
    data.update(overrides)
    return WorkflowDefinition.parse_definition(data)


class TestWorkflowRepository:

    def test_save_and_get(self, workflow_repository):
        workflow_id = workflow_repository.save(sample_workflow())

        loaded = workflow_repository.get(workflow_id)

        assert loaded.id == workflow_id
        assert loaded.status == WorkflowStatus.ACTIVE
        assert loaded.get_node("a1").action_type == "set_variable"
        assert loaded.connections[0].source_id == "t1"
        assert loaded.variable_defaults() == {"x": 0}

    def test_save_replaces_existing(self, workflow_repository):
        workflow_id = workflow_repository.save(sample_workflow())
        workflow_repository.save(sample_workflow(id=workflow_id, name="Renamed"))

        assert workflow_repository.get(workflow_id).name == "Renamed"
        assert len(workflow_repository.list_workflows()) == 1

    def test_get_missing(self, workflow_repository):
        with pytest.raises(WorkflowNotFound):
            workflow_repository.get("nope")

    def test_find_active_filters_module_and_status(self, workflow_repository):
        active_id = workflow_repository.save(sample_workflow())
        workflow_repository.save(sample_workflow(status="inactive"))
        workflow_repository.save(sample_workflow(module_type="assets"))

        rows = workflow_repository.find_active("tickets")

        assert [row["id"] for row in rows] == [active_id]

    def test_set_status(self, workflow_repository):
        workflow_id = workflow_repository.save(sample_workflow())

        workflow_repository.set_status(workflow_id, WorkflowStatus.INACTIVE)

        assert workflow_repository.find_active("tickets") == []
        with pytest.raises(WorkflowNotFound):
            workflow_repository.set_status("nope", WorkflowStatus.ACTIVE)

    def test_list_filters(self, workflow_repository):
        workflow_repository.save(sample_workflow())
        workflow_repository.save(sample_workflow(tenant_id="tenant-2"))

        listed = workflow_repository.list_workflows(tenant_id="tenant-2")

        assert len(listed) == 1
        assert listed[0]["node_count"] == 2

    def test_update_bumps_version(self, workflow_repository):
        workflow_id = workflow_repository.save(sample_workflow())

        version = workflow_repository.update(workflow_id, sample_workflow(name="Renamed", status="inactive"))

        loaded = workflow_repository.get(workflow_id)
        assert version == 2
        assert loaded.version == 2
        assert loaded.name == "Renamed"
        assert loaded.status == WorkflowStatus.INACTIVE
        with pytest.raises(WorkflowNotFound):
            workflow_repository.update("nope", sample_workflow())

    def test_clone_is_a_draft_copy(self, workflow_repository):
        workflow_id = workflow_repository.save(sample_workflow())

        default_name = workflow_repository.get(workflow_repository.clone(workflow_id))
        named = workflow_repository.get(workflow_repository.clone(workflow_id, "Second copy"))

        assert default_name.id != workflow_id
        assert default_name.name == "Notify on create (Copy)"
        assert default_name.status == WorkflowStatus.DRAFT
        assert default_name.version == 1
        assert [node.id for node in default_name.nodes] == ["t1", "a1"]
        assert named.name == "Second copy"
        assert workflow_repository.find_active("tickets")[0]["id"] == workflow_id

    def test_delete_removes_execution_history(self, workflow_repository, execution_repository, log_repository):
        workflow_id = workflow_repository.save(sample_workflow())
        kept_id = workflow_repository.save(sample_workflow(name="Other"))
        execution_id = execution_repository.create(workflow_id, "tenant-1", {}, "tickets")
        kept_execution = execution_repository.create(kept_id, "tenant-1", {}, "tickets")
        execution_repository.save_delay_marker(execution_id, "d1", datetime.utcnow(), {})
        log_repository.append(execution_id, "tenant-1", LogEntry(
            timestamp=datetime.utcnow(), level=LogSeverity.INFO, message="started", node_id="t1"
        ))

        assert workflow_repository.delete(workflow_id) == 1

        assert not workflow_repository.exists(workflow_id)
        assert workflow_repository.exists(kept_id)
        with pytest.raises(ExecutionNotFound):
            execution_repository.get(execution_id)
        assert execution_repository.get(kept_execution).workflow_id == kept_id
        assert execution_repository.list_delay_markers() == []
        assert log_repository.list_for_execution(execution_id) == []
        with pytest.raises(WorkflowNotFound):
            workflow_repository.delete(workflow_id)


class TestExecutionRepository:

    def test_lifecycle(self, execution_repository):
        execution_id = execution_repository.create("wf-1", "tenant-1", {"a": 1}, "tickets", "T-1")

        record = execution_repository.get(execution_id)
        assert record.status == ExecutionStatusEnum.RUNNING
        assert record.trigger_data == {"a": 1}
        assert record.completed_at is None

        execution_repository.set_status(execution_id, ExecutionStatusEnum.FAILED, error_message="boom",
                                        execution_time_ms=12)
        record = execution_repository.get(execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert record.error_message == "boom"
        assert record.execution_time_ms == 12
        assert record.completed_at is not None

    def test_list_for_workflow_pages_newest_first(self, execution_repository):
        created = [execution_repository.create("wf-1", "tenant-1", {"n": n}, "tickets") for n in range(3)]
        execution_repository.create("wf-2", "tenant-1", {}, "tickets")

        page, total = execution_repository.list_for_workflow("wf-1", limit=2)
        assert total == 3
        assert [record.id for record in page] == [created[2], created[1]]

        page, total = execution_repository.list_for_workflow("wf-1", limit=2, offset=2)
        assert [record.id for record in page] == [created[0]]
        assert execution_repository.list_for_workflow("missing") == ([], 0)

    def test_missing_execution(self, execution_repository):
        with pytest.raises(ExecutionNotFound):
            execution_repository.get("nope")

    def test_delay_markers(self, execution_repository):
        now = datetime.utcnow()
        late = execution_repository.save_delay_marker("e1", "d1", now + timedelta(minutes=5), {"variables": {"a": 1}})
        early = execution_repository.save_delay_marker("e1", "d1", now + timedelta(minutes=1), {"variables": {"a": 2}})
        first = execution_repository.save_delay_marker("e1", "d2", now, {})
        execution_repository.save_delay_marker("e2", "d1", now, {})

        markers = execution_repository.list_delay_markers("e1")
        assert [m.id for m in markers] == [first, early, late]
        assert [m.node_id for m in markers] == ["d2", "d1", "d1"]
        assert markers[1].context == {"variables": {"a": 2}}

        execution_repository.clear_delay_marker(early)
        remaining = execution_repository.list_delay_markers("e1")
        assert [(m.node_id, m.context) for m in remaining] == [("d2", {}), ("d1", {"variables": {"a": 1}})]

        assert execution_repository.clear_delay_markers("e1") == 2
        assert [m.execution_id for m in execution_repository.list_delay_markers()] == ["e2"]


class TestLogRepository:

    def test_append_and_list_in_order(self, log_repository):
        for index, level in enumerate([LogSeverity.INFO, LogSeverity.WARNING, LogSeverity.ERROR]):
            log_repository.append("e1", "tenant-1", LogEntry(
                timestamp=datetime.utcnow(),
                level=level,
                message=f"entry {index}",
                node_id=f"n{index}",
                execution_path=["t1", f"n{index}"],
            ))

        entries = log_repository.list_for_execution("e1")

        assert [e.message for e in entries] == ["entry 0", "entry 1", "entry 2"]
        assert entries[2].level == LogSeverity.ERROR
        assert entries[1].execution_path == ["t1", "n1"]
        assert log_repository.list_for_execution("other") == []


class TestServices:

    def test_ticket_service(self, temp_db):
        service = TicketService()
        ticket_id = service.create_ticket("tenant-1", "Broken printer", priority="low")

        service.update_ticket(ticket_id, {"status": "in_progress", "priority": "high", "ignored": "x"})
        service.assign_ticket(ticket_id, "agent-1")

        ticket = service.get_ticket(ticket_id)
        assert ticket["status"] == "in_progress"
        assert ticket["priority"] == "high"
        assert ticket["assigned_to"] == "agent-1"
        assert service.get_ticket("nope") is None

    def test_ticket_service_missing_ticket(self, temp_db):
        with pytest.raises(RecordNotFoundError):
            TicketService().update_ticket("nope", {"status": "closed"})

    def test_notification_service_one_row_per_recipient(self, temp_db):
        ids = NotificationService().send(
            tenant_id="tenant-1",
            recipients=["u1", "u2"],
            title="Hello",
            message="World",
            notification_type="system",
            module_type="tickets",
            module_item_id="T-1",
        )

        assert len(ids) == 2
        db = next(get_db())
        try:
            rows = db.query(NotificationModel).all()
            assert sorted(row.user_id for row in rows) == ["u1", "u2"]
        finally:
            db.close()

    def test_knowledge_service(self, temp_db):
        article_id = KnowledgeService().create_article("tenant-1", "How to reboot", content="Hold power")
        assert article_id
