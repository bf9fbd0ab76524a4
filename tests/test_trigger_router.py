"""Tests for routing domain events to matching workflows."""

from deskflow.core.trigger_router import TriggerRouter
from deskflow.models.core import ExecutionStatusEnum

from conftest import edge, set_var, trigger


class TestTriggerRouter:
    """Only active workflows of the event's module whose trigger matches are started."""

    def test_starts_only_matching_workflows(self, engine, make_workflow, workflow_repository):
        matching = make_workflow(nodes=[trigger(), set_var("a1", "hit", True)],
                                 connections=[edge("t1", "a1")], name="matching")
        make_workflow(nodes=[trigger()], connections=[], status="inactive", name="inactive")
        make_workflow(nodes=[trigger(trigger_type="ticket_updated")], connections=[], name="other trigger")
        make_workflow(nodes=[trigger()], connections=[], module_type="assets", name="other module")
        workflow_repository.save_raw({
            "tenant_id": "tenant-1",
            "name": "broken",
            "module_type": "tickets",
            "status": "active",
            "nodes": [{"id": "x", "type": "teleport"}],
            "connections": [],
        })

        execution_ids = engine.trigger_workflow("tickets", "ticket_created", {"priority": "high"}, "T-1")

        assert len(execution_ids) == 1
        execution_id = execution_ids[0]
        assert engine.wait_for_execution(execution_id, timeout=5) == ExecutionStatusEnum.COMPLETED
        record = engine.get_execution(execution_id)
        assert record.workflow_id == matching
        assert record.module_item_id == "T-1"
        assert record.trigger_data == {"priority": "high"}

    def test_no_matches(self, engine, make_workflow):
        make_workflow(nodes=[trigger()], connections=[])

        assert engine.trigger_workflow("tickets", "ticket_closed", {}) == []

    def test_each_match_gets_its_own_execution(self, engine, make_workflow):
        make_workflow(nodes=[trigger()], connections=[], name="first")
        make_workflow(nodes=[trigger()], connections=[], name="second")

        router = TriggerRouter(engine.workflow_repository, engine)
        execution_ids = router.route("tickets", "ticket_created", {"userId": "u1"})

        assert len(set(execution_ids)) == 2
        for execution_id in execution_ids:
            assert engine.wait_for_execution(execution_id, timeout=5) == ExecutionStatusEnum.COMPLETED
