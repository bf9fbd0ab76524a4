"""Pytest configuration and fixtures."""

import os
import tempfile
import threading
import uuid

import pytest

from deskflow.core.actions import ActionDispatcher
from deskflow.core.execution_engine import WorkflowExecutionEngine
from deskflow.core.scheduler import DelayScheduler
from deskflow.models.core import WorkflowDefinition
from deskflow.services.http_client import HttpResponse
from deskflow.storage.database import create_tables, init_database, reset_database_engine
from deskflow.storage.repositories import ExecutionRepository, LogRepository, WorkflowRepository


START_TIME = 1_700_000_000.0


class ManualTimer:
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(DelayScheduler):
    """Simulated clock: timers fire only when the test advances time."""

    def __init__(self, start: float = START_TIME):
        self._now = start
        self._timers = []
        self._cond = threading.Condition()

    def now(self) -> float:
        with self._cond:
            return self._now

    def schedule(self, seconds, callback):
        with self._cond:
            timer = ManualTimer(self._now + seconds, callback)
            self._timers.append(timer)
            self._cond.notify_all()
        return timer

    @property
    def pending(self):
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def wait_for_pending(self, count: int = 1, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.pending) >= count, timeout)

    def advance(self, seconds: float):
        with self._cond:
            self._now += seconds
            due = sorted((t for t in self.pending if t.due <= self._now), key=lambda t: t.due)
            for timer in due:
                timer.fired = True
        for timer in due:
            timer.callback()


class RecordingTicketService:
    def __init__(self):
        self.updates = []
        self.created = []
        self.assignments = []

    def update_ticket(self, ticket_id, updates):
        self.updates.append((ticket_id, updates))

    def create_ticket(self, **fields):
        self.created.append(fields)
        return f"ticket-{len(self.created)}"

    def assign_ticket(self, ticket_id, assignee_id):
        self.assignments.append((ticket_id, assignee_id))


class RecordingNotificationService:
    def __init__(self):
        self.sent = []

    def send(self, **kwargs):
        self.sent.append(kwargs)
        return [str(uuid.uuid4()) for _ in kwargs["recipients"]]


class RecordingKnowledgeService:
    def __init__(self):
        self.articles = []

    def create_article(self, **fields):
        self.articles.append(fields)
        return f"article-{len(self.articles)}"


class FakeHttpClient:
    def __init__(self, response=None):
        self.response = response or HttpResponse(200, "OK", {"ok": True})
        self.requests = []

    def request(self, method, url, headers=None, body=None, timeout=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class RecordingEngine(WorkflowExecutionEngine):
    """Keeps finished contexts so tests can inspect final variables."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.finished = {}

    def _finalize(self, ctx):
        self.finished[ctx.execution_id] = ctx
        super()._finalize(ctx)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    os.close(db_fd)

    init_database(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def workflow_repository(temp_db):
    return WorkflowRepository()


@pytest.fixture
def execution_repository(temp_db):
    return ExecutionRepository()


@pytest.fixture
def log_repository(temp_db):
    return LogRepository()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def services():
    return {
        "tickets": RecordingTicketService(),
        "notifications": RecordingNotificationService(),
        "knowledge": RecordingKnowledgeService(),
        "http": FakeHttpClient(),
    }


@pytest.fixture
def dispatcher(services):
    return ActionDispatcher(
        ticket_service=services["tickets"],
        notification_service=services["notifications"],
        knowledge_service=services["knowledge"],
        http_client=services["http"],
        http_timeout=5.0,
    )


@pytest.fixture
def engine(workflow_repository, execution_repository, log_repository, dispatcher, scheduler):
    engine = RecordingEngine(
        workflow_repository=workflow_repository,
        execution_repository=execution_repository,
        log_repository=log_repository,
        action_dispatcher=dispatcher,
        scheduler=scheduler,
        max_concurrent_executions=4,
        max_loop_iterations=50,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def make_workflow(workflow_repository):
    """Store a workflow built from camelCase node/connection dicts and return its id."""

    def _make(nodes, connections, variables=None, status="active", module_type="tickets",
              name="Test workflow", tenant_id="tenant-1"):
        definition = WorkflowDefinition.parse_definition({
            "tenant_id": tenant_id,
            "name": name,
            "module_type": module_type,
            "status": status,
            "nodes": nodes,
            "connections": connections,
            "variables": variables or [],
        })
        return workflow_repository.save(definition)

    return _make


def edge(source, target, label=None):
    data = {"sourceId": source, "targetId": target}
    if label is not None:
        data["label"] = label
    return data


def trigger(node_id="t1", trigger_type="ticket_created"):
    return {"id": node_id, "type": "trigger", "triggerType": trigger_type}


def set_var(node_id, name, value):
    return {"id": node_id, "type": "action", "actionType": "set_variable",
            "config": {"name": name, "value": value}}
