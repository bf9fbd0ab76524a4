"""SQLAlchemy database models for the workflow engine and its domain collaborators."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Database model for automation workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    module_type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="draft")  # draft, active, inactive, archived
    nodes = Column(JSON, nullable=False, default=list)
    connections = Column(JSON, nullable=False, default=list)
    variables = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("WorkflowExecutionModel", back_populates="workflow")

    def to_definition_dict(self):
        """Row contents in the shape accepted by WorkflowDefinition."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "module_type": self.module_type,
            "status": self.status,
            "nodes": self.nodes,
            "connections": self.connections,
            "variables": self.variables,
            "version": self.version,
        }


class WorkflowExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    tenant_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # running, completed, failed, cancelled
    trigger_data = Column(JSON)
    module_type = Column(String, nullable=False)
    module_item_id = Column(String)
    error_message = Column(Text)
    execution_time_ms = Column(Integer)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    logs = relationship("ExecutionLogModel", back_populates="execution")


class ExecutionLogModel(Base):
    """Database model for execution log entries."""
    __tablename__ = "workflow_execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    tenant_id = Column(String, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)
    level = Column(String, nullable=False)  # info, warning, error
    message = Column(Text, nullable=False)
    node_id = Column(String)
    execution_path = Column(JSON)

    execution = relationship("WorkflowExecutionModel", back_populates="logs")


class ExecutionStateModel(Base):
    """Resumable marker for one scheduled delay continuation.

    A delay node inside a loop body schedules one continuation per
    iteration, so several rows may share an execution and node.
    """
    __tablename__ = "workflow_execution_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    resume_at = Column(DateTime, nullable=False)
    context = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)


class TicketModel(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="open")
    priority = Column(String, nullable=False, default="medium")
    category = Column(String)
    assigned_to = Column(String)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text)
    type = Column(String, nullable=False, default="system")
    module_type = Column(String)
    module_item_id = Column(String)
    is_read = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class KnowledgeArticleModel(Base):
    __tablename__ = "knowledge_articles"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text)
    category_id = Column(String)
    status = Column(String, nullable=False, default="draft")
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
