"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, init_database
from .models import (
    WorkflowModel,
    WorkflowExecutionModel,
    ExecutionLogModel,
    ExecutionStateModel,
    TicketModel,
    NotificationModel,
    KnowledgeArticleModel,
)

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "init_database",
    "WorkflowModel",
    "WorkflowExecutionModel",
    "ExecutionLogModel",
    "ExecutionStateModel",
    "TicketModel",
    "NotificationModel",
    "KnowledgeArticleModel",
]
