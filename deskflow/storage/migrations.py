"""Index migrations for execution, log and delay-marker queries."""

from sqlalchemy import text
from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


INDEX_STATEMENTS = [
    # executions by status and completion (cleanup, dashboards)
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_status_completed
       ON workflow_executions(status, completed_at)""",
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow_started
       ON workflow_executions(workflow_id, started_at)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_logs_execution_timestamp
       ON workflow_execution_logs(execution_id, timestamp)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_state_resume_at
       ON workflow_execution_state(resume_at)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_state_execution
       ON workflow_execution_state(execution_id)""",
    """CREATE INDEX IF NOT EXISTS idx_workflows_module_status
       ON workflows(module_type, status)""",
]


def create_indexes():
    """Create indexes used by the engine's hot queries."""
    engine = get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
            logger.info(f"Created {len(INDEX_STATEMENTS)} database indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite():
    """Apply SQLite pragmas that help concurrent log appends."""
    engine = get_database_engine()
    if "sqlite" not in str(engine.url) or ":memory:" in str(engine.url):
        return
    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode=WAL"))
        connection.execute(text("PRAGMA optimize"))
        connection.commit()
    logger.info("Applied SQLite optimizations")


def run_migrations():
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_indexes()
    optimize_sqlite()
    logger.info("Database migrations completed successfully")
