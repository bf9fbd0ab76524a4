"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import AppConfig, get_config, set_config, validate_config
from .core.actions import ActionDispatcher
from .core.execution_engine import WorkflowExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.scheduler import DelayScheduler
from .services import HttpClient
from .storage.database import create_tables, init_database
from .storage.repositories import WorkflowRepository, ExecutionRepository, LogRepository
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.workflow_repository: Optional[WorkflowRepository] = None
        self.execution_engine: Optional[WorkflowExecutionEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> None:
    """Bind the engine, create tables and run index migrations."""
    init_database(config.database_url, echo=config.database_echo)
    create_tables()
    logger.info("Database tables created")

    try:
        from .storage.migrations import run_migrations
        run_migrations()
    except Exception as e:
        # indexes are an optimisation; startup continues without them
        logger.warning(f"Database migrations failed: {str(e)}")


def build_execution_engine(config: AppConfig, scheduler: Optional[DelayScheduler] = None,
                           action_dispatcher: Optional[ActionDispatcher] = None):
    """Wire repositories, domain services and the engine from configuration."""
    workflow_repository = WorkflowRepository()
    engine = WorkflowExecutionEngine(
        workflow_repository=workflow_repository,
        execution_repository=ExecutionRepository(),
        log_repository=LogRepository(),
        action_dispatcher=action_dispatcher or ActionDispatcher(
            http_client=HttpClient(default_timeout=config.http_timeout),
            http_timeout=config.http_timeout,
        ),
        scheduler=scheduler,
        max_concurrent_executions=config.max_concurrent_executions,
        max_loop_iterations=config.max_loop_iterations,
    )
    return workflow_repository, engine


def setup_health_checks(engine: WorkflowExecutionEngine, logger) -> None:
    """Register component health checks."""
    from .core.error_recovery import health_checker
    from .storage.database import get_db

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"status": "healthy", "message": "Database connection successful"}

    def check_execution_engine():
        return {
            "status": "healthy",
            "message": "Execution engine operational",
            "active_executions": len(engine.get_active_executions()),
        }

    def check_action_dispatcher():
        return {
            "status": "healthy",
            "message": "Action dispatcher operational",
            "registered_actions": len(engine.list_action_types()),
        }

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=3.0)
    health_checker.register_check("action_dispatcher", check_action_dispatcher, timeout=2.0)
    logger.info("Health checks registered")


def create_lifespan_handler(config: AppConfig, scheduler: Optional[DelayScheduler] = None,
                            action_dispatcher: Optional[ActionDispatcher] = None):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config, logger)
            workflow_repository, engine = build_execution_engine(config, scheduler, action_dispatcher)

            app_state.config = config
            app_state.workflow_repository = workflow_repository
            app_state.execution_engine = engine
            app_state.logger = logger

            init_dependencies(workflow_repository=workflow_repository, execution_engine=engine)
            setup_health_checks(engine, logger)

            if config.resume_pending_delays:
                engine.resume_pending_delays()

            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")
        try:
            engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {str(e)}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, scheduler: Optional[DelayScheduler] = None,
               action_dispatcher: Optional[ActionDispatcher] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)
    set_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Automation workflow engine for service-desk events",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, scheduler, action_dispatcher)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service_name, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        from .core.error_recovery import health_checker

        try:
            results = await health_checker.run_all_checks()
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service_name,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )

        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={"service": service_name, "version": config.app_version, **results}
        )
