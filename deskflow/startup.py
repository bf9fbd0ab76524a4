"""Command line interface for the DeskFlow workflow engine."""

import argparse
import asyncio
import sys

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import ConfigurationError
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deskflow",
        description="DeskFlow - automation workflow engine for service-desk events"
    )

    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Worker threads available to workflow traversals"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the workflow engine server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create database tables")
    db_subparsers.add_parser("migrate", help="Create indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate tables")

    delays_parser = subparsers.add_parser("delays", help="Pending delay management")
    delays_subparsers = delays_parser.add_subparsers(dest="delays_command", help="Delay commands")
    delays_subparsers.add_parser("list", help="List persisted delay markers")
    resume_parser = delays_subparsers.add_parser("resume", help="Resume pending delays and wait for them")
    resume_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for resumed executions (default: wait until they finish)"
    )

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run component health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration from a preset or the environment, then apply flags."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.max_concurrent_executions:
        overrides["max_concurrent_executions"] = args.max_concurrent_executions

    if overrides:
        config = AppConfig(**{**config.model_dump(), **overrides})
    return config


def run_server(config: AppConfig):
    import uvicorn
    from .factory import create_app

    app = create_app(config)
    uvicorn.run(app, **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    from .storage.database import create_tables, drop_tables, init_database
    from .storage.migrations import run_migrations

    logger = get_logger(__name__)
    init_database(config.database_url, echo=config.database_echo)

    if command == "init":
        create_tables()
        logger.info("Database tables created successfully")
    elif command == "migrate":
        run_migrations()
    elif command == "reset":
        logger.info("Resetting database...")
        drop_tables()
        create_tables()
        run_migrations()
        logger.info("Database reset completed successfully")


def run_delays_command(command: str, config: AppConfig, timeout=None):
    from .factory import build_execution_engine, initialize_database

    logger = get_logger(__name__)
    initialize_database(config, logger)
    workflow_repository, engine = build_execution_engine(config)

    try:
        markers = engine.execution_repository.list_delay_markers()
        if command == "list":
            for marker in markers:
                print(f"  {marker.execution_id}  node={marker.node_id}  resume_at={marker.resume_at.isoformat()}")
            print(f"{len(markers)} pending delay(s)")
        elif command == "resume":
            resumed = engine.resume_pending_delays()
            print(f"Resumed {resumed} pending delay(s)")
            for execution_id in sorted({marker.execution_id for marker in markers}):
                status = engine.wait_for_execution(execution_id, timeout)
                print(f"  {execution_id}: {status.value}")
    finally:
        engine.shutdown()


async def run_health_check(config: AppConfig, detailed: bool = False):
    from .core.error_recovery import health_checker
    from .factory import build_execution_engine, initialize_database, setup_health_checks

    logger = get_logger(__name__)

    if not detailed:
        print(f"Service: {config.app_name}")
        print(f"Version: {config.app_version}")
        return

    initialize_database(config, logger)
    _, engine = build_execution_engine(config)
    try:
        setup_health_checks(engine, logger)
        results = await health_checker.run_all_checks()
    finally:
        engine.shutdown()

    print(f"Overall Status: {results['overall_status']}")
    print(f"Timestamp: {results['timestamp']}")
    for check_name, result in results.get('checks', {}).items():
        print(f"  {check_name}: {result.get('status', 'unknown')} - {result.get('message', 'No message')}")

    if results['overall_status'] != 'healthy':
        sys.exit(1)


def show_configuration(config: AppConfig):
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Executions: {config.max_concurrent_executions}")
    print(f"  Max Loop Iterations: {config.max_loop_iterations}")
    print(f"  HTTP Timeout: {config.http_timeout}s")
    print(f"  Resume Pending Delays: {config.resume_pending_delays}")


def validate_configuration_command(config: AppConfig):
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ConfigurationError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the ``deskflow`` command."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging
        )

        if args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
            return

        validate_config(config)

        if args.command == "run" or args.command is None:
            run_server(config)
        elif args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                sys.exit(1)
            run_database_command(args.db_command, config)
        elif args.command == "delays":
            if not args.delays_command:
                print("Delays command required. Use --help for options.")
                sys.exit(1)
            run_delays_command(args.delays_command, config, getattr(args, "timeout", None))
        elif args.command == "health":
            asyncio.run(run_health_check(config, args.detailed))
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
