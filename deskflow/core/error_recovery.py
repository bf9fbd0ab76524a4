"""Retry policy for storage writes and component health checks."""

import asyncio
import random
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Type

from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import RetryLogger, get_logger

logger = get_logger(__name__)


class RetryConfig:
    """Exponential backoff with optional jitter."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (TransientError, StorageError))

    def is_retryable(self, exception: Exception) -> bool:
        if not isinstance(exception, self.retryable_exceptions):
            return False
        # engine errors opt out of retries unless marked recoverable
        return not isinstance(exception, WorkflowEngineError) or exception.recoverable

    def backoff(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated call on retryable errors, sleeping between attempts.

    Used on repository writes so that a briefly locked SQLite file or a
    dropped database connection does not fail an execution.
    """
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        retry_logger = RetryLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not config.is_retryable(e):
                        raise
                    if attempt >= config.max_attempts:
                        retry_logger.gave_up(func.__qualname__, e, attempt)
                        raise
                    retry_logger.attempt_failed(func.__qualname__, e, attempt, config.max_attempts)
                    time.sleep(config.backoff(attempt))
                    attempt += 1

        return wrapper

    return decorator


class HealthChecker:
    """Registry of named component checks run by ``/health/detailed`` and ``deskflow health``.

    A check returns a dict (merged into its result) or a message string and
    signals failure by raising. Synchronous checks run in a worker thread so
    a hung database connection is bounded by the check's timeout.
    """

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        self.checks[name] = {"func": check_func, "timeout": timeout}
        logger.debug(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        if check is None:
            return {"status": "error", "message": f"Health check '{name}' not found",
                    "timestamp": datetime.utcnow().isoformat()}

        started = time.monotonic()
        try:
            if asyncio.iscoroutinefunction(check["func"]):
                outcome = await asyncio.wait_for(check["func"](), timeout=check["timeout"])
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(check["func"]), timeout=check["timeout"])
            result = {"status": "healthy", "message": outcome if isinstance(outcome, str) else "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {check['timeout']}s"}
        except Exception as e:
            logger.warning(f"Health check {name} failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        result["timestamp"] = datetime.utcnow().isoformat()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in list(self.checks)}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }


health_checker = HealthChecker()
