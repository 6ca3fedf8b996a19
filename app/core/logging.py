"""
Structured logging configuration with correlation IDs and workflow context.
"""
import logging
import sys
import time
import uuid
from typing import Any, Dict, Optional
from contextlib import contextmanager
from contextvars import ContextVar
import structlog

from app import __version__

# Context variables for request- and pipeline-scoped data
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
task_id_var: ContextVar[Optional[str]] = ContextVar('task_id', default=None)
approval_id_var: ContextVar[Optional[str]] = ContextVar('approval_id', default=None)

_service_name = "letter-orchestrator"
_environment = "development"


def add_correlation_id(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add correlation ID to log events."""
    correlation_id = correlation_id_var.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())[:8]
        correlation_id_var.set(correlation_id)

    event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def add_workflow_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add task and approval identifiers bound to the current pipeline."""
    task_id = task_id_var.get()
    if task_id:
        event_dict.setdefault("task_id", task_id)

    approval_id = approval_id_var.get()
    if approval_id:
        event_dict.setdefault("approval_id", approval_id)

    return event_dict


def add_service_context(
    logger, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add service context to log events."""
    event_dict["service"] = _service_name
    event_dict["version"] = __version__
    event_dict["environment"] = _environment
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    service_name: str = "letter-orchestrator",
    environment: str = "development",
) -> None:
    """
    Configure structured JSON logging.

    Args:
        log_level: Minimum level for emitted events
        service_name: Service name added to every event
        environment: Deployment environment added to every event
    """
    global _service_name, _environment
    _service_name = service_name
    _environment = environment

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_workflow_context,
            add_correlation_id,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def get_business_logger() -> structlog.stdlib.BoundLogger:
    """Get a business event logger instance."""
    return structlog.get_logger("business")


def get_performance_logger() -> structlog.stdlib.BoundLogger:
    """Get a performance logger instance."""
    return structlog.get_logger("performance")


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from current context."""
    return correlation_id_var.get()


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    task_id: Optional[str] = None,
    approval_id: Optional[str] = None,
):
    """
    Context manager binding correlation, task and approval identifiers.

    Values set here are visible to every log event emitted inside the block,
    including from concurrently running pipelines (each asyncio task has its
    own context copy).
    """
    tokens = []
    if correlation_id:
        tokens.append((correlation_id_var, correlation_id_var.set(correlation_id)))
    if task_id:
        tokens.append((task_id_var, task_id_var.set(task_id)))
    if approval_id:
        tokens.append((approval_id_var, approval_id_var.set(approval_id)))

    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def performance_timing(operation_name: str, **context):
    """
    Context manager for timing operations.

    Args:
        operation_name: Name of the operation being timed
        **context: Extra fields logged with the completion event
    """
    start_time = time.time()
    logger = get_performance_logger()
    outcome = "success"

    try:
        yield
    except Exception:
        outcome = "error"
        raise
    finally:
        duration = time.time() - start_time
        logger.info(
            "Operation completed",
            operation=operation_name,
            outcome=outcome,
            duration_ms=round(duration * 1000, 2),
            **context
        )


def log_business_event(event_type: str, **kwargs):
    """
    Log a structured business event.

    Args:
        event_type: Type of business event
        **kwargs: Additional event data
    """
    logger = get_business_logger()
    logger.info("Business event", event_type=event_type, **kwargs)
