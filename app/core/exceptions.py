"""
Custom exception classes for the letter workflow orchestrator.

Two families live here: API exceptions (``BaseAPIException`` and subclasses)
raised from route handlers, and the orchestration taxonomy
(``OrchestrationError`` and subclasses) raised by adapters, the approval
store and the state machine. ``map_orchestration_error`` bridges the two.
"""
from typing import Optional, Any, Dict
import uuid
from fastapi import HTTPException, status


class BaseAPIException(HTTPException):
    """Base exception for API errors."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.detail,
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


class ServiceUnavailableError(BaseAPIException):
    """Exception for external service unavailability."""

    def __init__(
        self,
        service_name: str,
        detail: Optional[str] = None,
        retry_after: Optional[int] = None,
        **context
    ):
        self.service_name = service_name
        self.retry_after = retry_after
        if not detail:
            detail = f"External service '{service_name}' is currently unavailable"

        headers = {}
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="ORC_004",
            headers=headers,
            context={"service_name": service_name, "retry_after": retry_after, **context},
        )


# Orchestration taxonomy
class OrchestrationError(Exception):
    """Base class for errors crossing a pipeline step boundary."""

    error_code = "ORC_100"
    retryable = False

    def __init__(self, message: str, step: Optional[str] = None, **context):
        self.message = message
        self.step = step
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured error detail persisted on failed approval records."""
        return {
            "error_code": self.error_code,
            "error_type": type(self).__name__,
            "message": self.message,
            "step": self.step,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ValidationError(OrchestrationError):
    """A required upstream field is missing. Never retried."""

    error_code = "ORC_101"

    def __init__(self, message: str, field: Optional[str] = None, **context):
        self.field = field
        if field:
            message = f"Validation failed for field '{field}': {message}"
            context["field"] = field
        super().__init__(message, **context)


class _ServiceCallError(OrchestrationError):
    """Failure reported by, or on the way to, one external service."""

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: Optional[int] = None,
        **context
    ):
        self.service_name = service_name
        self.status_code = status_code
        super().__init__(
            f"[{service_name}] {message}",
            service_name=service_name,
            status_code=status_code,
            **context
        )


class TransientAdapterError(_ServiceCallError):
    """Network failure, timeout, 5xx or open circuit. Retried with backoff."""

    error_code = "ORC_102"
    retryable = True


class AdapterRequestError(_ServiceCallError):
    """External service rejected the request (4xx). Not retried."""

    error_code = "ORC_103"


class PolicyError(OrchestrationError):
    """Operation refused by an orchestrator policy such as the revision cap."""

    error_code = "ORC_104"


class ConflictError(OrchestrationError):
    """Mutation attempted on a record in an incompatible or terminal state."""

    error_code = "ORC_105"


class IrrecoverableDeliveryError(OrchestrationError):
    """Mail submission failed after approval. Requires operator intervention."""

    error_code = "ORC_106"


class ApprovalNotFoundError(OrchestrationError):
    """No approval record exists for the identifier."""

    error_code = "ORC_107"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval '{approval_id}' not found", approval_id=approval_id)


# Error mapping utilities
def map_orchestration_error(error: OrchestrationError) -> BaseAPIException:
    """Map an orchestration error to an API exception."""
    if isinstance(error, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, (ConflictError, PolicyError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, ApprovalNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, TransientAdapterError):
        return ServiceUnavailableError(
            service_name=error.service_name,
            detail=str(error),
        )
    elif isinstance(error, (IrrecoverableDeliveryError, AdapterRequestError)):
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return BaseAPIException(
        status_code=status_code,
        detail=str(error),
        error_code=error.error_code,
        context=error.context,
    )


def get_user_friendly_error_message(error_code: str) -> str:
    """Get user-friendly error message for error code."""
    error_messages = {
        "ORC_004": "Service temporarily unavailable. Please try again later.",
        "ORC_101": "A required field is missing. The task cannot be processed.",
        "ORC_102": "An external service is temporarily unavailable.",
        "ORC_103": "An external service rejected the request.",
        "ORC_104": "The operation is not permitted by workflow policy.",
        "ORC_105": "The approval is not in a state that allows this action.",
        "ORC_106": "Letter delivery failed and needs operator attention.",
        "ORC_107": "Approval not found.",
    }
    return error_messages.get(error_code, "An error occurred. Please try again.")


def orchestration_http_exception(error: OrchestrationError) -> HTTPException:
    """HTTPException with the ``{"error", "error_code"}`` detail body used by the routes."""
    api_error = map_orchestration_error(error)
    return HTTPException(
        status_code=api_error.status_code,
        detail={
            "error": str(error),
            "error_code": error.error_code,
            "message": get_user_friendly_error_message(error.error_code),
        },
        headers=api_error.headers or None,
    )
