"""
Custom Exception Classes

Error taxonomy for the playbook engine. Every exception carries a
standardized error code and structured details so that collaborators
(dashboards, editors, API adapters) can surface failures verbatim.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """
    Standardized error codes for client-side handling.

    Format: CATEGORY_SPECIFIC_ERROR
    Categories: RESOURCE, VALIDATION, DISPATCH, NODE, ENGINE
    """
    # Resource errors
    RESOURCE_NOT_FOUND = "RESOURCE_001"

    # Validation errors
    VALIDATION_FAILED = "VALIDATION_001"
    VALIDATION_REGISTRY_CLOSED = "VALIDATION_002"

    # Dispatch rejections
    DISPATCH_PLAYBOOK_INACTIVE = "DISPATCH_001"
    DISPATCH_PLAYBOOK_NOT_FOUND = "DISPATCH_002"
    DISPATCH_PERMISSION_DENIED = "DISPATCH_003"
    DISPATCH_CONCURRENCY_LIMIT = "DISPATCH_004"

    # Node execution errors
    NODE_RETRYABLE_FAILURE = "NODE_001"
    NODE_FATAL_FAILURE = "NODE_002"

    # Engine misuse
    ENGINE_INVALID_TRANSITION = "ENGINE_001"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_001"


class AppException(Exception):
    """
    Base engine exception

    All custom exceptions inherit from this class to ensure consistent
    error handling across the engine.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code an API adapter should use
        error_code: Standardized error code for client handling
        details: Additional error details as a dictionary
        retryable: Whether the operation can be retried
    """
    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.retryable = retryable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON responses"""
        return {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class NotFoundError(AppException):
    """
    Resource not found error

    Raised when a playbook, playbook version or execution is unknown,
    or when a version has been pruned by the retention policy.

    Example:
        raise NotFoundError("Execution", "0b5c...")
    """
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} with id {identifier} not found",
            status_code=404,
            error_code=ErrorCode.RESOURCE_NOT_FOUND,
            details={"resource": resource, "identifier": identifier},
        )


class ValidationError(AppException):
    """
    Playbook validation error

    Raised at publish time when a definition breaks a graph invariant or
    a node configuration does not match its type's schema. Never raised
    while an execution is running.

    Example:
        raise ValidationError("Condition node has an unlabeled edge", node_id="check")
    """
    def __init__(self, reason: str, node_id: Optional[str] = None):
        details: Dict[str, Any] = {"reason": reason}
        if node_id is not None:
            details["node_id"] = node_id
        super().__init__(
            reason,
            status_code=400,
            error_code=ErrorCode.VALIDATION_FAILED,
            details=details,
        )
        self.reason = reason
        self.node_id = node_id


class RegistryClosedError(AppException):
    """Raised when a node type is registered after the registry was frozen."""
    def __init__(self, node_type: str):
        super().__init__(
            f"Node type registry is closed; cannot register '{node_type}'",
            status_code=500,
            error_code=ErrorCode.VALIDATION_REGISTRY_CLOSED,
            details={"node_type": node_type},
        )


class RejectReason(str, Enum):
    """Why a dispatch did not create an execution."""
    PLAYBOOK_INACTIVE = "playbook_inactive"
    PLAYBOOK_NOT_FOUND = "playbook_not_found"
    PERMISSION_DENIED = "permission_denied"
    CONCURRENCY_LIMIT_EXCEEDED = "concurrency_limit_exceeded"


_REJECT_CODES = {
    RejectReason.PLAYBOOK_INACTIVE: (409, ErrorCode.DISPATCH_PLAYBOOK_INACTIVE),
    RejectReason.PLAYBOOK_NOT_FOUND: (404, ErrorCode.DISPATCH_PLAYBOOK_NOT_FOUND),
    RejectReason.PERMISSION_DENIED: (403, ErrorCode.DISPATCH_PERMISSION_DENIED),
    RejectReason.CONCURRENCY_LIMIT_EXCEEDED: (429, ErrorCode.DISPATCH_CONCURRENCY_LIMIT),
}


class DispatchRejected(AppException):
    """
    Dispatch rejection

    Raised by the trigger dispatcher when a cause cannot be honored.
    No execution exists when this is raised.

    Example:
        raise DispatchRejected(RejectReason.PLAYBOOK_INACTIVE, playbook_id="onboarding")
    """
    def __init__(self, reason: RejectReason, message: Optional[str] = None, **details: Any):
        status_code, error_code = _REJECT_CODES[reason]
        super().__init__(
            message or f"Dispatch rejected: {reason.value}",
            status_code=status_code,
            error_code=error_code,
            details={"reason": reason.value, **details},
            retryable=reason is RejectReason.CONCURRENCY_LIMIT_EXCEEDED,
        )
        self.reason = reason


class NodeExecutionFailure(AppException):
    """
    Node handler failure

    Node handlers may raise a subclass instead of returning a failure
    result. `kind` is recorded verbatim as the execution's error kind.
    """
    def __init__(
        self,
        message: str,
        kind: str = "node_failure",
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            status_code=500,
            error_code=ErrorCode.NODE_RETRYABLE_FAILURE if retryable else ErrorCode.NODE_FATAL_FAILURE,
            details=details,
            retryable=retryable,
        )
        self.kind = kind


class RetryableNodeFailure(NodeExecutionFailure):
    """Transient failure; the engine retries within the node's budget."""
    def __init__(self, message: str, kind: str = "retryable_failure", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind=kind, retryable=True, details=details)


class FatalNodeFailure(NodeExecutionFailure):
    """Permanent failure; the execution fails without further attempts."""
    def __init__(self, message: str, kind: str = "fatal_failure", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind=kind, retryable=False, details=details)


class EngineInvariantViolation(AppException):
    """
    Illegal state transition

    Raised when a command is issued against an execution whose state does
    not allow it (e.g. resume on a completed execution). This is a misuse
    error and must never be silently ignored.

    Example:
        raise EngineInvariantViolation(
            "Cannot resume execution",
            current_state="completed",
            attempted="resume",
        )
    """
    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        attempted: Optional[str] = None,
        allowed_states: Optional[List[str]] = None,
    ):
        details: Dict[str, Any] = {}
        if current_state:
            details["current_state"] = current_state
        if attempted:
            details["attempted"] = attempted
        if allowed_states:
            details["allowed_states"] = allowed_states

        super().__init__(
            message,
            status_code=409,
            error_code=ErrorCode.ENGINE_INVALID_TRANSITION,
            details=details,
        )
        self.current_state = current_state
        self.attempted = attempted
