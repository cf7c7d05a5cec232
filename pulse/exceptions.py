"""Exceptions raised by the Pulse scheduling and broadcast core.

Every error carries a stable error code and optional details so that the API
layer can render them consistently. Run outcomes such as timeouts and failed
connection tests are not exceptions; they travel as Outcome values.
"""

from typing import Any, Dict, Optional


class PulseError(Exception):
    """Base error for the scheduling and broadcast core."""

    def __init__(
        self,
        message: str = "Pulse operation failed",
        error_code: str = "pulse_error",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class InvalidExpression(PulseError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: Optional[str] = None):
        message = f"Invalid cron expression '{expression}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code="invalid_expression",
            details={"expression": expression, "reason": reason} if reason else {"expression": expression}
        )
        self.expression = expression
        self.reason = reason


class NotFound(PulseError):
    """Raised when a schedule, resource or operation id is unknown."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(
            message=f"{kind} '{identifier}' not found",
            error_code="not_found",
            details={"kind": kind, "id": identifier}
        )
        self.kind = kind
        self.identifier = identifier


class AlreadyRunning(PulseError):
    """Raised when a schedule already has an active run."""

    def __init__(self, schedule_id: str, operation_id: Optional[str] = None):
        details: Dict[str, Any] = {"schedule_id": schedule_id}
        if operation_id:
            details["operation_id"] = operation_id
        super().__init__(
            message=f"Schedule '{schedule_id}' already has an active run",
            error_code="already_running",
            details=details
        )
        self.schedule_id = schedule_id
        self.operation_id = operation_id


class AccessDenied(PulseError):
    """Raised when the authorization collaborator rejects an action."""

    def __init__(self, principal: str, action: str, resource_id: Optional[str] = None):
        super().__init__(
            message=f"Principal '{principal}' may not {action}",
            error_code="access_denied",
            details={"principal": principal, "action": action, "resource_id": resource_id}
        )
        self.principal = principal
        self.action = action
        self.resource_id = resource_id


class OperationClosed(PulseError):
    """Raised when an event is published after an operation reached a terminal state."""

    def __init__(self, operation_id: str, status: str):
        super().__init__(
            message=f"Operation '{operation_id}' is already {status}",
            error_code="operation_closed",
            details={"operation_id": operation_id, "status": status}
        )
        self.operation_id = operation_id
        self.status = status


class ProgressRegression(PulseError):
    """Raised when a progress event would lower the reported percentage."""

    def __init__(self, operation_id: str, current: float, proposed: float):
        super().__init__(
            message=(
                f"Progress for operation '{operation_id}' cannot move from "
                f"{current:.1f}% back to {proposed:.1f}%"
            ),
            error_code="progress_regression",
            details={"operation_id": operation_id, "current": current, "proposed": proposed}
        )
        self.operation_id = operation_id
        self.current = current
        self.proposed = proposed
