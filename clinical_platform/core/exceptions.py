"""Unified exception hierarchy for the clinical research platform.

Errors split into two families:
- Programmer errors (unknown workflow, unknown instance, duplicate
  registration) raised synchronously from the public API.
- Execution errors (missing inputs, timeouts, step failures) which the
  workflow engine records in instance history instead of raising.
"""

from typing import Optional, Dict, Any


class PlatformError(Exception):
    """Base exception for all platform errors.

    All custom exceptions inherit from this to enable
    catch-all error handling when needed.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            details: Additional context (optional)
            recoverable: Whether the error can be recovered from
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/audit records.

        Returns:
            Dictionary with error details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details
        }


class ConfigurationError(PlatformError):
    """Invalid or incomplete configuration.

    Raised when:
    - A setting fails validation
    - A step targets an external service but no resolver is configured
    - A workflow definition file cannot be parsed
    """

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        details = {"config_key": config_key, **kwargs}
        super().__init__(message, details=details, recoverable=False)


class DependencyError(PlatformError):
    """A required service or collaborator is unavailable.

    Raised when a service is requested from the registry that was never
    registered, or a registered service failed to initialize.
    """

    def __init__(
        self,
        message: str,
        dependency: str = "unknown",
        **kwargs
    ):
        """Initialize dependency error.

        Args:
            message: Error description
            dependency: Name of missing dependency
            **kwargs: Additional details
        """
        details = {"dependency": dependency, **kwargs}
        super().__init__(message, details=details, recoverable=True)


class StartupError(PlatformError):
    """A critical module or service failed during startup."""

    def __init__(self, message: str, component: str = "unknown", **kwargs):
        details = {"component": component, **kwargs}
        super().__init__(message, details=details, recoverable=False)


# ---------------------------------------------------------------------------
# Module errors
# ---------------------------------------------------------------------------

class UnknownModuleError(PlatformError):
    """Lookup of a module id that is not registered."""

    def __init__(self, module_id: str, **kwargs):
        super().__init__(
            f"Module '{module_id}' is not registered",
            details={"module_id": module_id, **kwargs},
            recoverable=False
        )
        self.module_id = module_id


class DuplicateModuleError(PlatformError):
    """Registration of a module id that already exists."""

    def __init__(self, module_id: str, **kwargs):
        super().__init__(
            f"Module '{module_id}' is already registered",
            details={"module_id": module_id, **kwargs},
            recoverable=False
        )
        self.module_id = module_id


class ModuleExecutionTimeoutError(PlatformError):
    """A module did not finish within its timeout guard."""

    def __init__(self, module_id: str, timeout: float, **kwargs):
        super().__init__(
            f"ModuleExecutionTimeout: module '{module_id}' exceeded {timeout}s",
            details={"module_id": module_id, "timeout": timeout, **kwargs},
            recoverable=True
        )
        self.module_id = module_id
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Workflow errors
# ---------------------------------------------------------------------------

class WorkflowNotFoundError(PlatformError):
    """Starting or looking up a workflow definition that is not registered."""

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' is not registered",
            details={"workflow_id": workflow_id, **kwargs},
            recoverable=False
        )
        self.workflow_id = workflow_id


class DuplicateWorkflowError(PlatformError):
    """Registration of a workflow id that already exists.

    Definitions are immutable once registered; a new version must be
    registered under a new id.
    """

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(
            f"Workflow '{workflow_id}' is already registered",
            details={"workflow_id": workflow_id, **kwargs},
            recoverable=False
        )
        self.workflow_id = workflow_id


class InstanceNotFoundError(PlatformError):
    """Querying or controlling an unknown workflow instance."""

    def __init__(self, instance_id: str, **kwargs):
        super().__init__(
            f"Workflow instance '{instance_id}' not found",
            details={"instance_id": instance_id, **kwargs},
            recoverable=False
        )
        self.instance_id = instance_id


class InvalidTransitionError(PlatformError):
    """An instance status change not allowed by the state machine."""

    def __init__(self, instance_id: str, current: str, target: str):
        super().__init__(
            f"Instance '{instance_id}' cannot move from '{current}' to '{target}'",
            details={"instance_id": instance_id, "current": current, "target": target},
            recoverable=False
        )


class MissingRequiredInputError(PlatformError):
    """A required step input resolved to nothing.

    The step fails before its module is invoked.
    """

    def __init__(
        self,
        step_id: str,
        input_name: str,
        source: Optional[str] = None,
        source_key: Optional[str] = None
    ):
        super().__init__(
            f"Step '{step_id}' is missing required input '{input_name}'"
            f" (source={source}, key={source_key})",
            details={
                "step_id": step_id,
                "input_name": input_name,
                "source": source,
                "source_key": source_key
            },
            recoverable=True
        )
        self.step_id = step_id
        self.input_name = input_name


class InputTypeMismatchError(PlatformError):
    """A resolved step input does not match its declared type."""

    def __init__(self, step_id: str, input_name: str, expected: str, actual: str):
        super().__init__(
            f"Step '{step_id}' input '{input_name}' expected {expected}, got {actual}",
            details={
                "step_id": step_id,
                "input_name": input_name,
                "expected": expected,
                "actual": actual
            },
            recoverable=True
        )


class ConditionEvaluationError(PlatformError):
    """A condition expression could not be compiled or evaluated."""

    def __init__(self, expression: str, reason: str):
        super().__init__(
            f"Cannot evaluate condition '{expression}': {reason}",
            details={"expression": expression, "reason": reason},
            recoverable=False
        )
        self.expression = expression


class StepExecutionError(PlatformError):
    """A workflow step failed.

    Wraps the underlying error together with the id of the step that
    produced it.
    """

    def __init__(
        self,
        step_id: str,
        message: str,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        details = {
            "step_id": step_id,
            "cause_type": type(cause).__name__ if cause is not None else None,
            **kwargs
        }
        if isinstance(cause, PlatformError):
            details["cause"] = cause.to_dict()
        super().__init__(
            f"Step '{step_id}' failed: {message}",
            details=details,
            recoverable=True
        )
        self.step_id = step_id
        self.cause = cause

    @property
    def error_type(self) -> str:
        """Name of the underlying error type, or this class when unwrapped."""
        if self.cause is not None:
            return type(self.cause).__name__
        return self.__class__.__name__


class PermissionDeniedError(PlatformError):
    """A user attempted an action their roles do not allow."""

    def __init__(self, user_id: str, action: str, required: Optional[list] = None):
        super().__init__(
            f"User '{user_id}' is not allowed to {action}",
            details={"user_id": user_id, "action": action, "required": required or []},
            recoverable=False
        )
