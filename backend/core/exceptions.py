"""Custom exceptions for the workflow core."""


class WorkflowEngineError(Exception):
    """Base exception for the workflow core."""

    def __init__(self, message: str, code: str = "WORKFLOW_ERROR"):
        """Initialize exception with message and machine-readable code.

        Args:
            message: Exception message
            code: Stable error code for callers and logs
        """
        self.message = message
        self.code = code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Definition, instance or step not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, "NOT_FOUND")


class ConflictError(WorkflowEngineError):
    """Operation conflicts with current state (inactive definition, active instance)."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message, "CONFLICT")


class InvalidStateError(WorkflowEngineError):
    """Instance is not in a state that allows the requested operation."""

    def __init__(self, message: str = "Invalid instance state"):
        super().__init__(message, "INVALID_STATE")


class ValidationError(WorkflowEngineError):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, "VALIDATION_FAILED")


class DefinitionValidationError(ValidationError):
    """A workflow definition failed validation before publish or update.

    The full ``ValidationResult`` is kept on ``result`` so callers can show
    every issue, not only the first.
    """

    def __init__(self, result, message: str = "Workflow definition is invalid"):
        self.result = result
        if result.errors:
            message = f"{message}: {result.errors[0].message}"
        super().__init__(message)


class TransitionError(WorkflowEngineError):
    """A transition resolved to a step that does not exist, or to nothing when that is not allowed."""

    def __init__(self, message: str = "Invalid transition"):
        super().__init__(message, "INVALID_TRANSITION")


class StepExecutionError(WorkflowEngineError):
    """A step handler could not run."""

    def __init__(self, message: str = "Step execution failed", step_id: str = None):
        self.step_id = step_id
        super().__init__(message, "STEP_FAILED")
