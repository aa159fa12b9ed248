"""
Design flow error taxonomy.

Preview failures stay local (they only surface as a readiness "error" status).
Everything else propagates to whoever triggered the commit or navigation.
Cancellation of a superseded preview is never an error and has no class here.
"""

from typing import Optional


class DesignFlowError(Exception):
    """Base class for every orchestrator error."""


class ValidationError(DesignFlowError):
    """Required fields missing or malformed at a commit boundary."""

    def __init__(self, message: str, missing_fields: Optional[list[str]] = None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class UnknownFieldError(ValidationError):
    """An edit addressed a field the stage does not own."""

    def __init__(self, stage_id: str, field: str):
        super().__init__(f"Stage '{stage_id}' has no field '{field}'", [field])
        self.stage_id = stage_id
        self.field = field


class InvalidTransitionError(DesignFlowError):
    """Navigation requested from a state that does not allow it."""


class MissingIdentityError(DesignFlowError):
    """Tried to leave the initial stage without design and project handles."""


class IncompleteIdentityError(DesignFlowError):
    """A commit needs both handles but only some (or none) are known."""


class CommitRejectedError(DesignFlowError):
    """The design backend refused a create or update."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PreviewTransportError(DesignFlowError):
    """Network or engine failure during a live preview call."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RecommendedValuesError(DesignFlowError):
    """Species lookup failed. Logged by the controller, never blocks navigation."""
