"""Workflow exceptions.

Every error the engine raises on purpose derives from ``WorkflowError`` and
carries the HTTP status the API layer answers with.
"""


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(WorkflowError):
    status_code = 422


class InvalidRuleConfig(ValidationError):
    """The governing rule cannot be expanded into approval steps."""


class NotFound(WorkflowError):
    status_code = 404


class RateUnavailable(WorkflowError):
    """No cached rate and the rate source failed. Safe to retry."""
    status_code = 503


class Unauthorized(WorkflowError):
    status_code = 403


class AlreadyDecided(WorkflowError):
    status_code = 409


class WorkflowClosed(WorkflowError):
    status_code = 409
