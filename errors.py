"""
Error taxonomy for chat turns and actions.

Per-action errors (validation, not found, store) are turned into failed
action outcomes by the executor. Completion-service errors drive the
orchestrator's fallback ladder. Only FatalTurnError ends a turn.
"""

from typing import Optional


class CounsellorError(Exception):
    """Base class for all application errors."""

    # Plain-language message safe to show to the end user
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message


class ValidationError(CounsellorError):
    """Action arguments are missing or malformed."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}", user_message=f"The value for '{field}' was not valid ({message}).")
        self.field = field


class NotFoundError(CounsellorError):
    """An action's target (task, university, action name) cannot be resolved."""

    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class ConflictError(CounsellorError):
    """The request clashes with the current state (e.g. removing a locked university)."""

    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class ExternalServiceError(CounsellorError):
    user_message = "The advisor service is not responding right now."


class CompletionError(ExternalServiceError):
    """The completion service rejected or failed a request.

    `failed_generation` carries the raw model output when the service
    reports that the model's own tool-call syntax was malformed.
    """

    def __init__(self, message: str, failed_generation: Optional[str] = None):
        super().__init__(message)
        self.failed_generation = failed_generation


class StoreError(CounsellorError):
    user_message = "I couldn't save that change right now."


class FatalTurnError(CounsellorError):
    """A failure that ends the whole turn (e.g. persisting the reply)."""

    user_message = "Your message could not be processed. Please try again."
