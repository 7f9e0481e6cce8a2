"""
Error taxonomy for the despachante service.

API-facing errors (ValidationError, AlreadyTrained, NotFound) are mapped to
4xx responses by the handlers registered in main.py. Gateway and upstream
errors are caught close to where they happen and turned into results or
fallbacks; they never reach the webhook response.
"""

from typing import Any, Optional


class DespachanteError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DespachanteError):
    """A required request field is missing or blank."""


class EmptyCorrection(ValidationError):
    """A correction was submitted without text."""

    def __init__(self, message: str = "correctedResponse must not be empty"):
        super().__init__(message)


class AlreadyTrained(DespachanteError):
    """The message already has a training example."""

    def __init__(self, message_id: int):
        super().__init__(f"message {message_id} was already approved or corrected")
        self.message_id = message_id


class NotFound(DespachanteError):
    """The referenced row does not exist."""


class GatewayError(DespachanteError):
    """The messaging gateway rejected the request or could not be reached."""

    def __init__(self, message: str, status: int = 0, details: Optional[Any] = None):
        super().__init__(message)
        self.status = status
        self.details = details


class UpstreamDegraded(DespachanteError):
    """An LLM or cloud storage call failed; callers fall back locally."""


class DocumentStorageError(DespachanteError):
    """Neither cloud upload nor the local fallback could store a document."""
