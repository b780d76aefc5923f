"""Custom exception hierarchy for the pagepilot agent loop."""
from __future__ import annotations

from typing import Any, Optional


class PilotError(Exception):
    """Base exception for all pagepilot errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Surface-related exceptions
class SurfaceError(PilotError):
    """Base exception for controlled-surface capability failures."""

    pass


class SurfaceNotStartedError(SurfaceError):
    """Raised when attempting to use the surface before starting it."""

    def __init__(self):
        super().__init__("Surface has not been started. Call start() first.")


class ScreenshotError(SurfaceError):
    """Raised when screenshot capture fails."""

    def __init__(self, message: str, attempts: Optional[int] = None):
        details = {"attempts": attempts} if attempts else {}
        super().__init__(message, details)
        self.attempts = attempts


class ScriptExecutionError(SurfaceError):
    """Raised when a script cannot be evaluated in the page."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, {"retryable": retryable} if retryable else None)
        self.retryable = retryable


class NavigationError(SurfaceError):
    """Raised when page navigation fails."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        details = {}
        if url:
            details["url"] = url
        if timeout:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.url = url
        self.timeout = timeout


# Model-related exceptions
class ModelError(PilotError):
    """Base exception for model call and stream failures."""

    pass


class ModelConnectionError(ModelError):
    """Raised when unable to reach the model service."""

    def __init__(self, message: str, base_url: Optional[str] = None):
        details = {"base_url": base_url} if base_url else {}
        super().__init__(message, details)
        self.base_url = base_url


class ModelResponseError(ModelError):
    """Raised when the model returns an invalid or unparseable response."""

    def __init__(self, message: str, response: Optional[str] = None):
        details = {"response_preview": response[:200] if response else None}
        super().__init__(message, details)
        self.response = response


class ModelTimeoutError(ModelError):
    """Raised when a model call times out."""

    def __init__(self, timeout: float):
        super().__init__(f"Model call timed out after {timeout}s", {"timeout": timeout})
        self.timeout = timeout


# History and learning exceptions
class HistoryInvariantError(PilotError):
    """Raised when conversation history breaks a structural invariant."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message, {"index": index} if index is not None else None)
        self.index = index


class LearnerError(PilotError):
    """Raised when a self-improvement pass cannot produce an update."""

    pass


# Configuration exceptions
class ConfigurationError(PilotError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path


def is_image_rejection(error: Any) -> bool:
    """True when the model refused the screenshot we sent it."""
    return "unable to process input image" in str(error or "").lower()


def describe_error(error: Any) -> str:
    """Map a failure to the single message shown to the user."""
    if error is None:
        return "An unexpected error occurred. Please try again."

    if isinstance(error, ScreenshotError):
        return "Unable to capture a valid page screenshot. Please try again."

    message = str(error).lower()

    if is_image_rejection(message):
        return "I couldn't process the page screenshot. Please refresh the page and retry."
    if "401" in message or "unauthorized" in message or "api key" in message:
        return "Authentication error: Please check your API key."
    if "429" in message or "rate limit" in message:
        return "Rate limit exceeded. Please try again in a few moments."
    if isinstance(error, ModelTimeoutError) or "timeout" in message or "timed out" in message:
        return "Request timeout: The service took too long to respond. Please try again."
    if (
        isinstance(error, ModelConnectionError)
        or "network" in message
        or "connection" in message
        or "econnrefused" in message
    ):
        return "Network error: Please check your internet connection."

    return "Sorry, I encountered an error while processing your request. Please try again."
