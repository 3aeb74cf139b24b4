"""Exception types raised by the alert generation pipeline."""

from __future__ import annotations


class AlertPipelineError(RuntimeError):
    """Base class for fatal failures in the strict alert pipeline."""


class MissingLocationError(AlertPipelineError):
    """Raised when a request arrives without a location or coordinates."""


class SearchError(AlertPipelineError):
    """Raised when the web search step cannot produce grounding results."""


class GenerationError(AlertPipelineError):
    """Raised when the chat-completion provider fails or returns nothing."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AlertParseError(AlertPipelineError):
    """Raised when no alert records can be extracted from model output."""
