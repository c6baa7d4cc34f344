"""Centralized exception hierarchy for the video-digest package.

All domain-specific exceptions inherit from ``VideoDigestError`` so
callers can catch the entire family with a single ``except`` clause.
Messages are meant to be shown to the user as-is.
"""

from __future__ import annotations


class VideoDigestError(Exception):
    """Base exception for all video-digest errors."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigError(VideoDigestError):
    """Base exception for provider configuration problems."""


class ConfigMissingError(ConfigError):
    """Raised when no provider configuration is selected."""


class ConfigInvalidError(ConfigError):
    """Raised when the selected provider configuration is unusable.

    Attributes:
        field: Name of the offending field (``api_key``, ``endpoint_url``
            or ``model``).
    """

    def __init__(self, message: str, *, field: str) -> None:
        super().__init__(message)
        self.field = field


# ---------------------------------------------------------------------------
# Upstream errors
# ---------------------------------------------------------------------------


class UpstreamError(VideoDigestError):
    """Base exception for chat-completion endpoint failures."""


class UpstreamHTTPError(UpstreamError):
    """Raised when the endpoint answers with a non-2xx status.

    Attributes:
        status: HTTP status code.
        body: Leading snippet of the response body.
    """

    def __init__(self, message: str, *, status: int, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamConnectionError(UpstreamError):
    """Raised when the endpoint cannot be reached or the transfer breaks."""


class NarrativeTimeoutError(VideoDigestError):
    """Raised when the streamed narrative request exceeds its time budget."""


# ---------------------------------------------------------------------------
# Result errors
# ---------------------------------------------------------------------------


class IncompleteSummaryError(VideoDigestError):
    """Raised when the narrative summary is empty after cleanup."""


# ---------------------------------------------------------------------------
# Task errors
# ---------------------------------------------------------------------------


class TaskAbortedError(VideoDigestError):
    """Raised when a task's cancel token is tripped while work is in flight."""


class TaskAlreadyCancelledError(VideoDigestError):
    """Raised when a task ended without producing a result or an error."""
