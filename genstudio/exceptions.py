"""
Error taxonomy for the generation lifecycle.
"""
import re
from typing import Any, Optional

INVALID_ENDPOINT_PATTERN = re.compile(r"invalid url", re.IGNORECASE)


class GenStudioError(Exception):
    """Base class for lifecycle errors. ``message`` is safe to show to users."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ApiRequestError(GenStudioError):
    """Transport failure or non-2xx response from the generation API."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def is_invalid_endpoint(self) -> bool:
        """True when the server (or URL resolution) rejected the path itself."""
        return bool(INVALID_ENDPOINT_PATTERN.search(self.message))


class SubmissionError(GenStudioError):
    """Submission failed before the provider assigned a task id."""

    def __init__(self, message: str, generation_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.generation_id = generation_id
        self.status_code = status_code


class PollError(GenStudioError):
    """Transient status-check failure; the next tick retries."""


class ProviderFailure(GenStudioError):
    """The provider reported the job as failed."""


class DownloadError(GenStudioError):
    """The artifact could not be fetched after the job completed."""
