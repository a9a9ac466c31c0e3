"""Error taxonomy shared by the API, the store and the worker."""

from typing import Optional


class CompressionServiceError(Exception):
    """Base class for every error raised by this service."""


class ValidationError(CompressionServiceError):
    """Bad or missing upload, unsupported extension or malformed option."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class NotFound(CompressionServiceError):
    """No job (or no result file) for the requested file id."""


class NotReady(CompressionServiceError):
    """Download requested before the job reached `completed`."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class ExecutionError(CompressionServiceError):
    """An external compression tool failed or could not be started."""


class StoreError(CompressionServiceError):
    """The job database could not be reached or rejected the operation."""


class DuplicateId(StoreError):
    """A job with the same internal id already exists."""
