class SummariumError(Exception):
    """Base error for all user-facing Summarium exceptions."""


class ConfigurationError(SummariumError):
    """Raised when configuration is invalid or incomplete."""


class ProjectNotInitializedError(SummariumError):
    """Raised when the data directory or database is missing."""


class ValidationError(SummariumError):
    """Raised when request or model invariants fail."""


class JobNotFoundError(SummariumError):
    """Raised when a summary job id does not resolve to a record."""


class JobStateError(SummariumError):
    """Raised when a job is not in a state that allows the requested transition."""


class JobBusyError(JobStateError):
    """Raised when another invocation currently owns the job."""


class JobFailedError(SummariumError):
    """Raised after a job has been moved to the terminal error state."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


class SourceDownloadError(SummariumError):
    """Raised when the source document cannot be fetched."""


class ExtractionError(SummariumError):
    """Raised when no usable text can be extracted from a source document."""


class GenerationError(SummariumError):
    """Raised when the generation provider fails or returns an unusable reply."""


class HttpStatusError(SummariumError):
    """Raised for a non-2xx HTTP response."""

    def __init__(self, status: int, reason: str, url: str, body_excerpt: str = "") -> None:
        detail = f"HTTP {status} {reason}".strip()
        if body_excerpt:
            detail = f"{detail} - {body_excerpt}"
        super().__init__(f"{detail} ({url})")
        self.status = status
        self.reason = reason
        self.url = url
        self.body_excerpt = body_excerpt


class RetryExhaustedError(SummariumError):
    """Raised when every attempt allowed by a retry policy has failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
