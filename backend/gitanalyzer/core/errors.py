"""Domain exceptions raised by the analysis core.

Fatal errors abort a whole run and put the project into ``error``.
Per-type errors are logged by the orchestrator and the run continues.
"""


class AnalysisError(Exception):
    """Base class for analysis pipeline errors."""


class InvalidRepositoryURLError(AnalysisError, ValueError):
    """The submitted URL does not name a GitHub owner/repo pair."""


class RepositoryNotFoundError(AnalysisError):
    """The repository metadata fetch did not succeed."""


class MissingCredentialsError(AnalysisError):
    """No API key is configured for the LLM gateway."""


class FetchError(AnalysisError):
    """A single GitHub sub-request failed. Swallowed by the extractor."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class LLMRequestError(AnalysisError):
    """The gateway rejected a request with a non-retryable status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExhaustedRetriesError(AnalysisError):
    """The LLM call still failed after the last allowed attempt."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"LLM call failed after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


class AnalysisInProgressError(AnalysisError):
    """Another run already holds the project's lease."""

    def __init__(self, project_id):
        super().__init__(f"Analysis already in progress for project {project_id}")
        self.project_id = project_id


class SnapshotMissingError(AnalysisError):
    """A queue item was processed before the snapshot was extracted."""


class ProjectNotFoundError(AnalysisError):
    """No project with the given id belongs to the caller."""


class QueueItemNotFoundError(AnalysisError):
    """The queue item does not exist, or was removed by a cancellation."""


class PollTimeoutError(AnalysisError):
    """The client stopped polling after the wall-clock ceiling."""

    def __init__(self, elapsed: float):
        super().__init__(f"Analysis did not finish within {elapsed:.0f}s")
        self.elapsed = elapsed


class AnalysisFailedError(AnalysisError):
    """The project reached the ``error`` status while being polled."""
