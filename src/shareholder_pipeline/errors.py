"""Exception hierarchy for the import pipeline.

Every error raised deliberately by the pipeline derives from
`ImportPipelineError` so callers (the CLI, a web handler) can catch one type.
"""

from __future__ import annotations


class ImportPipelineError(Exception):
    """Base class for pipeline errors."""


class ParseError(ImportPipelineError):
    """The source could not be read or is in an unsupported format."""


class RowValidationError(ImportPipelineError, ValueError):
    """A single row failed normalization.

    Raised by `ShareholderRow` construction helpers; the normalizer turns it
    into a `RejectedRow` instead of letting it escape a batch.
    """

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class TransientStorageError(ImportPipelineError):
    """A storage or download call failed in a way that may succeed on retry."""


class PersistenceError(ImportPipelineError):
    """A staging, merge or aggregate call failed irrecoverably."""


class AuthorizationError(ImportPipelineError):
    """The caller may not access the source or the owner scope."""


class JobNotFoundError(ImportPipelineError, LookupError):
    """No import job exists with the given id."""


class InvalidTransitionError(ImportPipelineError):
    """A job status change outside pending → running → completed|error."""


class ProgressRegressionError(ImportPipelineError, ValueError):
    """A progress update would move rows_loaded backwards or past total_rows."""


class JobConflictError(ImportPipelineError):
    """Another job for the same owner is already running."""
