"""
Error taxonomy for the note processing pipeline.

User-input errors (ValidationError) are surfaced immediately and never
retried. Infrastructure errors are recorded on the note's processing task
or sync status and retried from there.
"""

from typing import Optional


class NotesPipelineError(Exception):
    """Base class for all pipeline errors"""

    retryable = False


class ValidationError(NotesPipelineError):
    """Bad input, rejected before any pipeline work"""


class NotFoundError(NotesPipelineError):
    """Unknown campaign, note, artifact or proposal"""


class ConflictError(NotesPipelineError):
    """Resource already exists"""


class ExternalServiceError(NotesPipelineError):
    """Embedding or language-model call failed or timed out"""

    retryable = True


class ExtractionError(NotesPipelineError):
    """Model output could not be parsed into the expected structure"""

    retryable = True

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class CandidateRetrievalError(NotesPipelineError):
    """Vector store unreachable or timed out during candidate retrieval"""

    retryable = True


class AdjudicationError(NotesPipelineError):
    """Merge adjudication call failed or returned unparsable output"""

    retryable = True


class SyncError(NotesPipelineError):
    """A projection store write failed"""

    retryable = True

    def __init__(self, store: str, message: str):
        super().__init__(f"{store} sync failed: {message}")
        self.store = store
        self.message = message


class QueueFullError(NotesPipelineError):
    """Note worker pool is saturated"""

    retryable = True
