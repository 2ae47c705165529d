class AnchorError(Exception):
    """Base class for everything the anchoring core raises on purpose."""


class SubmissionError(AnchorError):
    """The transaction could not be broadcast. Retryable."""


class ConfirmationTimeout(AnchorError):
    """Broadcast succeeded but no receipt arrived within the wait bound."""


class ChainExecutionFailure(AnchorError):
    """A receipt came back with a failure (reverted) status."""


class QueryError(AnchorError):
    """The RPC call asking for a receipt failed."""


class NotFound(AnchorError):
    def __init__(self, record_id: str):
        super().__init__(f"Record '{record_id}' not found.")
        self.record_id = record_id


class Conflict(AnchorError):
    """A job for the record is already queued, scheduled or running."""

    def __init__(self, record_id: str, job_id: str):
        super().__init__(f"Record '{record_id}' already has job '{job_id}' in flight.")
        self.record_id = record_id
        self.job_id = job_id


class InvalidState(AnchorError):
    """The record's status does not allow the requested operation."""
