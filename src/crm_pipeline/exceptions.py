"""Exception types raised by the ingestion pipeline."""


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""


class BrokerError(PipelineError):
    """The queue broker rejected or failed an operation."""


class DecodeError(PipelineError):
    """A delivered message could not be turned into an entity payload."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []


class PersistenceError(PipelineError):
    """A bulk write to the store failed."""

    def __init__(self, message: str, entity: str, rows: int):
        super().__init__(message)
        self.entity = entity
        self.rows = rows


class TransientPersistenceError(PersistenceError):
    """The store could not be reached; the same write may succeed later."""


class RejectedRecordsError(PersistenceError):
    """The store refused rows in the write, e.g. a constraint or data error."""
