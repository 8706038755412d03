"""Engine error taxonomy.

Every error carries the HTTP status the API layer answers with, so routes
never need to translate exceptions one by one.
"""


class EngineError(Exception):
    status_code: int = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ConflictError(EngineError):
    """Duplicate identity, or an optimistic update that kept losing races."""

    status_code = 409


class NotFoundError(EngineError):
    status_code = 404


class SchemaValidationError(EngineError):
    """Resolved parameters do not match the deployment's parameter schema."""

    status_code = 422

    def __init__(self, message: str = "", errors: list[str] | None = None, **context):
        super().__init__(message, **context)
        self.errors = errors or []


class UnknownPoolError(EngineError):
    status_code = 404


class UnknownQueueError(EngineError):
    status_code = 404


class QueueFullError(EngineError):
    """Backpressure: the target queue is at capacity. Retry later."""

    status_code = 429


class ClaimConflictError(EngineError):
    """Another worker claimed the run first."""

    status_code = 409


class InvalidStateTransitionError(EngineError):
    status_code = 409


class StoreUnavailableError(EngineError):
    """Persistence kept failing after every retry attempt."""

    status_code = 503
