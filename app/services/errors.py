from __future__ import annotations


class WorkflowError(Exception):
    pass


class ValidationError(WorkflowError):
    pass


class AuthorizationError(WorkflowError):
    pass


class NotFoundError(WorkflowError):
    pass


class ConflictError(WorkflowError):
    pass


class StorageError(WorkflowError):
    pass


class NumberGenerationError(StorageError):
    """Raised when the allocator runs out of attempts.

    ``last_error`` keeps the final underlying failure for diagnostics.
    """

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error
