from __future__ import annotations

INTERNAL_ERROR = "internal_error"


class StorageError(RuntimeError):
    """Database failure; never exposes driver detail to API callers."""


class IntegrityViolation(StorageError):
    pass


class JobValidationError(ValueError):
    pass


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str, kind: str = "job") -> None:
        super().__init__(f"{kind}_not_found")
        self.job_id = job_id


class JobConflictError(RuntimeError):
    pass


class AlreadyPublishedError(JobConflictError):
    def __init__(self, job_id: str, page_id: str | None = None) -> None:
        super().__init__("already_published")
        self.job_id = job_id
        self.page_id = page_id


class UnauthorizedError(PermissionError):
    def __init__(self, reason: str = "unauthorized") -> None:
        super().__init__(reason)
