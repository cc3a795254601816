from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class NotFoundError(ApiError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class PersistenceError(ApiError):
    """Storage backend unavailable; the call failed and nothing was written."""

    def __init__(self, message: str = "storage unavailable") -> None:
        super().__init__(
            code="STORAGE_UNAVAILABLE",
            message=message,
            error_class="availability",
            retryable=True,
            http_status=503,
        )


class EngineFailure(Exception):
    """Analysis engine raised, returned garbage, or ran past its deadline."""
