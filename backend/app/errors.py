from typing import Optional

from .schemas import ApiErrorDetail, ApiErrorPayload, ApiErrorResponse


class AppError(Exception):
    """Error carrying an HTTP status and a machine-readable code.

    Raised by the backup services and rendered by the FastAPI handler in
    ``app.main`` as an ``ApiErrorResponse`` envelope.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str,
        details: Optional[list[ApiErrorDetail]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details or []

    def to_response(self) -> ApiErrorResponse:
        return ApiErrorResponse(
            error=ApiErrorPayload(code=self.code, message=self.message, details=self.details)
        )


def invalid_schema(message: str, field: str) -> AppError:
    return AppError(400, message, "BACKUP_INVALID_SCHEMA", [ApiErrorDetail(field=field, message=message)])


def invalid_reference(message: str, field: str) -> AppError:
    return AppError(400, message, "BACKUP_INVALID_REFERENCE", [ApiErrorDetail(field=field, message=message)])
