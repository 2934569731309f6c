import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400, details: dict | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


class NotFoundError(AppError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} with ID {resource_id} was not found.",
            status_code=404,
        )


class ConflictError(AppError):
    def __init__(self, message: str):
        super().__init__(code="CONFLICT", message=message, status_code=409)


class ForbiddenError(AppError):
    def __init__(self, message: str = "You do not have permission to perform this action."):
        super().__init__(code="FORBIDDEN", message=message, status_code=403)


class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(code="VALIDATION_ERROR", message=message, status_code=422)


class UpgradeRequiredError(AppError):
    """The host's plan does not allow another meeting this month."""

    def __init__(self, limit: int, plan: str, current: int):
        self.limit = limit
        self.plan = plan
        self.current = current
        super().__init__(
            code="UPGRADE_REQUIRED",
            message=(
                f"Your {plan} plan allows {limit} video meetings per month. "
                "Upgrade your plan to schedule more."
            ),
            status_code=402,
            details={"limit": limit, "plan": plan, "current": current},
        )


class ProviderError(AppError):
    """A call to the video room provider was rejected."""

    def __init__(self, code: str, provider_message: str):
        self.provider_message = provider_message
        super().__init__(code=code, message=provider_message, status_code=502)


class RoomCreationFailed(ProviderError):
    def __init__(self, provider_message: str = "Failed to create video room"):
        super().__init__("ROOM_CREATION_FAILED", provider_message)


class TokenIssuanceFailed(ProviderError):
    def __init__(self, provider_message: str = "Failed to generate meeting token"):
        super().__init__("TOKEN_ISSUANCE_FAILED", provider_message)


class RoomDeletionFailed(ProviderError):
    def __init__(self, provider_message: str = "Failed to delete video room"):
        super().__init__("ROOM_DELETION_FAILED", provider_message)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": "HTTP_ERROR",
                    "message": exc.detail,
                    "details": None,
                }
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(exc),
                    "details": None,
                }
            },
        )
