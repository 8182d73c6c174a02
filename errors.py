import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None, *, retryable: bool = False):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.retryable = retryable

    def to_body(self) -> dict:
        body = {"error": self.message}
        if self.retryable:
            body["retryable"] = True
        return body


class AuthError(AppError):
    status_code = 401
    message = "Unauthorized"


class InvalidCode(AuthError):
    message = "Invalid code"


class CodeExpired(AuthError):
    message = "Code expired. Please request a new one."


class InvalidCredentials(AuthError):
    message = "Invalid admin password"


class ValidationError(AppError):
    status_code = 400
    message = "Invalid request"


class ExtractionFailed(AppError):
    status_code = 400
    message = "Could not parse document. Please ensure it is a clear image of a deal sheet."


class AlreadyPaid(AppError):
    status_code = 400
    message = "Already paid"


class WebhookSignatureError(AppError):
    status_code = 400
    message = "Webhook signature verification failed"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class DownstreamUnavailable(AppError):
    status_code = 500
    message = "Service temporarily unavailable. Please try again."


class RequiresPayment(Exception):
    """Raised by analyze for an unpaid deal; the route answers 200 with a paywall flag."""


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
        return JSONResponse({"error": "; ".join(problems) or "Invalid request"}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
