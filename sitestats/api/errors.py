from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from ..shared.errors import PayloadTooLargeError, SitestatsError, ValidationError

log = structlog.get_logger()

INTERNAL_ERROR = {"error": "internal_error"}


def install_error_handlers(app: FastAPI) -> None:
    """Client errors echo their message; everything else is a bare internal_error."""

    @app.exception_handler(PayloadTooLargeError)
    async def _on_payload_too_large(request: Request, exc: PayloadTooLargeError) -> JSONResponse:
        log.info("request_rejected", error=str(exc))
        return JSONResponse(status_code=413, content={"error": str(exc)})

    @app.exception_handler(ValidationError)
    async def _on_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        log.info("request_rejected", error=str(exc))
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(SitestatsError)
    async def _on_pipeline_error(request: Request, exc: SitestatsError) -> JSONResponse:
        log.error("request_failed", error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)

    @app.exception_handler(Exception)
    async def _on_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        log.error("request_crashed", error_type=type(exc).__name__, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)
