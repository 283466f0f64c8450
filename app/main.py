import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.messaging import router as messaging_router
from app.config import settings
from app.services.errors import MessagingError

logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Campus Messaging API", version="0.1.0")

app.include_router(messaging_router)


def _error_body(message: str, error: str | None = None) -> dict:
    body: dict = {"success": False, "message": message}
    if error is not None and not settings.is_production:
        body["error"] = error
    return body


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=_error_body("Invalid request", error=str(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail)))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error", error=str(exc)))


@app.get("/health")
def health():
    return {"status": "ok"}
