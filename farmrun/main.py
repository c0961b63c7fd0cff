import logging
from typing import List, Tuple, Type

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from farmrun.config import get_settings
from farmrun.errors import (
    ArtifactNotFoundError,
    ConfigError,
    ExtractionError,
    FarmrunError,
    HistoryConflictError,
    InvalidSelectionError,
    ObjectStoreError,
    RemoteServiceError,
    SchedulingError,
    UploadError,
    UploadTimeoutError,
)
from farmrun.routes import api
from farmrun.routes import reports as reports_files

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger("farmrun.main")

# First match wins, so subclasses come before their bases.
ERROR_STATUS: List[Tuple[Type[FarmrunError], int]] = [
    (UploadTimeoutError, 504),
    (UploadError, 502),
    (SchedulingError, 500),
    (HistoryConflictError, 409),
    (InvalidSelectionError, 400),
    (ConfigError, 400),
    (ArtifactNotFoundError, 404),
    (RemoteServiceError, 502),
    (ExtractionError, 502),
    (ObjectStoreError, 502),
]


def status_for(exc: FarmrunError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


app = FastAPI(title="Device Farm Test Runner")
app.include_router(api.router)
app.include_router(reports_files.router)


@app.exception_handler(FarmrunError)
async def farmrun_error(request: Request, exc: FarmrunError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        LOGGER.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    message = "; ".join(str(error.get("msg")) for error in errors) or "Invalid request"
    return JSONResponse(status_code=422, content={"error": message, "details": errors})


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
