from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from db_models import ErrorResponse, FinalResponse, IdentifyRequest
from db_setup import init_db
from errors import ReconciliationError, ValidationError
from logging_config import configure_logging
from reconciliation import identify as identify_contact

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    init_db(settings)
    yield


app = FastAPI(
    title="Contact Reconciliation API",
    version="1.0.0",
    lifespan=lifespan,
)


def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, code=code).model_dump(),
    )


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error("Identify failed", path=request.url.path, error=exc.message, code=exc.code)
    return _error_response(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    message = first.get("msg", "Request body could not be parsed")
    return _error_response(400, message, ValidationError.code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error_response(404, "Please hit the identify end point with appropriate params", "not_found")
    return _error_response(exc.status_code, str(exc.detail), "http_error")


@app.get("/")
def root():
    return {"message": "Contact reconciliation API is up"}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, settings: Settings = Depends(get_settings)):
    return identify_contact(request.email, request.phoneNumber, settings)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
