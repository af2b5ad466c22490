import time

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from avatar_voice.core.logging import setup_logging
from avatar_voice.core.settings import get_settings
from avatar_voice.routers.api import voice

# Initialize
settings = get_settings()
logger = setup_logging()

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Voice avatar front end for a Copilot Studio agent",
)


def _serialize_validation_errors(errors: list) -> list:
    """Convert validation errors to JSON-serializable format."""
    return [
        {
            "loc": error.get("loc"),
            "msg": str(error.get("msg", "")),
            "type": error.get("type"),
        }
        for error in errors
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log and return request validation failures.

    The raw body is not logged; session requests may carry refresh tokens.
    """
    errors = _serialize_validation_errors(exc.errors())
    logger.error(
        "Request failed validation",
        extra={
            "component": "http",
            "operation": "validate_request",
            "context_data": {
                "path": f"{request.method} {request.url.path}",
                "errors": errors,
            },
        },
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests with timing information."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    method = request.method
    path = request.url.path
    time_str = f"{duration_ms:.2f}ms"
    if duration_ms < 500:
        logger.info(f"<<< {method} {path} - {response.status_code} [{time_str}]")
    else:
        logger.warning(f"<<< {method} {path} - {response.status_code} [{time_str}] (slow)")

    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(voice.router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
