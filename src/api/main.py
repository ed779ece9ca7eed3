import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.routes.analysis import router as analysis_router
from src.api.routes.indexing import router as indexing_router
from src.api.routes.query import router as query_router
from src.api.routes.transcripts import router as transcripts_router
from src.errors import (
    AnalysisCancelledError,
    CoachingCoreError,
    InvalidTransitionError,
    PermanentInputError,
    QuotaExceededError,
    RateLimitError,
    ServiceTimeoutError,
    TransientServiceError,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Coaching Core API",
    description="Transcript indexing and coaching-trend analysis for sales calls",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(transcripts_router)
app.include_router(indexing_router)
app.include_router(analysis_router)
app.include_router(query_router)

# Most specific first; the first matching class wins.
_ERROR_STATUS: list[tuple[type[CoachingCoreError], int, str]] = [
    (QuotaExceededError, 402, "AI usage quota exhausted. Check your plan or billing settings."),
    (RateLimitError, 429, "AI service is rate limiting requests. Try again shortly."),
    (ServiceTimeoutError, 504, "AI service timed out."),
    (TransientServiceError, 503, "AI service temporarily unavailable."),
    (PermanentInputError, 400, "Invalid input."),
    (InvalidTransitionError, 409, "Chunk is not in a state that allows this change."),
    (AnalysisCancelledError, 409, "Analysis was cancelled."),
]


@app.exception_handler(CoachingCoreError)
async def core_error_handler(request: Request, exc: CoachingCoreError) -> JSONResponse:
    # Returned as JSON so CORS headers survive upstream failures
    for error_type, status_code, message in _ERROR_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
            return JSONResponse(
                status_code=status_code,
                content={"detail": f"{message} ({exc})", "error": type(exc).__name__},
            )
    logger.error("Unmapped core error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
