"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from prometheus_fastapi_instrumentator import Instrumentator

from iquiz.api.courses import router as courses_router
from iquiz.api.deps import envelope
from iquiz.api.quiz_responses import router as quiz_responses_router
from iquiz.api.quizzes import router as quizzes_router
from iquiz.api.users import router as users_router
from iquiz.core.config import settings
from iquiz.core.database import close_db, init_db
from iquiz.core.errors import QuizError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Sentry if configured
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    """
    logger.info(f"Starting {settings.APP_NAME}...")
    init_db()
    logger.info("Database initialized")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url=None if settings.is_production() else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

if settings.PROMETHEUS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


# Exception handlers
@app.exception_handler(QuizError)
async def quiz_error_handler(request: Request, exc: QuizError):
    """Map service failures onto the response envelope."""
    logger.warning(f"{request.method} {request.url.path} rejected ({type(exc).__name__}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, exc.message, error=jsonable_encoder(exc.error)),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope(False, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=envelope(False, "Missing/invalid fields", error=jsonable_encoder(exc.errors())),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope(
            False,
            "An internal error occurred",
            error=None if settings.is_production() else str(exc),
        ),
    )


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok", "version": settings.APP_VERSION}


app.include_router(users_router, prefix=f"{settings.API_PREFIX}/users", tags=["users"])
app.include_router(courses_router, prefix=f"{settings.API_PREFIX}/courses", tags=["courses"])
app.include_router(quizzes_router, prefix=f"{settings.API_PREFIX}/quizzes", tags=["quizzes"])
app.include_router(quiz_responses_router, prefix=f"{settings.API_PREFIX}/quiz-responses", tags=["quiz-responses"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("iquiz.main:app", host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
