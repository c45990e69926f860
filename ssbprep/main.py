"""Main FastAPI application for the SSB test-prep service."""
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.sessions import SessionMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from ssbprep.routers import billing, leaderboard, sessions, user
from ssbprep.db.init_db import init_db
from ssbprep.db.database import get_db
from ssbprep.errors import PrepError
from ssbprep.limiter import limiter
from ssbprep.logging_config import setup_logging, get_logger
from ssbprep.config import settings

# Set up logging on module import
log_level = settings.LOG_LEVEL if settings.LOG_LEVEL else None
setup_logging(log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database on startup.

    This function runs once when the application starts, performing:
    - Database table creation
    - Prompt catalogue seeding
    """
    logger.info("Application startup initiated")
    try:
        init_db()
        logger.info("Database initialization completed successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise

    if not settings.analysis_configured:
        logger.warning("OPENAI_API_KEY not set; completed sessions will not be analysed")

    yield

    logger.info("Application shutdown complete")


app = FastAPI(
    title="SSB Prep API",
    description="""
    Practice backend for the Services Selection Board psychology tests.

    ## Features

    - **Timed Test Sessions**: WAT, SRT, TAT, PPDT and photo-story, one prompt at a time
    - **Usage Limits**: Per-test attempt ledger for guests, free and paid accounts
    - **AI Feedback**: Officer-like quality analysis of completed sessions
    - **Streaks & Leaderboards**: Daily streaks, points, badges and ranks
    - **Guest Access**: No account required, guests live in the browser session

    ## Session Flow

    1. **Start Test**: POST to `/api/tests/start` with a `test_type`
    2. **Answer**: POST each answer to `/api/tests/sessions/{id}/responses`
    3. **Advance**: POST `/api/tests/sessions/{id}/advance`; expired prompts advance on their own
    4. **Resume**: GET `/api/tests/sessions/{id}/state` to restore an in-progress session
    5. **Results**: GET `/api/tests/sessions/{id}/results` once completed

    ## Limits

    - Guests get 1 attempt per test, registered users 2, subscribers 30
    - Availability is checked at start; the attempt is consumed on completion
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_tags=[
        {
            "name": "user",
            "description": "Identity bootstrap, registration and devices"
        },
        {
            "name": "tests",
            "description": "Test session lifecycle, limits and results"
        },
        {
            "name": "billing",
            "description": "Subscription activation from the payment relay"
        },
        {
            "name": "leaderboard",
            "description": "Streaks, points and leaderboards"
        },
        {
            "name": "health",
            "description": "Service health and readiness checks"
        }
    ]
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

logger.info(f"Rate limiting {'enabled' if limiter.enabled else 'disabled'}: default 100 requests/minute per IP")

# Guest identities and guest limits live in this cookie; max_age=None scopes it to the browser session
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SECRET_KEY,
    max_age=None,
    same_site=settings.COOKIE_SAMESITE,
    https_only=settings.COOKIE_SECURE
)


@app.exception_handler(PrepError)
async def prep_error_handler(request: Request, exc: PrepError):
    """Translate domain errors into JSON responses."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include routers
app.include_router(user.router)
app.include_router(sessions.router)
app.include_router(billing.router)
app.include_router(leaderboard.router)


@app.get("/health", tags=["health"])
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint with database verification.

    Returns:
        200 OK: Service is healthy and database is accessible
        503 Service Unavailable: Database connection failed

    Example Response (Healthy):
        {
            "status": "healthy",
            "database": "connected",
            "analysis": "configured",
            "timestamp": "2025-11-29T10:30:00.000000Z",
            "environment": "production"
        }
    """
    timestamp = datetime.utcnow().isoformat() + "Z"

    try:
        db.execute(text("SELECT 1"))
        logger.debug("Health check passed")

        return {
            "status": "healthy",
            "database": "connected",
            "analysis": "configured" if settings.analysis_configured else "not configured",
            "timestamp": timestamp,
            "environment": settings.ENVIRONMENT
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)

        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e),
                "timestamp": timestamp
            }
        )


@app.get("/readiness", tags=["health"])
async def readiness_check(db: Session = Depends(get_db)):
    """Readiness check for container orchestration.

    Returns:
        200 OK: Service is ready
        503 Service Unavailable: Service is not ready
    """
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ready", "timestamp": datetime.utcnow().isoformat() + "Z"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "error": str(e)}
        )
