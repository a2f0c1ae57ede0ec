from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import structlog

from resource_wizard.core.config import settings
from resource_wizard.core.errors import WizardError
from resource_wizard.core.exceptions import APIError, api_exception_handler, wizard_exception_handler
from resource_wizard.routers import resources, wizard
from resource_wizard.services.sessions import sessions


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Referrer policy
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Content Security Policy
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        # Remove server header for security
        if "server" in response.headers:
            del response.headers["server"]
        return response


# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Resource Wizard API", version=settings.app_version)

    yield

    # Shutdown
    logger.info("Shutting down Resource Wizard API", open_sessions=len(sessions))
    sessions.clear()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
# Resource Wizard API

Turns a short description into a printable multi-image resource (posters,
flashcards, card and board games, books, worksheets, free-prompt images).

## Wizard

Describe -> Review -> Generate -> Export. Content is generated when leaving
Describe; a draft is saved when leaving Review; images run in batches of three.

## Authentication

Every endpoint requires the `X-User-Key` header.
    """,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Wizard",
            "description": "Wizard sessions, navigation, content and image runs",
        },
        {
            "name": "Resources",
            "description": "Stored drafts, resources and their generated assets",
        },
    ],
    license_info={
        "name": "MIT",
    },
)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# CORS - Configurable via CORS_ORIGINS env var
cors_origins = (
    ["*"]
    if settings.cors_origins == "*"
    else [origin.strip() for origin in settings.cors_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["X-User-Key", "Content-Type", "Authorization"],
)


# API error handlers for standardized responses
app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(WizardError, wizard_exception_handler)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.debug else "Something went wrong",
            }
        },
    )


# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.app_version,
        "services": {
            "llm_provider": settings.llm_provider,
            "image_provider": settings.image_provider,
        },
        "config": {
            "image_batch_size": settings.image_batch_size,
            "open_sessions": len(sessions),
        },
    }


app.include_router(
    wizard.router,
    prefix="/v1/wizard",
    tags=["Wizard"],
)
app.include_router(
    resources.router,
    prefix="/v1/resources",
    tags=["Resources"],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("resource_wizard.main:app", host="0.0.0.0", port=8000, reload=True)
