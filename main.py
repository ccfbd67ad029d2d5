"""
Main application entry point for the SafePath API.

This module initializes the FastAPI application, sets up logging,
configures CORS, initializes the rate limiter with Redis backend,
converts HTTP and validation errors to the API error envelope and
includes routers for authentication, users, contacts, emergencies,
location lookups and the real-time channel.

Modules:
- FastAPI: Web framework
- CORSMiddleware: Middleware for handling CORS
- FastAPILimiter: Rate limiting
- redis.asyncio: Async Redis client
- fakeredis.aioredis: Fake Redis for testing/offline
- safepath.database: Database engine
- safepath.models: SQLAlchemy models
- safepath.core: Application settings and logging
"""

import logging
import time
from datetime import datetime

import redis.asyncio as redis
from fakeredis.aioredis import FakeRedis
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_limiter import FastAPILimiter
from starlette.exceptions import HTTPException as StarletteHTTPException

from safepath import contacts, emergency, location, models, realtime
from safepath.auth import router as auth_router
from safepath.core import get_settings, setup_logging
from safepath.database import engine
from safepath.users import router as users_router

setup_logging()
logger = logging.getLogger(__name__)

# Create tables (for development only)
models.Base.metadata.create_all(bind=engine)

settings = get_settings()
started_at = time.monotonic()

# Initialize FastAPI application
app = FastAPI(title="SafePath API")

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """
    FastAPI startup event handler.

    Initializes the rate limiter with Redis backend. Falls back to
    FakeRedis if Redis is unavailable (e.g., during tests or offline).
    """
    redis_client = redis.from_url(
        settings.REDIS_URL, encoding="utf-8", decode_responses=True
    )
    try:
        await FastAPILimiter.init(redis_client)
    except Exception as exc:
        logger.warning("Redis unavailable (%s), using in-memory rate limiter", exc)
        await FastAPILimiter.init(FakeRedis())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Wrap HTTP errors as ``{"success": false, "message": <detail>}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Report invalid input as 400 with one entry per offending field.

    Returns:
        JSONResponse: ``{"success": false, "message": "Validation errors",
        "errors": [{"field": ..., "message": ...}]}``
    """
    errors = []
    for error in exc.errors():
        loc = [
            str(part)
            for part in error.get("loc", ())
            if part not in ("body", "query", "path", "form")
        ]
        errors.append(
            {"field": ".".join(loc), "message": error.get("msg", "Invalid value")}
        )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Validation errors", "errors": errors},
    )


# Include routers for application areas
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(contacts.router)
app.include_router(emergency.router)
app.include_router(location.router)
app.include_router(realtime.router)


@app.get("/health")
def health():
    """Liveness probe with server time and uptime in seconds."""
    return {
        "status": "OK",
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": round(time.monotonic() - started_at, 3),
    }


@app.get("/")
def root():
    """
    Root endpoint for the API.

    Returns a simple JSON message directing users to the Swagger UI.

    Returns:
        dict: JSON message with information about the API
    """
    return {"msg": "SafePath API. Visit /docs for Swagger UI"}
