"""
backend/fitarena/main.py

Purpose:
    FastAPI application bootstrap: middleware/router wiring, error mapping for
    battle failures, and the scheduler running the battle sweeper.

Dependencies:
    - fitarena.database
    - fitarena.routers.battles
    - fitarena.workers.battle_sweeper
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

import fitarena.database as _db
from fitarena.config import settings
from fitarena.database import close_db, connect_db
from fitarena.errors import BattleError
from fitarena.middleware.logging import StructuredLoggingMiddleware, setup_logging
from fitarena.routers.battles import router as battles_router
from fitarena.workers.battle_sweeper import sweep_battles

logger = logging.getLogger("fitarena")
scheduler = AsyncIOScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()

    if settings.BATTLE_SWEEPER_ENABLED:
        scheduler.add_job(
            sweep_battles,
            "interval",
            id="battle_sweeper",
            minutes=settings.BATTLE_SWEEP_INTERVAL_MINUTES,
            replace_existing=True,
        )
        scheduler.start()
        logger.info(
            "Battle sweeper scheduled every %d minutes", settings.BATTLE_SWEEP_INTERVAL_MINUTES,
        )
    else:
        logger.info("Battle sweeper disabled via config")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    await close_db()


app = FastAPI(
    title="FitArena",
    description="1v1 fitness battle engine",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

app.include_router(battles_router)


@app.exception_handler(BattleError)
async def battle_error_handler(request: Request, exc: BattleError):
    request.state.error_code = exc.code
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID.", "code": "invalid_id"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "query" prefix for cleaner messages
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    request.state.error_code = "validation_error"
    return JSONResponse(
        status_code=422,
        content={"detail": "Validation error.", "code": "validation_error", "errors": errors},
    )


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection and sweeper state."""
    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    job = scheduler.get_job("battle_sweeper") if scheduler.running else None
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "battle_sweeper": {
            "enabled": settings.BATTLE_SWEEPER_ENABLED,
            "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
        },
    }
