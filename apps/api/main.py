"""
Letter Review API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_priority_settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import billing, health, letters, review
from services.admission import sweep_stale_generating_letters
from services.allowance import reset_monthly
from services.errors import LetterEngineError

logger = logging.getLogger(__name__)


async def _run_stale_generation_sweep() -> int:
    async with async_session_maker() as db:
        return await sweep_stale_generating_letters(db)


async def _run_monthly_reset() -> dict:
    async with async_session_maker() as db:
        return await reset_monthly(db)


async def _periodic_stale_generation_sweep() -> None:
    interval_minutes = max(int(settings.STALE_GENERATION_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            swept = await _run_stale_generation_sweep()
            if swept:
                print(f"⏱️ Stale generation sweep: failed={swept} (allowance released)")
        except Exception as exc:
            print(f"⚠️ Stale generation sweep tick failed: {exc}")


async def _periodic_monthly_reset() -> None:
    interval_minutes = max(int(settings.MONTHLY_RESET_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await _run_monthly_reset()
            if result.get("granted"):
                print(
                    f"📅 Monthly allowance reset {result.get('period_key')}: "
                    f"granted={result.get('granted', 0)} skipped={result.get('skipped', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Monthly allowance reset tick failed: {exc}")


async def _cancel(task) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Letter Review API...")
    validate_security_settings()
    validate_priority_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        swept = await _run_stale_generation_sweep()
        if swept:
            print(f"♻️ Failed {swept} letters stuck in generating after startup.")
    except Exception as exc:
        print(f"⚠️ Stale generation recovery skipped: {exc}")

    sweep_task = None
    reset_task = None
    if int(settings.STALE_GENERATION_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stale_generation_sweep())
        print(
            "📅 Stale generation sweep enabled "
            f"(every {int(settings.STALE_GENERATION_SWEEP_INTERVAL_MINUTES)} min, "
            f"max {int(settings.MAX_GENERATING_MINUTES)} min generating)."
        )
    if int(settings.MONTHLY_RESET_INTERVAL_MINUTES) > 0:
        reset_task = asyncio.create_task(_periodic_monthly_reset())
        print(
            "📅 Monthly allowance reset loop enabled "
            f"(every {int(settings.MONTHLY_RESET_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    await _cancel(sweep_task)
    await _cancel(reset_task)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Letter Review API",
    description="Draft, review and deliver legal letters with metered allowances",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LetterEngineError)
async def letter_engine_exception_handler(request: Request, exc: LetterEngineError):
    if exc.http_status >= 500:
        logger.error("letter_engine_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    else:
        logger.info("letter_engine_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(letters.router, prefix="/letters", tags=["Letters"])
app.include_router(review.router, prefix="/review", tags=["Review"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Letter Review API",
        "version": "0.1.0",
        "status": "running"
    }
