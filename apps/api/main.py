"""
Tenant Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_ledger_settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    promotions,
    billing,
    admin,
)
from routers.rate_limit import close_rate_limit_redis
from services.ledger_jobs import run_all_ledger_sweeps


async def _periodic_ledger_sweeps() -> None:
    interval_minutes = max(int(settings.LEDGER_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            results = await run_all_ledger_sweeps()
            granted = int(results.get("free_grants", {}).get("granted_count", 0) or 0)
            failed = [name for name, result in results.items() if not result.get("success")]
            print(f"🧾 Ledger sweeps tick: free_grants={granted} failed={len(failed)}")
        except Exception as exc:
            print(f"⚠️ Ledger sweeps tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Tenant Credit Ledger API...")
    validate_security_settings()
    validate_ledger_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    sweep_task = None
    if settings.LEDGER_SWEEPS_ENABLED and int(settings.LEDGER_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_ledger_sweeps())
        print(
            "📅 Ledger sweep loop enabled "
            f"(every {int(settings.LEDGER_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await close_rate_limit_redis()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Tenant Credit Ledger API",
    description="Per-tenant credit balances, consumption, grants and promotions",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(promotions.router, prefix="/promotions", tags=["Promotions"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Tenant Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
