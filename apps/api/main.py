"""
Token Ledger - FastAPI Backend
Entitlement engine API: balances, authorization, credits, demo sessions.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    tokens,
    billing,
    demo,
    subscriptions,
)
from services.engine import EntitlementEngine
from services.errors import EntitlementError


async def _periodic_demo_clock(entitlements: EntitlementEngine) -> None:
    interval_seconds = max(int(settings.DEMO_CLOCK_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            expired = await entitlements.demo.tick_all(elapsed_seconds=interval_seconds)
            if expired:
                print(f"⏱️ Demo clock: expired {expired} session(s), {len(entitlements.demo.store)} active")
        except Exception as exc:
            print(f"⚠️ Demo clock tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Token Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    app.state.engine = EntitlementEngine.from_settings()
    if settings.BALANCE_CHECKPOINTS_ENABLED:
        print("📒 Balance checkpoints enabled.")

    demo_clock_task = None
    if int(settings.DEMO_CLOCK_INTERVAL_SECONDS) > 0:
        demo_clock_task = asyncio.create_task(_periodic_demo_clock(app.state.engine))
        print(f"📅 Demo clock enabled (every {int(settings.DEMO_CLOCK_INTERVAL_SECONDS)}s).")
    yield
    # Shutdown
    if demo_clock_task is not None:
        demo_clock_task.cancel()
        try:
            await demo_clock_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Token Ledger API",
    description="Token balances, feature authorization, and demo allowances",
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


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError):
    return await http_exception_handler(request, exc.to_http_exception())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(demo.router, prefix="/demo", tags=["Demo"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Token Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
