"""
============================================================================
Campus Gate Pass v1.0.0
FastAPI Application Entry Point
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor ids (see app.api.deps)
Side Effects: Database writes, background expiry sweeps, notifications

STARTUP:
    1. Load configuration (fails closed on a missing token secret)
    2. Verify database connectivity when GATEPASS_DATABASE_ENABLED=true
    3. Wire the gate pass services (SQL or in-memory stores)
    4. Start the expiry worker

============================================================================
"""

import os
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api import (
    requests_router,
    queue_router,
    wardens_router,
    gate_router,
    authority_router,
    policies_router,
)
from app.database.session import (
    check_database_connection,
    is_database_enabled,
    engine,
    ScopedSession,
)
from services.gatepass_services import GatePassServices, create_gatepass_services
from services.pass_config import get_gatepass_config

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ============================================================================
# GLOBAL INSTANCES
# ============================================================================

# Wired services (initialized in lifespan)
_services: Optional[GatePassServices] = None


def get_gatepass_services() -> Optional[GatePassServices]:
    """
    Get the wired gate pass services.

    Returns:
        GatePassServices or None if the application has not started
    """
    return _services


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup/shutdown events.

    Startup:
        - Load and validate configuration
        - Verify database connectivity (SQL backend only)
        - Wire services and start the expiry worker

    Shutdown:
        - Stop the expiry worker
        - Drain the notification dispatcher
        - Close database connections
    """
    global _services

    print("=" * 60)
    print(f"CAMPUS GATE PASS v{VERSION}")
    print("=" * 60)
    print(f"Startup Time: {datetime.now(timezone.utc).isoformat()}")

    config = get_gatepass_config()
    print("[OK] Configuration loaded")
    print(f"     Campus timezone: {config.campus_timezone}")

    db_session = None
    if is_database_enabled():
        try:
            check_database_connection()
            print("[OK] Database connection verified")
        except Exception as e:
            print(f"[CRITICAL] Database connection failed: {e}")
            print("[CRITICAL] System cannot start without database connectivity")
            raise
        db_session = ScopedSession
    else:
        print("[INFO] Database disabled, using in-memory stores")

    _services = create_gatepass_services(config=config, db_session=db_session)
    print("[OK] Gate pass services initialized")

    try:
        await _services.expiry_worker.start()
        print("[OK] Expiry worker started")
        print(f"     Interval: {config.expiry_interval_seconds}s")
    except Exception as e:
        print(f"[WARN] Expiry worker failed to start: {e}")

    print("=" * 60)

    yield

    # Shutdown
    print("[INFO] Shutting down...")
    if _services.expiry_worker.is_running:
        try:
            await _services.expiry_worker.stop()
            print("[OK] Expiry worker stopped")
        except Exception as e:
            print(f"[WARN] Expiry worker shutdown failed: {e}")

    _services.shutdown()
    _services = None

    if db_session is not None:
        ScopedSession.remove()
    engine.dispose()
    print("[OK] Database connections closed")


# ============================================================================
# APPLICATION INSTANCE
# ============================================================================

app = FastAPI(
    title="Campus Gate Pass",
    description=(
        "Outing and leave requests for day scholars and residents.\n\n"
        "Requests move through mentor, department head and hostel approval, "
        "are verified at the gate with a signed token, and expire on their own."
    ),
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    Side Effects: Logs error, returns safe response
    """
    error_code = "SYS-500"
    logger.error(f"[{error_code}] Unhandled exception | path={request.url.path} | error={exc}")

    return JSONResponse(
        status_code=500,
        content={
            "error_code": error_code,
            "message": "Internal server error. This incident has been logged.",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(requests_router, prefix="/requests", tags=["Requests"])
app.include_router(queue_router, prefix="/queue", tags=["Approval Queue"])
app.include_router(wardens_router, prefix="/wardens", tags=["Hostel Verification"])
app.include_router(gate_router, prefix="/gate", tags=["Gate"])
app.include_router(authority_router, prefix="/authority", tags=["Authority"])
app.include_router(policies_router, prefix="/policies", tags=["Policies"])


# ============================================================================
# SYSTEM ENDPOINTS
# ============================================================================

@app.get(
    "/",
    summary="System Status",
    tags=["System"]
)
async def root():
    services = get_gatepass_services()
    worker = services.expiry_worker if services else None
    return {
        "service": "campus-gatepass",
        "version": VERSION,
        "status": "operational" if services else "starting",
        "storage": "sql" if is_database_enabled() else "in-memory",
        "expiry_worker": {
            "running": worker.is_running if worker else False,
            "consecutive_failures": worker.consecutive_failures if worker else 0,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get(
    "/health",
    summary="Health Check",
    description="Lightweight health check for load balancers and monitoring.",
    tags=["System"]
)
async def health_check():
    """
    Lightweight health check endpoint.

    Side Effects: Database ping (SQL backend only)
    """
    if not is_database_enabled():
        return {"status": "healthy", "database": "disabled"}
    try:
        check_database_connection()
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)}
        )


@app.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Exposes Prometheus metrics for observability.",
    tags=["Observability"]
)
async def metrics():
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
