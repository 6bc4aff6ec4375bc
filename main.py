"""
Creator Settlement Service

FastAPI application for view/conversion tracking and creator payouts,
with health checks, Prometheus metrics and structured logging.
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlmodel.ext.asyncio.session import AsyncSession

from config import utcnow
from database import engine, get_session, init_db, make_session_factory
from exceptions import SettlementError
from observability.health import run_health_checks
from observability.logging import setup_logging
from observability.metrics import metrics_registry
from observability.middleware import ObservabilityMiddleware
from observability.sentry_config import capture_exception, init_sentry
from routes import admin, tracking
from services.context import build_default_context
from services.events import DomainEventRecorder
from services.sweeper import PayoutSweeper

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env", override=False)

setup_logging()
init_sentry()

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(
    title="Creator Settlement Service",
    description="Fraud-screened view tracking, conversion attribution and risk-adjusted creator payouts",
    version=VERSION,
)

app.add_middleware(ObservabilityMiddleware)

app.include_router(tracking.router)
app.include_router(admin.router)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.error(f"[ERROR] {exc.__class__.__name__}: {exc.message}", extra={"path": request.url.path})
    else:
        logger.info(
            f"[REJECTED] {exc.__class__.__name__}: {exc.message}",
            extra={"path": request.url.path, "status_code": exc.status_code},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies are input errors: 400, nothing persisted."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "ValidationError",
            "message": "Invalid request",
            "detail": {"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
            ]},
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    - Logs full traceback with an error id
    - Reports to Sentry when enabled
    - Returns a safe error message to the client
    """
    error_id = f"ERR-{utcnow().strftime('%Y%m%d%H%M%S')}-{id(exc)}"

    logger.error(
        f"[ERROR {error_id}] Unhandled exception",
        extra={"error_id": error_id, "path": request.url.path, "method": request.method},
        exc_info=exc,
    )
    capture_exception(exc, error_id=error_id, path=request.url.path)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please try again.",
        },
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": VERSION}


@app.get("/health/ready")
async def readiness_check(session: AsyncSession = Depends(get_session)):
    """
    Readiness check - verifies the database and the payout backlog.

    Returns 503 when any check reports an error.
    """
    result = await run_health_checks(session, include_system=False)
    return JSONResponse(status_code=503 if result["status"] == "unhealthy" else 200, content=result)


@app.get("/health/detailed")
async def detailed_health_check(session: AsyncSession = Depends(get_session)):
    """Every check, system resources included. Always 200; read the status field."""
    return await run_health_checks(session)


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(metrics_registry), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup_event():
    """Build the settlement context and start background work."""
    logger.info("Creator settlement service starting", extra={"environment": os.getenv("ENVIRONMENT", "development")})

    session_factory = make_session_factory(engine)
    ctx = build_default_context()
    ctx.events.subscribe_all(DomainEventRecorder(session_factory))

    app.state.session_factory = session_factory
    app.state.settlement_context = ctx

    if os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true":
        await init_db(engine)

    app.state.sweeper = None
    if os.getenv("ENABLE_PAYOUT_SWEEPER", "false").lower() == "true":
        sweeper = PayoutSweeper(session_factory, ctx)
        sweeper.start()
        app.state.sweeper = sweeper


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
    logger.info("Creator settlement service shutting down")
