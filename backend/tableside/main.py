"""FastAPI application entry point."""

import asyncio
import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from tableside.api.routes import api_router
from tableside.core.config import settings
from tableside.core.exceptions import ProviderError, ServiceError
from tableside.core.metrics import MetricsMiddleware, metrics
from tableside.core.rate_limit import limiter
from tableside.core.rbac import RequireManager, token_data_from_payload
from tableside.core.security import decode_access_token
from tableside.db.base import Base
from tableside.db.session import SessionLocal, engine
from tableside.realtime import ConnectionContext, DispatchResult, RealtimeDispatcher
from tableside.services.notification_service import ConnectionManager, WebSocketFanout
from tableside.services.payment_providers import build_provider
from tableside.services.split_payment_service import SplitPaymentService

# Largest inbound WebSocket frame we will parse
MAX_MESSAGE_SIZE = 64 * 1024

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health checks and docs
        if request.url.path in ["/health", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        request_logger.info(f"Request: {request.method} {request.url.path} - Client: {client_ip}")

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {str(e)} - Time: {process_time:.3f}s - Client: {client_ip}"
            )
            raise

        process_time = time.time() - start_time
        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            log_level,
            f"Response: {request.method} {request.url.path} - "
            f"Status: {response.status_code} - Time: {process_time:.3f}s - Client: {client_ip}"
        )
        return response


def _reconcile_once(app: FastAPI) -> None:
    db = SessionLocal()
    try:
        SplitPaymentService(db, app.state.payment_provider, app.state.notifier, config=settings).reconcile_stale()
    finally:
        db.close()


async def _periodic_reconcile(app: FastAPI, interval: int):
    """Settle contributions whose provider callback never arrived."""
    while True:
        try:
            await asyncio.sleep(interval)
            await run_in_threadpool(_reconcile_once, app)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Periodic payment reconciliation error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Tableside")

    # Create tables if they don't exist (for SQLite dev)
    # In production with PostgreSQL, use Alembic migrations
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    manager = ConnectionManager(max_connections_per_topic=settings.ws_max_connections_per_topic)
    notifier = WebSocketFanout(manager)
    notifier.bind_loop(asyncio.get_running_loop())
    app.state.ws_manager = manager
    app.state.notifier = notifier
    app.state.payment_provider = build_provider(settings)
    app.state.dispatcher = RealtimeDispatcher(SessionLocal, notifier)
    logger.info(f"Payment provider: {app.state.payment_provider.name}")

    reconcile_task = None
    if settings.reconcile_interval_seconds > 0:
        reconcile_task = asyncio.create_task(_periodic_reconcile(app, settings.reconcile_interval_seconds))
        logger.info(f"Payment reconciliation runs every {settings.reconcile_interval_seconds}s")

    yield

    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass

    logger.info("Shutting down Tableside")


app = FastAPI(
    title="Tableside",
    description="Shared table sessions, waiter calls and split bills",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    content = {"detail": exc.detail, "kind": exc.kind}
    if isinstance(exc, ProviderError) and exc.provider_status:
        content["provider_status"] = exc.provider_status
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=content)


# Metrics middleware (Prometheus-compatible)
app.add_middleware(MetricsMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - MUST be added last so it runs first (Starlette LIFO order).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "Stripe-Signature"],
    max_age=600,
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check(request: Request):
    """Readiness endpoint with database and WebSocket manager checks."""
    checks = {
        "database": "unknown",
        "websocket_manager": "unknown",
    }

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    manager = getattr(request.app.state, "ws_manager", None)
    if manager is None:
        checks["websocket_manager"] = "not started"
    else:
        checks["websocket_manager"] = f"healthy ({manager.get_connection_count()} connections)"

    return {
        "status": "ready" if checks["database"] == "healthy" else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/metrics")
@limiter.limit("30/minute")
def prometheus_metrics(request: Request, current_user: RequireManager):
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(metrics.get_prometheus_metrics(), media_type="text/plain")


# ===== WebSocket =====

async def _apply(websocket: WebSocket, manager: ConnectionManager, result: DispatchResult) -> None:
    for topic in result.unsubscribe:
        manager.unsubscribe(websocket, topic)
    for topic in result.subscribe:
        if not manager.subscribe(websocket, topic):
            await websocket.send_json({"type": "error", "data": {"kind": "topic_full", "detail": topic}})
    for reply in result.replies:
        await websocket.send_json(jsonable_encoder(reply.to_message()))


@app.websocket("/ws/locations/{location_id}")
async def websocket_location(
    websocket: WebSocket,
    location_id: int,
    role: str = Query("customer"),
    token: Optional[str] = Query(None),
):
    """Realtime feed for a location. Diners connect anonymously; staff roles need a JWT."""
    manager: ConnectionManager = websocket.app.state.ws_manager
    dispatcher: RealtimeDispatcher = websocket.app.state.dispatcher

    user = None
    raw_token = token or websocket.cookies.get("access_token")
    if raw_token:
        user = token_data_from_payload(decode_access_token(raw_token))
        if user is None:
            await manager.reject(websocket, f"invalid token for location {location_id}")
            return
    if role != "customer" and user is None:
        await manager.reject(websocket, f"role '{role}' requires a staff token")
        return

    await manager.accept(websocket)
    context = ConnectionContext(location_id=location_id, user=user)

    try:
        joined = dispatcher.dispatch(context, {"type": "join_location", "data": {"role": role}})
        await _apply(websocket, manager, joined)
        if joined.refused:
            await manager.reject(websocket, f"join refused on location {location_id}")
            return

        while True:
            data = await websocket.receive_text()
            if len(data) > MAX_MESSAGE_SIZE:
                logger.warning(f"WebSocket message too large on location {location_id}")
                await _apply(websocket, manager, DispatchResult.error("message_too_large", len(data)))
                continue
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                frame = {"type": "ping"} if data == "ping" else None
            if frame is None:
                await _apply(websocket, manager, DispatchResult.error("invalid_json", "Frames must be JSON"))
                continue

            result = await run_in_threadpool(dispatcher.dispatch, context, frame)
            await _apply(websocket, manager, result)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket disconnected from location {location_id}")
    except Exception as e:
        logger.error(f"WebSocket error on location {location_id}: {e}", exc_info=True)
    finally:
        manager.disconnect(websocket)
