# app/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
The parking engine is built once at startup and shared through app.state.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.routers import detections, payments, sessions, rates, vehicles, gate_commands, alerts, health
from app.database import SessionLocal, create_tables
from app.config import settings
from app.errors import ParkingError
from app.services.parking_engine import build_engine
from app.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="ParkGate Session & Gate Orchestration API",
    description="Plate detections in, parking sessions, fees, payments and gate commands out.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow dashboard on same LAN to call the API) ──────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard IP in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth for admin endpoints.
    Camera and payment-provider webhooks are excluded — they don't send our key.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {
        "/api/v1/detections", "/api/v1/payments/confirmation", "/api/v1/payments/failure",
        "/api/v1/health", "/docs", "/redoc", "/openapi.json",
    }

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError):
    logger.warning(f"{exc.code} on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": str(exc), "error": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(detections.router,    prefix="/api/v1", tags=["📷 Detections"])
app.include_router(payments.router,      prefix="/api/v1", tags=["💳 Payments"])
app.include_router(sessions.router,      prefix="/api/v1", tags=["🅿️  Sessions"])
app.include_router(rates.router,         prefix="/api/v1", tags=["💲 Rates"])
app.include_router(vehicles.router,      prefix="/api/v1", tags=["🚗 Vehicles"])
app.include_router(gate_commands.router, prefix="/api/v1", tags=["🚧 Gate Commands"])
app.include_router(alerts.router,        prefix="/api/v1", tags=["🔔 Alerts"])
app.include_router(health.router,        prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 ParkGate backend starting up...")
    create_tables()
    logger.info("✅ Database tables ready")
    app.state.engine = build_engine(SessionLocal)
    logger.info(f"💲 Current rate: v{app.state.engine.rates.current().version}")
    logger.info(f"🚧 Gates configured: {list(settings.GATES.keys())}")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 ParkGate backend shutting down...")
