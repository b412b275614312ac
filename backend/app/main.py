"""
Achats & Chiffrage API
FastAPI backend with async PostgreSQL and JWT auth: purchase orders with
supplier quotes, and multi-level cost estimates.
"""
import os
import logging
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware, SecurityHeadersMiddleware
from app.services.errors import AppError

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("achats-api")

_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var}, running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import init_db, engine
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Achats & Chiffrage API",
    version="1.0.0",
    description="Purchase orders, supplier quotes and cost estimates",
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    else:
        logger.info(
            f"{type(exc).__name__} ({exc.status_code}): {exc.message}",
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-Process-Time", "Content-Disposition"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from app.api.auth_routes import router as auth_router
from app.api.catalog_routes import router as catalog_router
from app.api.purchase_order_routes import router as purchase_order_router
from app.api.devis_routes import router as devis_router, download_router as devis_download_router
from app.api.estimate_routes import router as estimate_router

app.include_router(auth_router)
app.include_router(catalog_router)
app.include_router(purchase_order_router)
app.include_router(devis_router)
app.include_router(devis_download_router)
app.include_router(estimate_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": app.version,
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
    }
