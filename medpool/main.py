from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import os

from medpool.database import engine, SessionLocal
from medpool.database import Base
import medpool.models  # noqa: F401  register all models
from medpool.config import settings
from medpool.exceptions import (
    BusyAssetError,
    ConcurrentModificationError,
    LedgerError,
    RecordNotFoundError,
    ValidationError,
)
from medpool.kv_store import SqlBackend, StoreHandle
from medpool.ledger import LedgerStore
from medpool.routers import health, assets, borrows, references, dashboard, export
from medpool.routers import settings as settings_router
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    # Ensure the SQLite directory exists and the store table is created
    if settings.DATABASE_URL.startswith("sqlite:///./"):
        os.makedirs("data", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    ledger = LedgerStore(StoreHandle(SqlBackend(SessionLocal)))
    application.state.ledger = ledger
    logger.info(
        "Ledger '%s' loaded: %d assets, %d borrow records",
        ledger.namespace, len(ledger.assets), len(ledger.borrow_records),
    )
    try:
        yield
    finally:
        ledger.close()


app = FastAPI(
    title="Medical Pool",
    description="Equipment lending ledger",
    version="1.0.0",
    lifespan=lifespan,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app.add_middleware(SecurityHeadersMiddleware)


# --- Domain error → HTTP mapping ---
@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.message, "field": exc.field})


@app.exception_handler(RecordNotFoundError)
async def _not_found(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BusyAssetError)
async def _busy_asset(request: Request, exc: BusyAssetError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "asset_id": exc.asset_id})


@app.exception_handler(ConcurrentModificationError)
async def _concurrent(request: Request, exc: ConcurrentModificationError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "key": exc.key})


@app.exception_handler(LedgerError)
async def _ledger_error(request: Request, exc: LedgerError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


app.include_router(health.router)
app.include_router(assets.router)
app.include_router(borrows.router)
app.include_router(references.router)
app.include_router(dashboard.router)
app.include_router(export.router)
app.include_router(settings_router.router)
