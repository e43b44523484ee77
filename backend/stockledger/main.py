import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stockledger.config import settings
from stockledger.database import engine
from stockledger.logging_config import setup_logging
from stockledger.middleware.exceptions import register_exception_handlers
from stockledger.routers import batches, finished_goods, health, raw_materials, reports, stock_movements

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting stockledger (%s), report timezone %s",
        settings.environment, settings.report_timezone,
    )
    yield
    await engine.dispose()
    logger.info("Stopped stockledger")


app = FastAPI(
    title="Stock Ledger",
    description="Raw material and finished good stock ledger with batch production",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(stock_movements.router, prefix="/api/stock-movements", tags=["stock-movements"])
app.include_router(batches.router, prefix="/api/batches", tags=["batches"])
app.include_router(reports.router, prefix="/api/reports", tags=["reports"])
app.include_router(raw_materials.router, prefix="/api/raw-materials", tags=["raw-materials"])
app.include_router(finished_goods.router, prefix="/api/finished-goods", tags=["finished-goods"])
