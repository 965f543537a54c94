import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetwizard.config import settings
from fleetwizard.middleware.exceptions import register_exception_handlers
from fleetwizard.routers import health, transactions, wizard
from fleetwizard.utils.redis_client import close_redis

logger = logging.getLogger("fleetwizard")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"FleetWizard starting (drafts: {settings.draft_backend})")
    try:
        yield
    finally:
        await close_redis()
        logger.info("FleetWizard stopped")


app = FastAPI(
    title="FleetWizard",
    description="Rental reservation / agreement wizard with draft recovery and pricing",
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
app.include_router(wizard.router, prefix="/api/wizard/sessions", tags=["wizard"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["transactions"])
