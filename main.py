import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.database import create_db_and_tables, new_session
from core.security import ensure_webhook_config
from routes.webhooks import router as webhook_router
from services.maintenance import run_webhook_cleanup_loop

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("billsync")


# =========================================
# 🏁 Lifespan (DB initialization + maintenance)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fails closed: a production deployment without a webhook secret never starts
    ensure_webhook_config(settings)

    create_db_and_tables()
    logger.info("✅ Database tables created on startup.")

    cleanup_task = asyncio.create_task(
        run_webhook_cleanup_loop(
            new_session,
            retention_days=settings.WEBHOOK_EVENT_RETENTION_DAYS,
            interval_seconds=settings.WEBHOOK_CLEANUP_INTERVAL_SECONDS,
        )
    )
    yield
    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    logger.info("✅ Application shutting down.")


# =========================================
#  ✅ FastAPI App
# =========================================
app = FastAPI(lifespan=lifespan, title="BillSync Webhook Backend")

allowed_origins = [
    settings.FRONTEND_URL,
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =========================================
# 📦 Routers
# =========================================
app.include_router(webhook_router)  # ✅ Stripe webhooks
app.include_router(webhook_router, prefix="/api/v1")


# =========================================
# 🩺 Health Check
# =========================================
@app.get("/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}
