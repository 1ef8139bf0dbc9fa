# ================================================================
# core/database.py — Engine and session factories for BillSync
# ================================================================
import logging
from typing import Generator, Dict, Any

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from core.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    if not url.startswith("sqlite"):
        logger.info("🐘 Billing ledger database configured from DATABASE_URL")
        return {"pool_pre_ping": True}

    logger.warning("⚠️ Billing ledger on SQLite — only for development and tests")
    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))


def create_db_and_tables() -> None:
    """Create the billing, ledger and checkpoint tables if missing."""
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(engine)
        logger.info("✅ Billing tables ready.")
    except Exception as e:
        logger.error(f"❌ Failed to create billing tables: {e}")
        raise


def new_session() -> Session:
    """Session for work outside a request (background cleanup, scripts)."""
    return Session(engine)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per webhook delivery."""
    with new_session() as session:
        yield session
