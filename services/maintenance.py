# ================================================================
# services/maintenance.py — Periodic webhook ledger cleanup
# ================================================================
import asyncio
import logging
from typing import Callable

from sqlmodel import Session

from services.webhook_ledger import WebhookLedger

logger = logging.getLogger(__name__)


def cleanup_old_webhook_events(session_factory: Callable[[], Session], retention_days: int) -> int:
    """Delete ledger rows older than the retention window. Never raises."""
    try:
        with session_factory() as session:
            deleted = WebhookLedger(session).purge_older_than(retention_days)
    except Exception as e:
        logger.warning(f"⚠️ Webhook cleanup failed: {e}")
        return 0

    if deleted:
        logger.info(f"🧹 Cleaned up {deleted} webhook events older than {retention_days} days")
    return deleted


async def run_webhook_cleanup_loop(
    session_factory: Callable[[], Session],
    retention_days: int,
    interval_seconds: float,
) -> None:
    """Background task started from the app lifespan; cancelled on shutdown."""
    logger.info(f"🧹 Webhook cleanup scheduled every {interval_seconds}s (retention {retention_days} days)")
    while True:
        await asyncio.to_thread(cleanup_old_webhook_events, session_factory, retention_days)
        await asyncio.sleep(interval_seconds)
